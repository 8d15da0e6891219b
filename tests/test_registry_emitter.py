from __future__ import annotations

from collections.abc import Callable

import pytest

import registry_gen
from registry_gen import EmissionState, EmitOptions, EmitStage


@pytest.fixture
def shapes_graph(
    make_graph: Callable[..., registry_gen.SymbolGraph],
    shapes_sources: dict[str, str],
) -> registry_gen.SymbolGraph:
    return make_graph({"app": shapes_sources})


def _emitter(
    graph: registry_gen.SymbolGraph, options: EmitOptions = EmitOptions()
) -> registry_gen.RegistryEmitter:
    index = registry_gen.discover(graph)
    build = registry_gen.build_collection_model(graph, index.collections[0], index.candidates)
    assert build.model is not None, build.diagnostics
    plan = registry_gen.ImportPlan(graph, reserved=("MappingProxyType", "EmptyShape"))
    return registry_gen.RegistryEmitter(graph, build.model, options, plan)


# ===--- Stage ordering ---=== #


def test_stages_out_of_order_raise(shapes_graph: registry_gen.SymbolGraph) -> None:
    emitter = _emitter(shapes_graph)

    with pytest.raises(RuntimeError, match="expected stage VALUES_CONVERTED, got NOT_STARTED"):
        emitter.emit_fields(EmissionState())
    with pytest.raises(RuntimeError, match="expected stage ACCESSORS_EMITTED"):
        emitter.finish(emitter.convert_values(EmissionState()))


def test_stages_return_new_states(shapes_graph: registry_gen.SymbolGraph) -> None:
    emitter = _emitter(shapes_graph)
    initial = EmissionState()

    converted = emitter.convert_values(initial)
    fielded = emitter.emit_fields(converted)

    assert initial.stage is EmitStage.NOT_STARTED
    assert initial.values == ()
    assert converted.stage is EmitStage.VALUES_CONVERTED
    assert converted.fields == ()
    assert fielded.stage is EmitStage.STATIC_FIELDS_EMITTED
    assert fielded.values is converted.values
    with pytest.raises(AttributeError):
        fielded.stage = EmitStage.DONE


def test_run_reaches_done_and_compiles(shapes_graph: registry_gen.SymbolGraph) -> None:
    state = _emitter(shapes_graph).run()

    assert state.stage is EmitStage.DONE
    assert state.source[0] == "class Shapes(_ShapesDeclaration):"
    assert state.source[-1] == "_initialize()"
    compile("\n".join(state.source), "<shapes registry>", "exec")


# ===--- Values ---=== #


def test_convert_values_renders_keys(shapes_graph: registry_gen.SymbolGraph) -> None:
    state = _emitter(shapes_graph).convert_values(EmissionState())

    assert [(v.variable, v.type_name, v.key_expr) for v in state.values] == [
        ("circle_value", "Circle", "1"),
        ("custom_value", None, None),
        ("hexagon_value", "Hexagon", "hexagon_value.id"),
        ("polygon_value", None, None),
        ("diamond_value", "Rhombus", "4"),
        ("square_value", "Square", "2"),
    ]


def test_initializer_skips_values_that_cannot_be_built(
    shapes_graph: registry_gen.SymbolGraph,
) -> None:
    initializer = _emitter(shapes_graph).run().initializer

    assert "    circle_value = Circle()" in initializer
    assert "    values[hexagon_value.id] = hexagon_value" in initializer
    assert "    Shapes._empty = EmptyShape()" in initializer
    assert not any("Custom(" in line or "Polygon(" in line for line in initializer)


# ===--- Accessor styles ---=== #


def test_property_style_assigns_class_attributes(shapes_graph: registry_gen.SymbolGraph) -> None:
    state = _emitter(shapes_graph).run()

    assert "circle: Shape" in state.fields
    assert "    Shapes.circle = Shapes._all.get(1, Shapes._empty)" in state.initializer
    assert "    Shapes.custom = Shapes._empty" in state.initializer
    assert (
        "    Shapes.hexagon = Shapes._all.get(hexagon_value.id, Shapes._empty)"
        in state.initializer
    )
    assert "def circle(cls) -> Shape:" not in state.accessors


def test_method_style_emits_classmethods(shapes_graph: registry_gen.SymbolGraph) -> None:
    state = _emitter(shapes_graph, EmitOptions(accessor_style="method")).run()
    accessors = list(state.accessors)

    assert "circle: Shape" not in state.fields
    assert "_hexagon_id: int | None = None" in state.fields
    assert "    Shapes._hexagon_id = hexagon_value.id" in state.initializer

    circle = accessors.index("def circle(cls) -> Shape:")
    assert accessors[circle - 1] == "@classmethod"
    assert accessors[circle + 1] == "    return cls._all.get(1, cls._empty)"
    hexagon = accessors.index("def hexagon(cls) -> Shape:")
    assert accessors[hexagon + 1] == "    return cls._all.get(cls._hexagon_id, cls._empty)"
    custom = accessors.index("def custom(cls) -> Shape:")
    assert accessors[custom + 1] == "    return cls._empty"


def test_factory_exposure_emits_create_methods(shapes_graph: registry_gen.SymbolGraph) -> None:
    emitter = _emitter(shapes_graph, EmitOptions(exposure="factory"))
    accessors = list(emitter.run().accessors)

    circle = accessors.index("def create_circle(cls) -> Shape:")
    assert accessors[circle + 2] == "    return Circle()"
    custom = accessors.index("def create_custom(cls, id: int) -> Shape:")
    assert accessors[custom + 2] == "    return Custom(id)"
    assert not any(line.startswith("def create_polygon") for line in accessors)
    assert ("shapes.polygons", "Custom") in {
        (imp.module, name) for imp in emitter.plan.runtime_imports() for name in imp.names
    }


# ===--- Lookups ---=== #


def test_frozen_lookup_maps(shapes_graph: registry_gen.SymbolGraph) -> None:
    state = _emitter(shapes_graph).run()
    accessors = list(state.accessors)

    assert "_by_name: MappingProxyType[str, Shape] = MappingProxyType({})" in state.fields
    assert (
        "_by_sides: MappingProxyType[int, tuple[Shape, ...]] = MappingProxyType({})"
        in state.fields
    )
    by_name = accessors.index("def by_name(cls, name: str) -> Shape:")
    assert accessors[by_name + 2] == "    return cls._by_name.get(name, cls._empty)"
    by_sides = accessors.index("def by_sides(cls, sides: int) -> tuple[Shape, ...]:")
    assert accessors[by_sides + 2] == "    return cls._by_sides.get(sides, ())"


def test_alternate_lookup_map(shapes_graph: registry_gen.SymbolGraph) -> None:
    state = _emitter(shapes_graph, EmitOptions(lookup_maps="alternate")).run()
    accessors = list(state.accessors)

    assert not any(line.startswith("_by_name") for line in state.fields)
    assert any(line.startswith("_alternate: ") for line in state.fields)
    by_name = accessors.index("def by_name(cls, name: str) -> Shape:")
    assert accessors[by_name + 2] == '    return cls._alternate.get(("name", name), cls._empty)'
    by_sides = accessors.index("def by_sides(cls, sides: int) -> tuple[Shape, ...]:")
    assert accessors[by_sides + 2] == '    return cls._alternate.get(("sides", sides), ())'
    compile("\n".join(state.source), "<shapes registry>", "exec")


# ===--- Module units ---=== #


def test_collection_units_import_plan(shapes_graph: registry_gen.SymbolGraph) -> None:
    index = registry_gen.discover(shapes_graph)
    model = registry_gen.build_collection_model(
        shapes_graph, index.collections[0], index.candidates
    ).model

    registry, null_object = registry_gen.emit_collection_units(shapes_graph, model, EmitOptions())
    source = registry_gen.assemble_module_source(
        registry_gen.WriteConfig("app"), registry.spec
    )

    assert registry.spec.filename == "shapes.py"
    assert registry.exports == ("Shapes",)
    assert registry.origin == "shapes.catalog.Shapes"
    assert null_object.spec.filename == "empty_shape.py"
    assert null_object.exports == ("EmptyShape",)
    assert null_object.origin == "shapes.base.Shape"
    for line in (
        "from types import MappingProxyType",
        "from typing import TYPE_CHECKING",
        "from shapes.catalog import Shapes as _ShapesDeclaration",
        "from shapes.circle import Circle",
        "from shapes.polygons import Hexagon, Rhombus, Square",
        "from .empty_shape import EmptyShape",
        "if TYPE_CHECKING:",
        "    from shapes.base import Shape",
    ):
        assert line in source.splitlines()
    compile(source, "shapes.py", "exec")
