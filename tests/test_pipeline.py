from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path
from types import ModuleType

import pytest

import registry_gen
from registry_gen import EmitOptions, GenerateConfig, ModuleSource

EXTRA_COLLECTION = '''
from registry_gen import RegistryBase, collection

from shapes.base import Shape


@collection(Shape, name="{name}")
class Extra(RegistryBase[Shape]):
    pass
'''

ABSTRACT_NAMED = {
    "named/__init__.py": "",
    "named/base.py": '''
from abc import ABC, abstractmethod


class Named(ABC):
    def __init__(self, id: int) -> None:
        self.id = id

    @property
    @abstractmethod
    def display_name(self) -> str:
        ...
''',
    "named/catalog.py": '''
from registry_gen import collection

from named.base import Named


@collection(Named)
class AllNamed:
    pass
''',
}

PLAIN_SHAPES = {
    "shapes/__init__.py": "",
    "shapes/base.py": '''
class Shape:
    def __init__(self, id: int) -> None:
        self.id = id
''',
    "shapes/catalog.py": '''
from registry_gen import collection

from shapes.base import Shape


@collection(Shape)
class Shapes:
    pass
''',
    "shapes/wiring.py": '''
import gallery
import plugins.circle
''',
}

HANDLERS = {
    "handlers/__init__.py": "",
    "handlers/base.py": '''
from abc import ABC, abstractmethod
from typing import Generic, TypeVar

T = TypeVar("T")


class Handler(ABC, Generic[T]):
    def __init__(self, id: int) -> None:
        self.id = id

    @abstractmethod
    def handle(self, item: T) -> T:
        ...
''',
    "handlers/catalog.py": '''
from registry_gen import collection, option

from handlers.base import Handler


@collection(Handler)
class Handlers:
    pass


@option(Handlers)
class TextHandler(Handler[str]):
    def __init__(self) -> None:
        super().__init__(1)

    def handle(self, item: str) -> str:
        return item.upper()
''',
}

TOOLS = {
    "tools/__init__.py": "",
    "tools/base.py": '''
from typing import Protocol


class Tool(Protocol):
    def run(self) -> str:
        ...
''',
    "tools/catalog.py": '''
from registry_gen import collection, option

from tools.base import Tool


@collection(Tool)
class Toolbox:
    pass


@option(Toolbox)
class Hammer(Tool):
    def __init__(self) -> None:
        self.id = 3

    def run(self) -> str:
        return "bang"
''',
}

KINDS = {
    "kinds/__init__.py": "",
    "kinds/base.py": '''
from abc import ABC, abstractmethod


class Kind(ABC):
    def __init__(self, id: int) -> None:
        self.id = id

    @classmethod
    @abstractmethod
    def label(cls) -> str:
        ...

    @staticmethod
    @abstractmethod
    def weight() -> float:
        ...
''',
    "kinds/catalog.py": '''
from registry_gen import collection, option

from kinds.base import Kind


@collection(Kind)
class Kinds:
    pass


@option(Kinds)
class Heavy(Kind):
    def __init__(self) -> None:
        super().__init__(1)

    @classmethod
    def label(cls) -> str:
        return "heavy"

    @staticmethod
    def weight() -> float:
        return 9.5
''',
}

DATACLASS_ITEMS = {
    "items/__init__.py": "",
    "items/base.py": '''
from dataclasses import dataclass, field


@dataclass
class Item:
    id: int
    name: str
    tags: list[str] = field(default_factory=list)
''',
    "items/catalog.py": '''
from registry_gen import collection, option

from items.base import Item


@collection(Item)
class Items:
    pass


@option(Items)
class Alpha(Item):
    def __init__(self) -> None:
        super().__init__(1, "alpha")


@option(Items)
class Loose(Item):
    pass
''',
}

CLASHING_LOOKUP_BASE = '''
from dataclasses import dataclass

from registry_gen import lookup


@dataclass
class Item:
    id: int
    name: str

    @lookup("by_id")
    @property
    def code(self) -> str:
        return self.name.upper()
'''


def _config(
    source: Path,
    output_dir: Path,
    *references: ModuleSource,
    options: EmitOptions = EmitOptions(),
    jobs: int = 1,
) -> GenerateConfig:
    return GenerateConfig(
        source=ModuleSource("app", source),
        references=references,
        output_dir=output_dir,
        options=options,
        jobs=jobs,
    )


@pytest.fixture
def generate_and_import(
    tmp_path: Path,
    write_tree: Callable[[str, dict[str, str]], Path],
    import_fresh: Callable[..., ModuleType],
) -> Callable[..., tuple[registry_gen.GenerationRun, ModuleType]]:
    def _generate_and_import(
        sources: dict[str, str], options: EmitOptions = EmitOptions()
    ) -> tuple[registry_gen.GenerationRun, ModuleType]:
        src = write_tree("src", sources)
        run = registry_gen.run_generate(
            _config(src, tmp_path / "out" / "app_registries", options=options)
        )
        return run, import_fresh("app_registries", src, tmp_path / "out")

    return _generate_and_import


# ===--- End-to-end scenarios ---=== #


def test_shapes_registry_lookups_by_primary_key(
    shapes_sources: dict[str, str],
    generate_and_import: Callable[..., tuple[registry_gen.GenerationRun, ModuleType]],
) -> None:
    run, package = generate_and_import(shapes_sources)
    shapes = package.Shapes

    assert not run.generation.has_errors
    assert [f.filename for f in run.written.files] == [
        "shapes.py",
        "empty_shape.py",
        "__init__.py",
    ]
    assert type(shapes.by_id(1)).__name__ == "Circle"
    assert type(shapes.by_id(2)).__name__ == "Square"
    assert shapes.by_id(1) is shapes.circle
    assert shapes.by_id(6) is shapes.hexagon
    assert shapes.by_id(99) is shapes.empty()
    assert isinstance(shapes.empty(), package.EmptyShape)
    assert [value.name for value in shapes.all()] == ["circle", "hexagon", "rhombus", "square"]


def test_shapes_registry_exposes_unbuildable_values_as_sentinel(
    shapes_sources: dict[str, str],
    generate_and_import: Callable[..., tuple[registry_gen.GenerationRun, ModuleType]],
) -> None:
    _, package = generate_and_import(shapes_sources)
    shapes = package.Shapes

    assert shapes.custom is shapes.empty()
    assert shapes.polygon is shapes.empty()
    assert shapes.diamond.name == "rhombus"


def test_shapes_registry_secondary_lookups(
    shapes_sources: dict[str, str],
    generate_and_import: Callable[..., tuple[registry_gen.GenerationRun, ModuleType]],
) -> None:
    _, package = generate_and_import(shapes_sources)
    shapes = package.Shapes

    assert shapes.by_name("square") is shapes.square
    assert shapes.by_name("triangle") is shapes.empty()
    assert shapes.by_sides(4) == (shapes.diamond, shapes.square)
    assert shapes.by_sides(3) == ()


def test_shapes_registry_is_read_only_and_subclasses_declaration(
    shapes_sources: dict[str, str],
    generate_and_import: Callable[..., tuple[registry_gen.GenerationRun, ModuleType]],
) -> None:
    _, package = generate_and_import(shapes_sources)
    registry = package.Shapes
    declared = sys.modules["shapes.catalog"].Shapes

    assert issubclass(registry, declared)
    assert registry is not declared
    with pytest.raises(TypeError):
        registry._all[7] = registry.circle
    with pytest.raises(TypeError):
        registry._by_name["x"] = registry.circle


def test_empty_shape_returns_zero_values(
    shapes_sources: dict[str, str],
    generate_and_import: Callable[..., tuple[registry_gen.GenerationRun, ModuleType]],
) -> None:
    _, package = generate_and_import(shapes_sources)
    empty = package.EmptyShape()

    assert empty.id == 0
    assert empty.name == ""
    assert empty.sides == 0
    assert empty.area(2.5) == 2.5
    assert empty.describe() == ""


def test_method_style_factory_and_alternate_maps(
    shapes_sources: dict[str, str],
    generate_and_import: Callable[..., tuple[registry_gen.GenerationRun, ModuleType]],
) -> None:
    options = EmitOptions(accessor_style="method", exposure="factory", lookup_maps="alternate")
    run, package = generate_and_import(shapes_sources, options)
    shapes = package.Shapes

    assert not run.generation.has_errors
    assert shapes.circle() is shapes.by_id(1)
    assert shapes.hexagon() is shapes.by_id(6)
    assert shapes.custom() is shapes.empty()
    assert shapes.create_circle() is not shapes.circle()
    assert type(shapes.create_circle()).__name__ == "Circle"
    assert shapes.create_custom(42).id == 42
    assert shapes.by_name("square") is shapes.square()
    assert shapes.by_name("triangle") is shapes.empty()
    assert shapes.by_sides(4) == (shapes.diamond(), shapes.square())
    assert not hasattr(shapes, "create_polygon")


def test_abstract_property_base_writes_nothing(
    tmp_path: Path,
    write_tree: Callable[[str, dict[str, str]], Path],
) -> None:
    src = write_tree("src", ABSTRACT_NAMED)
    output_dir = tmp_path / "out" / "app_registries"

    run = registry_gen.run_generate(_config(src, output_dir))

    assert run.written is None
    assert not output_dir.exists()
    assert [d.code for d in run.generation.diagnostics] == ["RG102"]


def test_reexported_option_is_registered_once(
    tmp_path: Path,
    write_tree: Callable[[str, dict[str, str]], Path],
    import_fresh: Callable[..., ModuleType],
) -> None:
    src = write_tree("src", PLAIN_SHAPES)
    gallery = write_tree("gallery_src", {"gallery/__init__.py": "from plugins.circle import Circle\n"})
    plugins = write_tree(
        "plugins_src",
        {
            "plugins/__init__.py": "",
            "plugins/circle.py": '''
from registry_gen import option

from shapes.base import Shape
from shapes.catalog import Shapes


@option(Shapes)
class Circle(Shape):
    def __init__(self) -> None:
        super().__init__(1)
''',
        },
    )

    run = registry_gen.run_generate(
        _config(
            src,
            tmp_path / "out" / "app_registries",
            ModuleSource("gallery", gallery),
            ModuleSource("plugins", plugins),
        )
    )
    package = import_fresh("app_registries", src, gallery, plugins, tmp_path / "out")

    assert run.generation.diagnostics == ()
    (outcome,) = run.generation.outcomes
    assert [v.full_name for v in outcome.model.values] == ["plugins.circle.Circle"]
    assert len(package.Shapes.all()) == 1
    assert type(package.Shapes.circle).__name__ == "Circle"


def test_generic_base_uses_none_sentinel_and_generic_null_object(
    generate_and_import: Callable[..., tuple[registry_gen.GenerationRun, ModuleType]],
) -> None:
    run, package = generate_and_import(HANDLERS)
    handlers = package.Handlers

    assert not run.generation.has_errors
    assert handlers.text_handler.handle("x") == "X"
    assert handlers.by_id(1) is handlers.text_handler
    assert handlers.by_id(9) is None
    assert handlers.empty() is None
    assert package.EmptyHandler().handle("x") == "x"
    assert package.EmptyHandler().id == 0


def test_protocol_base_has_no_null_object_module(
    generate_and_import: Callable[..., tuple[registry_gen.GenerationRun, ModuleType]],
) -> None:
    run, package = generate_and_import(TOOLS)
    toolbox = package.Toolbox

    assert [f.filename for f in run.written.files] == ["toolbox.py", "__init__.py"]
    assert toolbox.by_id(3) is toolbox.hammer
    assert toolbox.hammer.run() == "bang"
    assert toolbox.by_id(4) is None
    assert toolbox.empty() is None


def test_null_object_implements_abstract_class_and_static_methods(
    generate_and_import: Callable[..., tuple[registry_gen.GenerationRun, ModuleType]],
) -> None:
    run, package = generate_and_import(KINDS)
    kinds = package.Kinds

    assert not run.generation.has_errors
    assert kinds.by_id(1) is kinds.heavy
    assert kinds.heavy.label() == "heavy"
    assert kinds.by_id(9) is kinds.empty()
    assert isinstance(kinds.empty(), package.EmptyKind)
    assert package.EmptyKind.label() == ""
    assert package.EmptyKind.weight() == 0.0
    assert package.EmptyKind().id == 0


def test_dataclass_base_gets_synthesized_null_constructor(
    generate_and_import: Callable[..., tuple[registry_gen.GenerationRun, ModuleType]],
) -> None:
    run, package = generate_and_import(DATACLASS_ITEMS)
    items = package.Items

    assert not run.generation.has_errors
    assert [f.filename for f in run.written.files] == ["items.py", "empty_item.py", "__init__.py"]
    assert type(items.by_id(1)).__name__ == "Alpha"
    assert items.by_id(1).name == "alpha"
    assert items.loose is items.empty()
    assert items.by_id(2) is items.empty()
    empty = package.EmptyItem()
    assert (empty.id, empty.name, empty.tags) == (0, "", [])


def test_lookup_colliding_with_registry_accessor_writes_nothing(
    tmp_path: Path,
    write_tree: Callable[[str, dict[str, str]], Path],
) -> None:
    src = write_tree("src", {**DATACLASS_ITEMS, "items/base.py": CLASHING_LOOKUP_BASE})
    output_dir = tmp_path / "out" / "app_registries"

    run = registry_gen.run_generate(_config(src, output_dir))

    assert run.written is None
    assert not output_dir.exists()
    assert [d.code for d in run.generation.diagnostics] == ["RG107"]


# ===--- Failure isolation ---=== #


def test_emission_failure_is_isolated_per_collection(
    shapes_sources: dict[str, str],
    make_graph: Callable[..., registry_gen.SymbolGraph],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    graph = make_graph(
        {"app": {**shapes_sources, "shapes/extra.py": EXTRA_COLLECTION.format(name="MoreShapes")}}
    )
    original = registry_gen.RegistryEmitter.emit_accessors

    def _failing(self: registry_gen.RegistryEmitter, state: registry_gen.EmissionState):
        if self.class_name == "Shapes":
            raise KeyError("boom")
        return original(self, state)

    monkeypatch.setattr(registry_gen.RegistryEmitter, "emit_accessors", _failing)

    result = registry_gen.generate_registries(graph)

    assert [o.succeeded for o in result.outcomes] == [False, True]
    (failure,) = result.diagnostics
    assert failure.code == "RG201"
    assert "'Shapes'" in failure.message and "KeyError" in failure.message
    assert [u.spec.filename for u in result.units] == ["more_shapes.py", "empty_shape.py"]


def test_conflicting_module_names_report_rg202(
    shapes_sources: dict[str, str],
    make_graph: Callable[..., registry_gen.SymbolGraph],
) -> None:
    graph = make_graph(
        {"app": {**shapes_sources, "shapes/extra.py": EXTRA_COLLECTION.format(name="Shapes")}}
    )

    result = registry_gen.generate_registries(graph)

    assert [d.code for d in result.diagnostics] == ["RG202"]
    assert "shapes.py" in result.diagnostics[0].message
    assert [u.spec.filename for u in result.units] == ["shapes.py", "empty_shape.py"]
    assert [u.origin for u in result.units] == ["shapes.catalog.Shapes", "shapes.base.Shape"]


def test_null_object_shared_by_collections_is_emitted_once(
    shapes_sources: dict[str, str],
    make_graph: Callable[..., registry_gen.SymbolGraph],
) -> None:
    graph = make_graph(
        {"app": {**shapes_sources, "shapes/extra.py": EXTRA_COLLECTION.format(name="MoreShapes")}}
    )

    result = registry_gen.generate_registries(graph)
    init = registry_gen.build_init_spec(result.units)

    assert result.diagnostics == ()
    assert [u.spec.filename for u in result.units] == [
        "shapes.py",
        "empty_shape.py",
        "more_shapes.py",
    ]
    assert [r.names for r in init.re_exports] == [("Shapes",), ("EmptyShape",), ("MoreShapes",)]


def test_parallel_generation_matches_sequential(
    shapes_sources: dict[str, str],
    make_graph: Callable[..., registry_gen.SymbolGraph],
) -> None:
    graph = make_graph(
        {"app": {**shapes_sources, "shapes/extra.py": EXTRA_COLLECTION.format(name="MoreShapes")}}
    )

    sequential = registry_gen.generate_registries(graph, EmitOptions(), max_workers=1)
    parallel = registry_gen.generate_registries(graph, EmitOptions(), max_workers=4)

    assert [u.spec for u in parallel.units] == [u.spec for u in sequential.units]
    assert parallel.diagnostics == sequential.diagnostics


def test_run_generate_without_collections_writes_nothing(
    tmp_path: Path,
    write_tree: Callable[[str, dict[str, str]], Path],
    capsys: pytest.CaptureFixture[str],
) -> None:
    src = write_tree("src", {"pkg/__init__.py": "class Plain:\n    pass\n"})
    output_dir = tmp_path / "out" / "app_registries"

    run = registry_gen.run_generate(_config(src, output_dir))
    output = capsys.readouterr().out

    assert run.written is None
    assert run.generation.units == ()
    assert not output_dir.exists()
    assert "Written: nothing" in output
    assert "Files written: none" in output


def test_run_generate_reports_progress(
    shapes_sources: dict[str, str],
    tmp_path: Path,
    write_tree: Callable[[str, dict[str, str]], Path],
    capsys: pytest.CaptureFixture[str],
) -> None:
    src = write_tree("src", shapes_sources)

    registry_gen.run_generate(_config(src, tmp_path / "out" / "app_registries"))
    output = capsys.readouterr().out

    assert f"Parsing: {src}" in output
    assert "  Modules: 1, 8 classes" in output
    assert "  Discovered: 1 collections, 6 options across 1 modules" in output
    assert "  Written: 3 files" in output
    assert "Registries generated for app:" in output


# ===--- main ---=== #


def test_main_generates_and_exits_cleanly(
    shapes_sources: dict[str, str],
    tmp_path: Path,
    write_tree: Callable[[str, dict[str, str]], Path],
) -> None:
    src = write_tree("src", shapes_sources)
    output_dir = tmp_path / "out" / "app_registries"

    registry_gen.main(["--source", str(src), "--output-dir", str(output_dir)])

    assert sorted(p.name for p in output_dir.iterdir()) == [
        "__init__.py",
        "empty_shape.py",
        "shapes.py",
    ]


def test_main_exits_1_on_error_diagnostics(
    tmp_path: Path,
    write_tree: Callable[[str, dict[str, str]], Path],
    capsys: pytest.CaptureFixture[str],
) -> None:
    src = write_tree("src", ABSTRACT_NAMED)

    with pytest.raises(SystemExit) as exc_info:
        registry_gen.main(["--source", str(src), "--output-dir", str(tmp_path / "out")])

    output = capsys.readouterr().out
    assert exc_info.value.code == 1
    assert "named/base.py:" in output
    assert ": error RG102: Base type 'Named' declares abstract property 'display_name'" in output


def test_main_exits_1_on_syntax_errors(
    tmp_path: Path,
    write_tree: Callable[[str, dict[str, str]], Path],
    capsys: pytest.CaptureFixture[str],
) -> None:
    src = write_tree("src", {"pkg/__init__.py": "class Broken(:\n"})

    with pytest.raises(SystemExit) as exc_info:
        registry_gen.main(["--source", str(src)])

    assert exc_info.value.code == 1
    assert "Error:" in capsys.readouterr().out


def test_main_discovery_short_circuits_generate_path(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    discovery = registry_gen.DiscoveryConfig(
        command="list-collections",
        info_collection=None,
        source=ModuleSource("app", tmp_path),
        references=(),
    )
    calls = {"discovery": 0, "generate": 0}

    monkeypatch.setattr(registry_gen, "build_config", lambda _argv=None: discovery)
    monkeypatch.setattr(
        registry_gen,
        "run_discovery",
        lambda _cfg: calls.__setitem__("discovery", calls["discovery"] + 1),
    )
    monkeypatch.setattr(
        registry_gen,
        "run_generate",
        lambda _cfg: calls.__setitem__("generate", calls["generate"] + 1),
    )

    registry_gen.main()

    assert calls == {"discovery": 1, "generate": 0}


@pytest.mark.parametrize(
    "suggestion",
    [None, "Use --jobs 1 for sequential generation."],
)
def test_main_maps_config_errors_to_exit_1_with_message_format(
    suggestion: str | None,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    err = registry_gen.ConfigError("INVALID_JOBS", "--jobs must be a positive integer, got 0.", suggestion)
    monkeypatch.setattr(
        registry_gen, "build_config", lambda _argv=None: (_ for _ in ()).throw(err)
    )

    with pytest.raises(SystemExit) as exc_info:
        registry_gen.main()

    output = capsys.readouterr().out
    assert exc_info.value.code == 1
    assert "Config error [INVALID_JOBS]: --jobs must be a positive integer, got 0." in output
    if suggestion is None:
        assert "Hint:" not in output
    else:
        assert f"Hint: {suggestion}" in output


@pytest.mark.parametrize(
    ("error", "expected_prefix"),
    [
        (OSError("no such file"), "Error: no such file"),
        (RuntimeError("chain safety"), "Internal error: chain safety"),
        (ValueError("bad key"), "Internal error: bad key"),
    ],
)
def test_main_maps_pipeline_errors_to_exit_1(
    error: Exception,
    expected_prefix: str,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    config = _config(tmp_path, tmp_path / "out")
    monkeypatch.setattr(registry_gen, "build_config", lambda _argv=None: config)
    monkeypatch.setattr(
        registry_gen, "run_generate", lambda _cfg: (_ for _ in ()).throw(error)
    )

    with pytest.raises(SystemExit) as exc_info:
        registry_gen.main()

    assert exc_info.value.code == 1
    assert expected_prefix in capsys.readouterr().out
