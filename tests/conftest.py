import argparse
import importlib
import sys
import textwrap
from collections.abc import Callable, Iterator
from pathlib import Path
from types import ModuleType

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import registry_gen  # noqa: E402

SHAPES_BASE = '''
from abc import ABC, abstractmethod

from registry_gen import lookup


class Shape(ABC):
    def __init__(self, id: int, name: str, sides: int = 0) -> None:
        self._id = id
        self._name = name
        self._sides = sides

    @property
    def id(self) -> int:
        return self._id

    @lookup("by_name")
    @property
    def name(self) -> str:
        return self._name

    @lookup("by_sides", allow_multiple=True)
    @property
    def sides(self) -> int:
        return self._sides

    @abstractmethod
    def area(self, scale: float) -> float:
        ...

    @abstractmethod
    def describe(self) -> str:
        ...
'''

SHAPES_CATALOG = '''
from registry_gen import RegistryBase, collection

from shapes.base import Shape


@collection(Shape)
class Shapes(RegistryBase[Shape]):
    pass
'''

SHAPES_CIRCLE = '''
from registry_gen import option

from shapes.base import Shape
from shapes.catalog import Shapes


@option(Shapes)
class Circle(Shape):
    def __init__(self) -> None:
        super().__init__(1, "circle")

    def area(self, scale: float) -> float:
        return 3.0 * scale

    def describe(self) -> str:
        return "round"
'''

SHAPES_POLYGONS = '''
from registry_gen import option

from shapes.base import Shape
from shapes.catalog import Shapes


@option(Shapes)
class Square(Shape):
    def __init__(self) -> None:
        super().__init__(2, "square", sides=4)

    def area(self, scale: float) -> float:
        return scale * scale

    def describe(self) -> str:
        return "four equal sides"


@option(Shapes, key="Diamond")
class Rhombus(Shape):
    def __init__(self) -> None:
        super().__init__(4, "rhombus", sides=4)

    def area(self, scale: float) -> float:
        return scale

    def describe(self) -> str:
        return "tilted"


@option(Shapes)
class Hexagon(Shape):
    SIDES = 6

    def __init__(self) -> None:
        super().__init__(self.SIDES, "hexagon", sides=self.SIDES)

    def area(self, scale: float) -> float:
        return 2.6 * scale

    def describe(self) -> str:
        return "honeycomb"


@option(Shapes)
class Polygon(Shape):
    def describe(self) -> str:
        return "abstract"


@option(Shapes)
class Custom(Shape):
    def __init__(self, id: int) -> None:
        super().__init__(id, "custom")

    def area(self, scale: float) -> float:
        return 0.0

    def describe(self) -> str:
        return "custom"
'''

SHAPES_SOURCES: dict[str, str] = {
    "shapes/__init__.py": "",
    "shapes/base.py": SHAPES_BASE,
    "shapes/catalog.py": SHAPES_CATALOG,
    "shapes/circle.py": SHAPES_CIRCLE,
    "shapes/polygons.py": SHAPES_POLYGONS,
}


def dedent_sources(sources: dict[str, str]) -> dict[str, str]:
    return {path: textwrap.dedent(text).lstrip("\n") for path, text in sources.items()}


@pytest.fixture
def shapes_sources() -> dict[str, str]:
    return dict(SHAPES_SOURCES)


@pytest.fixture
def make_module() -> Callable[..., registry_gen.ModuleSymbol]:
    def _make_module(name: str, sources: dict[str, str]) -> registry_gen.ModuleSymbol:
        return registry_gen.build_module_symbol(name, dedent_sources(sources))

    return _make_module


@pytest.fixture
def make_graph(
    make_module: Callable[..., registry_gen.ModuleSymbol],
) -> Callable[..., registry_gen.SymbolGraph]:
    def _make_graph(
        modules: dict[str, dict[str, str]], current: str | None = None
    ) -> registry_gen.SymbolGraph:
        built = [make_module(name, sources) for name, sources in modules.items()]
        return registry_gen.build_symbol_graph(built, current or next(iter(modules)))

    return _make_graph


@pytest.fixture
def write_tree(tmp_path: Path) -> Callable[[str, dict[str, str]], Path]:
    def _write_tree(root_name: str, files: dict[str, str]) -> Path:
        root = tmp_path / root_name
        for relative, text in dedent_sources(files).items():
            path = root / relative
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(text, encoding="utf-8")
        return root

    return _write_tree


@pytest.fixture
def import_fresh(monkeypatch: pytest.MonkeyPatch) -> Iterator[Callable[..., ModuleType]]:
    before = set(sys.modules)

    def _import_fresh(name: str, *paths: Path) -> ModuleType:
        for path in paths:
            monkeypatch.syspath_prepend(str(path))
        importlib.invalidate_caches()
        return importlib.import_module(name)

    yield _import_fresh

    for name in set(sys.modules) - before:
        sys.modules.pop(name, None)


@pytest.fixture
def make_args(tmp_path: Path) -> Callable[..., argparse.Namespace]:
    source = tmp_path / "src"
    source.mkdir(exist_ok=True)

    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "source": str(source),
            "reference": None,
            "output_dir": None,
            "accessor_style": None,
            "exposure": None,
            "lookup_maps": None,
            "jobs": None,
            "list_collections": False,
            "info": None,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args
