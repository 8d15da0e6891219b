"""Declarative registry generator for Python source trees.

Scans one or more source roots for classes marked with ``@collection`` and
``@option`` and writes a package of registry modules: O(1) lookups keyed on
an integer identity, optional secondary lookups, singleton accessors and a
null-object fallback per base type.

User code imports the markers from this module:

    from registry_gen import RegistryBase, collection, lookup, option

Usage:
    python registry_gen.py --source src --reference libs/core=../core/src \\
        --output-dir src/app_registries
"""

import argparse
import ast
import builtins
import keyword
import re
import sys
from collections import deque
from collections.abc import Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import TypeVar

DEFAULT_OUTPUT_DIR = Path("registries")

MARKER_MODULE = "registry_gen"
COLLECTION_MARKER = f"{MARKER_MODULE}.collection"
OPTION_MARKER = f"{MARKER_MODULE}.option"
LOOKUP_MARKER = f"{MARKER_MODULE}.lookup"
REGISTRY_BASE = f"{MARKER_MODULE}.RegistryBase"
IDENTITY_PROPERTY = "id"


# ===--- Runtime markers ---=== #

_Marked = TypeVar("_Marked")


def collection(base: type, default_return: object = None, name: str | None = None):
    """Declare the decorated class as a registry of ``base`` subclasses.

    The generator reads the decorator syntactically; at runtime it only
    records its arguments on the class.

    Args:
        base: Base type every registered option derives from.
        default_return: Accessor return type used when the class does not
            subclass ``RegistryBase[...]``.
        name: Generated registry class name. Defaults to the class name.
    """

    def mark(cls: _Marked) -> _Marked:
        cls.__registry_collection__ = (base, default_return, name)
        return cls

    return mark


def option(collection_type: type, key: str | None = None):
    """Register the decorated class as a value of ``collection_type``."""

    def mark(cls: _Marked) -> _Marked:
        cls.__registry_option__ = (collection_type, key)
        return cls

    return mark


def lookup(method_name: str, allow_multiple: bool = False, return_type: object = None):
    """Request a generated secondary lookup over a base-type property.

    Stack it above ``@property``:

        @lookup("by_name")
        @property
        def name(self) -> str: ...
    """

    def mark(member: _Marked) -> _Marked:
        return member

    return mark


class RegistryBase:
    """Optional base for declared collections.

    ``RegistryBase[TBase]`` or ``RegistryBase[TBase, TReturn]`` fixes the
    return type of every generated accessor.
    """

    def __class_getitem__(cls, params):
        return cls


# ===--- CLI config contracts ---=== #


ACCESSOR_STYLES = ("property", "method")
EXPOSURE_MODES = ("singleton", "factory")
LOOKUP_MAP_MODES = ("frozen", "alternate")


@dataclass(frozen=True)
class EmitOptions:
    accessor_style: str = "property"
    exposure: str = "singleton"
    lookup_maps: str = "frozen"


@dataclass(frozen=True)
class ModuleSource:
    name: str
    path: Path


@dataclass(frozen=True)
class GenerateConfig:
    source: ModuleSource
    references: tuple[ModuleSource, ...]
    output_dir: Path
    options: EmitOptions
    jobs: int


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str
    info_collection: str | None
    source: ModuleSource
    references: tuple[ModuleSource, ...]


VALID_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "INVALID_JOBS",
    "CONFLICT_GENERATE_DISCOVERY",
    "DUPLICATE_MODULE_NAME",
    "MISSING_SOURCE",
}
_MODULE_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_.-]*$")


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/src",
        )
    if path.is_dir():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} is not an existing directory: {path}",
        suggestion or "Point this flag at a source root directory.",
    )


def parse_module_source(raw: str, flag: str) -> ModuleSource:
    """Parse ``PATH`` or ``NAME=PATH`` into a ModuleSource.

    Without an explicit name the directory name is used.
    """
    name, sep, path_text = raw.partition("=")
    if not sep or not _MODULE_NAME_RE.match(name):
        name, path_text = "", raw
    path = validate_path_exists(Path(path_text), flag)
    return ModuleSource(name=name or path.resolve().name, path=path)


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate declarative registries for a Python source tree"
    )

    parser.add_argument("--source", type=str, default=None)
    parser.add_argument("--reference", action="append", default=None)
    parser.add_argument("--output-dir", type=Path, default=None)
    parser.add_argument(
        "--accessor-style", choices=ACCESSOR_STYLES, default=None
    )
    parser.add_argument("--exposure", choices=EXPOSURE_MODES, default=None)
    parser.add_argument("--lookup-maps", choices=LOOKUP_MAP_MODES, default=None)
    parser.add_argument("--jobs", type=int, default=None)

    discovery_group = parser.add_mutually_exclusive_group()
    discovery_group.add_argument(
        "--list-collections", action="store_true", default=False
    )
    discovery_group.add_argument("--info", type=str, default=None)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def _validate_modules(args: argparse.Namespace) -> tuple[ModuleSource, tuple[ModuleSource, ...]]:
    if args.source is None:
        raise ConfigError(
            "MISSING_SOURCE",
            "--source is required.",
            "Pass the source root of the module to generate for: --source src",
        )
    source = parse_module_source(args.source, "--source")
    references = tuple(
        parse_module_source(raw, "--reference") for raw in (args.reference or ())
    )

    seen: set[str] = set()
    for module in (source, *references):
        if module.name in seen:
            raise ConfigError(
                "DUPLICATE_MODULE_NAME",
                f"Two source roots share the module name '{module.name}'.",
                "Name one of them explicitly: --reference NAME=PATH",
            )
        seen.add(module.name)
    return source, references


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    has_generate_input = bool(
        args.output_dir is not None
        or args.jobs is not None
        or args.accessor_style
        or args.exposure
        or args.lookup_maps
    )
    has_discovery_command = bool(args.list_collections or args.info)

    if has_generate_input and has_discovery_command:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "Generate flags cannot be combined with discovery flags.",
            "Choose either generate mode or one discovery command.",
        )

    source, references = _validate_modules(args)

    if has_discovery_command:
        return DiscoveryConfig(
            command="list-collections" if args.list_collections else "info",
            info_collection=args.info,
            source=source,
            references=references,
        )

    jobs = 1 if args.jobs is None else args.jobs
    if jobs < 1:
        raise ConfigError(
            "INVALID_JOBS",
            f"--jobs must be a positive integer, got {jobs}.",
            "Use --jobs 1 for sequential generation.",
        )

    return GenerateConfig(
        source=source,
        references=references,
        output_dir=args.output_dir or DEFAULT_OUTPUT_DIR,
        options=EmitOptions(
            accessor_style=args.accessor_style or "property",
            exposure=args.exposure or "singleton",
            lookup_maps=args.lookup_maps or "frozen",
        ),
        jobs=jobs,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Diagnostics ---=== #


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class SourceLocation:
    path: str
    line: int
    column: int

    def __str__(self) -> str:
        return f"{self.path}:{self.line}:{self.column}"


NO_LOCATION = SourceLocation("<unknown>", 0, 0)


@dataclass(frozen=True)
class Diagnostic:
    """One generator finding attached to a source location.

    Attributes:
        code: Stable identifier, RG1xx for validation and RG2xx for emission.
        severity: ERROR fails the run; WARNING and INFO are reported only.
        message: Human-readable message with the offending names filled in.
        location: Where the offending declaration lives.
    """

    code: str
    severity: Severity
    message: str
    location: SourceLocation = NO_LOCATION

    def __str__(self) -> str:
        return f"{self.location}: {self.severity.value} {self.code}: {self.message}"


DIAGNOSTIC_CODES: dict[str, tuple[Severity, str]] = {
    "RG101": (
        Severity.ERROR,
        "Base type '{base}' of collection '{collection}' cannot be resolved",
    ),
    "RG102": (
        Severity.ERROR,
        "Base type '{base}' declares abstract property '{member}'; "
        "registry values need concrete properties",
    ),
    "RG103": (
        Severity.WARNING,
        "Option '{name}' is declared by unrelated classes in '{first}' and "
        "'{second}'; keeping the one from '{first}'",
    ),
    "RG104": (
        Severity.ERROR,
        "Options '{first}' and '{second}' of collection '{collection}' share "
        "primary key {key}",
    ),
    "RG105": (
        Severity.ERROR,
        "Accessor name '{accessor}' of collection '{collection}' is used by "
        "'{first}' and '{second}'",
    ),
    "RG106": (
        Severity.WARNING,
        "Option '{name}' does not derive from base type '{base}' of "
        "collection '{collection}'",
    ),
    "RG107": (
        Severity.ERROR,
        "Lookup method '{method}' for property '{property}' of collection "
        "'{collection}' collides with {owner}",
    ),
    "RG201": (
        Severity.ERROR,
        "Generating collection '{collection}' failed: {reason}",
    ),
    "RG202": (
        Severity.ERROR,
        "Collection '{collection}' would overwrite generated module '{module}'",
    ),
}


def make_diagnostic(code: str, location: SourceLocation, **fields: object) -> Diagnostic:
    if code not in DIAGNOSTIC_CODES:
        raise ValueError(f"Unknown diagnostic code: {code}")
    severity, template = DIAGNOSTIC_CODES[code]
    return Diagnostic(
        code=code,
        severity=severity,
        message=template.format(**fields),
        location=location,
    )


def has_errors(diagnostics: Iterable[Diagnostic]) -> bool:
    return any(d.severity is Severity.ERROR for d in diagnostics)


# ===--- Symbol graph ---=== #

UNION = "typing.Union"
NONE_TYPE = "builtins.None"
TYPE_PARAM_PREFIX = "~"
RAW_PREFIX = "="
_CHAIN_SAFETY_LIMIT = 256

_BUILTIN_NAMES = frozenset(dir(builtins))
_TYPING_ALIASES = {
    "typing.List": "builtins.list",
    "typing.Dict": "builtins.dict",
    "typing.Set": "builtins.set",
    "typing.FrozenSet": "builtins.frozenset",
    "typing.Tuple": "builtins.tuple",
    "typing.Type": "builtins.type",
    "typing.Text": "builtins.str",
    "typing_extensions.Protocol": "typing.Protocol",
}
_PROTOCOL_BASES = frozenset({"typing.Protocol"})
_GENERIC_BASES = frozenset({"typing.Generic", "typing.Protocol"})
_TYPEVAR_FACTORIES = frozenset(
    {
        "typing.TypeVar",
        "typing.ParamSpec",
        "typing.TypeVarTuple",
        "typing_extensions.TypeVar",
    }
)
_MARKERS = frozenset({COLLECTION_MARKER, OPTION_MARKER, LOOKUP_MARKER})


@dataclass(frozen=True)
class TypeRef:
    """Reference to a type as written in an annotation or base list.

    Attributes:
        name: Qualified name ("shapes.base.Shape", "builtins.int"). Type
            parameters carry a "~" prefix and unparsable expressions a "="
            prefix followed by their source text.
        args: Generic arguments, in order.
        display: Source text of the reference, for messages only.
    """

    name: str
    args: tuple["TypeRef", ...] = ()
    display: str = field(default="", compare=False)

    @property
    def simple_name(self) -> str:
        return self.name.lstrip(TYPE_PARAM_PREFIX).rsplit(".", 1)[-1]

    def signature(self) -> str:
        if not self.args:
            return self.name
        return f"{self.name}[{','.join(arg.signature() for arg in self.args)}]"

    def __str__(self) -> str:
        return self.display or self.signature()


@dataclass(frozen=True)
class TypeParameter:
    name: str
    source: str
    declared_in: str | None = None


@dataclass(frozen=True)
class MarkerData:
    marker: str
    args: tuple[object, ...]
    kwargs: tuple[tuple[str, object], ...]
    location: SourceLocation

    def argument(self, index: int, name: str, default: object = None) -> object:
        if index < len(self.args):
            return self.args[index]
        for key, value in self.kwargs:
            if key == name:
                return value
        return default


@dataclass(frozen=True)
class ParameterSymbol:
    name: str
    annotation: TypeRef | None
    default_source: str | None
    kind: str = "positional"

    @property
    def required(self) -> bool:
        return self.default_source is None and self.kind in ("positional", "keyword")


@dataclass(frozen=True)
class MethodSymbol:
    name: str
    parameters: tuple[ParameterSymbol, ...]
    return_type: TypeRef | None
    is_abstract: bool
    is_async: bool
    kind: str
    location: SourceLocation

    def signature(self) -> str:
        params = ",".join(
            p.annotation.signature() if p.annotation is not None else "?"
            for p in self.parameters
        )
        return f"{self.name}({params})"


@dataclass(frozen=True)
class PropertySymbol:
    name: str
    type: TypeRef | None
    is_abstract: bool
    markers: tuple[MarkerData, ...]
    location: SourceLocation


@dataclass(frozen=True, eq=False)
class TypeSymbol:
    """A class declaration of the symbol graph.

    Identity equality: two symbols are the same declaration only when they
    are the same object, even if their qualified names match.
    """

    name: str
    qualname: str
    namespace: str
    module: str
    bases: tuple[TypeRef, ...]
    markers: tuple[MarkerData, ...]
    methods: tuple[MethodSymbol, ...]
    properties: tuple[PropertySymbol, ...]
    constructor: MethodSymbol | None
    type_parameters: tuple[TypeParameter, ...]
    nested: tuple["TypeSymbol", ...]
    is_protocol: bool
    declaration: ast.ClassDef = field(repr=False)
    location: SourceLocation = NO_LOCATION
    dataclass_fields: tuple[ParameterSymbol, ...] | None = None

    @property
    def full_name(self) -> str:
        return f"{self.namespace}.{self.qualname}"

    def markers_of(self, marker: str) -> tuple[MarkerData, ...]:
        return tuple(m for m in self.markers if m.marker == marker)


@dataclass(frozen=True)
class NamespaceSymbol:
    name: str
    path: str
    types: tuple[TypeSymbol, ...]
    aliases: dict[str, str]
    imports: frozenset[str]
    type_vars: dict[str, str]


@dataclass(frozen=True)
class ModuleSymbol:
    name: str
    root: str
    namespaces: tuple[NamespaceSymbol, ...]
    references: tuple[str, ...] = ()


@dataclass(frozen=True)
class SymbolGraph:
    """Immutable multi-module symbol graph.

    Attributes:
        current: Name of the module registries are generated for.
        modules: Every module of the graph, the current one included.
        type_index: Full type name to declarations, in module order.
        namespace_index: Namespace name to its declarations across modules.
        closures: Module name to its transitive references, breadth-first
            with siblings in lexicographic order.
    """

    current: str
    modules: tuple[ModuleSymbol, ...]
    type_index: dict[str, tuple[TypeSymbol, ...]]
    namespace_index: dict[str, tuple[NamespaceSymbol, ...]]
    closures: dict[str, tuple[str, ...]]

    def module(self, name: str) -> ModuleSymbol:
        for module in self.modules:
            if module.name == name:
                return module
        raise KeyError(name)

    def search_order(self, module_name: str | None) -> tuple[str, ...]:
        if module_name is None:
            module_name = self.current
        ordered = [module_name, *self.closures.get(module_name, ())]
        ordered.extend(sorted(m.name for m in self.modules if m.name not in ordered))
        return tuple(ordered)


def iter_types(types: Iterable[TypeSymbol]) -> Iterator[TypeSymbol]:
    """Yield types and their nested classes depth-first in declaration order."""
    stack = list(reversed(tuple(types)))
    while stack:
        symbol = stack.pop()
        yield symbol
        stack.extend(reversed(symbol.nested))


def split_qualified_name(graph: SymbolGraph, name: str) -> tuple[str, str]:
    """Split a qualified name into (namespace, qualname).

    Prefers the longest known namespace prefix; unknown names split at the
    last dot. Names without a dot have no namespace.
    """
    parts = name.split(".")
    for cut in range(len(parts) - 1, 0, -1):
        prefix = ".".join(parts[:cut])
        if prefix in graph.namespace_index:
            return prefix, ".".join(parts[cut:])
    head, _, tail = name.rpartition(".")
    return head, tail


def _pick_symbol(
    graph: SymbolGraph,
    candidates: tuple[TypeSymbol, ...],
    from_module: str | None,
    exclude: TypeSymbol | None,
) -> TypeSymbol | None:
    candidates = tuple(c for c in candidates if c is not exclude)
    if not candidates:
        return None
    if len(candidates) == 1:
        return candidates[0]
    for module_name in graph.search_order(from_module):
        for candidate in candidates:
            if candidate.module == module_name:
                return candidate
    return candidates[0]


def _alias_target(graph: SymbolGraph, name: str) -> str | None:
    parts = name.split(".")
    for cut in range(len(parts) - 1, 0, -1):
        prefix = ".".join(parts[:cut])
        head, rest = parts[cut], parts[cut + 1 :]
        for namespace in graph.namespace_index.get(prefix, ()):
            target = namespace.aliases.get(head)
            if target is not None and target != name:
                return ".".join([target, *rest])
    return None


def resolve_type(
    graph: SymbolGraph,
    name: str,
    from_module: str | None = None,
    exclude: TypeSymbol | None = None,
) -> TypeSymbol | None:
    """Resolve a qualified name to a class declaration.

    Follows import aliases (re-exports) until a declaration is found. When
    several modules declare the same name, the one closest to from_module
    in search order wins.

    Raises:
        RuntimeError: If alias following exceeds _CHAIN_SAFETY_LIMIT.
    """
    seen: set[str] = set()
    pending = name
    for _ in range(_CHAIN_SAFETY_LIMIT):
        symbol = _pick_symbol(
            graph, graph.type_index.get(pending, ()), from_module, exclude
        )
        if symbol is not None:
            return symbol
        target = _alias_target(graph, pending)
        if target is None or target in seen:
            return None
        seen.add(target)
        pending = target
    raise RuntimeError(
        f"Alias resolution exceeded safety limit ({_CHAIN_SAFETY_LIMIT}) for {name}"
    )


def base_type(graph: SymbolGraph, symbol: TypeSymbol) -> TypeSymbol | None:
    """Return the first base of symbol that resolves to a graph declaration."""
    for ref in symbol.bases:
        if ref.name in _GENERIC_BASES or ref.name == REGISTRY_BASE:
            continue
        exclude = symbol if ref.name == symbol.full_name else None
        parent = resolve_type(graph, ref.name, symbol.module, exclude)
        if parent is not None:
            return parent
    return None


def base_chain(graph: SymbolGraph, symbol: TypeSymbol) -> tuple[TypeSymbol, ...]:
    """Return symbol followed by its ancestors along the first-base chain.

    Raises:
        RuntimeError: If the chain exceeds _CHAIN_SAFETY_LIMIT.
    """
    chain = [symbol]
    seen = {id(symbol)}
    current = symbol
    for _ in range(_CHAIN_SAFETY_LIMIT):
        parent = base_type(graph, current)
        if parent is None or id(parent) in seen:
            return tuple(chain)
        chain.append(parent)
        seen.add(id(parent))
        current = parent
    raise RuntimeError(
        f"Base chain exceeded safety limit ({_CHAIN_SAFETY_LIMIT}) for {symbol.full_name}"
    )


def marker_available(graph: SymbolGraph) -> bool:
    """True when some namespace of the graph imports the marker module."""
    if MARKER_MODULE in graph.namespace_index:
        return True
    return any(
        MARKER_MODULE in namespace.imports
        for module in graph.modules
        for namespace in module.namespaces
    )


# ===--- Source loading (ast) ---=== #


class _NameTable:
    def __init__(
        self,
        namespace: str,
        aliases: dict[str, str],
        local_names: dict[str, str],
        type_params: frozenset[str] = frozenset(),
    ):
        self.namespace = namespace
        self.aliases = aliases
        self.local_names = local_names
        self.type_params = type_params

    def nested(self, type_params: Iterable[str], class_names: dict[str, str]) -> "_NameTable":
        return _NameTable(
            self.namespace,
            self.aliases,
            {**self.local_names, **class_names},
            self.type_params | frozenset(type_params),
        )

    def lookup(self, name: str) -> str:
        if name in self.type_params:
            return f"{TYPE_PARAM_PREFIX}{name}"
        if name in self.local_names:
            return self.local_names[name]
        if name in self.aliases:
            return self.aliases[name]
        if name in _BUILTIN_NAMES:
            return f"builtins.{name}"
        return name


def _qualify(node: ast.expr, table: _NameTable) -> str | None:
    if isinstance(node, ast.Name):
        return table.lookup(node.id)
    if isinstance(node, ast.Attribute):
        owner = _qualify(node.value, table)
        return f"{owner}.{node.attr}" if owner else None
    return None


def _raw_ref(node: ast.expr) -> TypeRef:
    text = ast.unparse(node)
    return TypeRef(f"{RAW_PREFIX}{text}", display=text)


def type_ref_from_node(node: ast.expr | None, table: _NameTable) -> TypeRef | None:
    """Build a TypeRef from an annotation or base expression."""
    if node is None:
        return None
    display = ast.unparse(node)
    if isinstance(node, ast.Constant):
        if node.value is None:
            return TypeRef(NONE_TYPE, display="None")
        if isinstance(node.value, str):
            try:
                parsed = ast.parse(node.value, mode="eval").body
            except SyntaxError:
                return TypeRef(f"{RAW_PREFIX}{node.value}", display=node.value)
            return type_ref_from_node(parsed, table)
        return _raw_ref(node)
    if isinstance(node, ast.BinOp) and isinstance(node.op, ast.BitOr):
        members: list[TypeRef] = []
        for side in (node.left, node.right):
            ref = type_ref_from_node(side, table)
            if ref.name == UNION:
                members.extend(ref.args)
            else:
                members.append(ref)
        return TypeRef(UNION, tuple(members), display)
    if isinstance(node, ast.List):
        return TypeRef(
            f"{RAW_PREFIX}[]",
            tuple(type_ref_from_node(elt, table) for elt in node.elts),
            display,
        )
    if isinstance(node, ast.Subscript):
        origin = _qualify(node.value, table)
        if origin is None:
            return _raw_ref(node)
        origin = _TYPING_ALIASES.get(origin, origin)
        elements = node.slice.elts if isinstance(node.slice, ast.Tuple) else [node.slice]
        if origin == "typing.Literal":
            args = tuple(_raw_ref(elt) for elt in elements)
        else:
            args = tuple(type_ref_from_node(elt, table) for elt in elements)
        if origin == "typing.Optional":
            return TypeRef(UNION, (*args, TypeRef(NONE_TYPE, display="None")), display)
        return TypeRef(origin, args, display)
    qualified = _qualify(node, table)
    if qualified is None:
        return _raw_ref(node)
    if qualified == "builtins.Ellipsis" or display == "...":
        return TypeRef(f"{RAW_PREFIX}...", display="...")
    return TypeRef(_TYPING_ALIASES.get(qualified, qualified), display=display)


def _marker_value(node: ast.expr, table: _NameTable) -> object:
    if isinstance(node, ast.Constant):
        return node.value
    literal = _int_literal(node)
    if literal is not None:
        return literal
    if isinstance(node, (ast.Name, ast.Attribute, ast.Subscript, ast.BinOp)):
        return type_ref_from_node(node, table)
    return ast.unparse(node)


def _location(path: str, node: ast.AST) -> SourceLocation:
    return SourceLocation(path, node.lineno, node.col_offset + 1)


def _read_marker(
    decorator: ast.expr, table: _NameTable, path: str
) -> MarkerData | None:
    target = decorator.func if isinstance(decorator, ast.Call) else decorator
    qualified = _qualify(target, table)
    if qualified not in _MARKERS:
        return None
    if not isinstance(decorator, ast.Call):
        return MarkerData(qualified, (), (), _location(path, decorator))
    return MarkerData(
        marker=qualified,
        args=tuple(_marker_value(arg, table) for arg in decorator.args),
        kwargs=tuple(
            (kw.arg, _marker_value(kw.value, table))
            for kw in decorator.keywords
            if kw.arg is not None
        ),
        location=_location(path, decorator),
    )


def _parameter(
    arg: ast.arg, default: ast.expr | None, kind: str, table: _NameTable
) -> ParameterSymbol:
    return ParameterSymbol(
        name=arg.arg,
        annotation=type_ref_from_node(arg.annotation, table),
        default_source=ast.unparse(default) if default is not None else None,
        kind=kind,
    )


def _parameters(
    args: ast.arguments, table: _NameTable, skip_first: bool
) -> tuple[ParameterSymbol, ...]:
    positional = [*args.posonlyargs, *args.args]
    defaults: list[ast.expr | None] = [None] * (len(positional) - len(args.defaults))
    defaults.extend(args.defaults)

    params: list[ParameterSymbol] = []
    for index, (arg, default) in enumerate(zip(positional, defaults)):
        if skip_first and index == 0:
            continue
        params.append(_parameter(arg, default, "positional", table))
    if args.vararg is not None:
        params.append(_parameter(args.vararg, None, "var_positional", table))
    for arg, default in zip(args.kwonlyargs, args.kw_defaults):
        params.append(_parameter(arg, default, "keyword", table))
    if args.kwarg is not None:
        params.append(_parameter(args.kwarg, None, "var_keyword", table))
    return tuple(params)


def _decorator_names(node: ast.FunctionDef | ast.AsyncFunctionDef, table: _NameTable) -> list[str]:
    names: list[str] = []
    for decorator in node.decorator_list:
        target = decorator.func if isinstance(decorator, ast.Call) else decorator
        if isinstance(target, ast.Attribute) and target.attr in ("setter", "getter", "deleter"):
            names.append("accessor")
            continue
        names.append(_qualify(target, table) or "")
    return names


def _class_type_parameters(
    node: ast.ClassDef, table: _NameTable, type_vars: dict[str, str]
) -> tuple[TypeParameter, ...]:
    declared = getattr(node, "type_params", None) or []
    if declared:
        return tuple(TypeParameter(tp.name, ast.unparse(tp)) for tp in declared)

    found: dict[str, TypeParameter] = {}
    for base in node.bases:
        if not isinstance(base, ast.Subscript):
            continue
        qualified = _qualify(base.value, table) or ""
        origin = _TYPING_ALIASES.get(qualified, qualified)
        elements = base.slice.elts if isinstance(base.slice, ast.Tuple) else [base.slice]
        for element in elements:
            for sub in ast.walk(element):
                if not isinstance(sub, ast.Name) or sub.id in found:
                    continue
                if origin in _GENERIC_BASES or sub.id in type_vars:
                    found[sub.id] = TypeParameter(
                        sub.id, sub.id, declared_in=table.lookup(sub.id)
                    )
    return tuple(found.values())


_DATACLASS_DECORATORS = frozenset({"dataclasses.dataclass"})
_DATACLASS_FIELD = "dataclasses.field"


def _keyword_flag(call: ast.Call, name: str) -> bool | None:
    for kw in call.keywords:
        if kw.arg == name and isinstance(kw.value, ast.Constant):
            return bool(kw.value.value)
    return None


def _dataclass_fields(
    node: ast.ClassDef, table: _NameTable
) -> tuple[ParameterSymbol, ...] | None:
    """Parameters of the __init__ a dataclass decorator generates.

    Returns None when the class is not a dataclass or asks for init=False.
    Only the class's own fields are returned; inherited ones are merged by
    find_constructor.
    """
    decorator = next(
        (
            d
            for d in node.decorator_list
            if _qualify(d.func if isinstance(d, ast.Call) else d, table) in _DATACLASS_DECORATORS
        ),
        None,
    )
    if decorator is None:
        return None
    kw_only = False
    if isinstance(decorator, ast.Call):
        if _keyword_flag(decorator, "init") is False:
            return None
        kw_only = bool(_keyword_flag(decorator, "kw_only"))

    params: list[ParameterSymbol] = []
    for stmt in node.body:
        if not (isinstance(stmt, ast.AnnAssign) and isinstance(stmt.target, ast.Name)):
            continue
        annotation = type_ref_from_node(stmt.annotation, table)
        if annotation.name == "dataclasses.KW_ONLY":
            kw_only = True
            continue
        if annotation.name == "typing.ClassVar":
            continue
        if annotation.name == "dataclasses.InitVar" and annotation.args:
            annotation = annotation.args[0]

        default: str | None = None
        field_kw_only = kw_only
        value = stmt.value
        if (
            isinstance(value, ast.Call)
            and _qualify(value.func, table) == _DATACLASS_FIELD
        ):
            if _keyword_flag(value, "init") is False:
                continue
            flag = _keyword_flag(value, "kw_only")
            if flag is not None:
                field_kw_only = flag
            for kw in value.keywords:
                if kw.arg == "default":
                    default = ast.unparse(kw.value)
                elif kw.arg == "default_factory":
                    default = f"{ast.unparse(kw.value)}()"
        elif value is not None:
            default = ast.unparse(value)

        params.append(
            ParameterSymbol(
                name=stmt.target.id,
                annotation=annotation,
                default_source=default,
                kind="keyword" if field_kw_only else "positional",
            )
        )
    return tuple(params)


def _build_type(
    node: ast.ClassDef,
    namespace: str,
    module: str,
    outer_qualname: str,
    table: _NameTable,
    type_vars: dict[str, str],
    path: str,
) -> TypeSymbol:
    qualname = f"{outer_qualname}.{node.name}" if outer_qualname else node.name
    class_names = {
        child.name: f"{namespace}.{qualname}.{child.name}"
        for child in node.body
        if isinstance(child, ast.ClassDef)
    }
    pep695 = [tp.name for tp in getattr(node, "type_params", None) or []]
    inner = table.nested(pep695, class_names)

    bases = tuple(type_ref_from_node(base, inner) for base in node.bases)
    markers = tuple(
        marker
        for marker in (_read_marker(d, table, path) for d in node.decorator_list)
        if marker is not None
    )

    methods: list[MethodSymbol] = []
    properties: list[PropertySymbol] = []
    nested: list[TypeSymbol] = []
    constructor: MethodSymbol | None = None
    for child in node.body:
        if isinstance(child, ast.ClassDef):
            nested.append(
                _build_type(child, namespace, module, qualname, inner, type_vars, path)
            )
            continue
        if not isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
            continue
        decorators = _decorator_names(child, inner)
        if "accessor" in decorators:
            continue
        is_abstract = any(
            d.rsplit(".", 1)[-1] in ("abstractmethod", "abstractproperty")
            for d in decorators
        )
        is_property = any(
            d in ("builtins.property", "functools.cached_property")
            or d.endswith("abstractproperty")
            for d in decorators
        )
        if is_property:
            properties.append(
                PropertySymbol(
                    name=child.name,
                    type=type_ref_from_node(child.returns, inner),
                    is_abstract=is_abstract,
                    markers=tuple(
                        marker
                        for marker in (
                            _read_marker(d, inner, path) for d in child.decorator_list
                        )
                        if marker is not None
                    ),
                    location=_location(path, child),
                )
            )
            continue
        if "builtins.staticmethod" in decorators:
            kind = "static"
        elif "builtins.classmethod" in decorators:
            kind = "class"
        else:
            kind = "instance"
        method = MethodSymbol(
            name=child.name,
            parameters=_parameters(child.args, inner, skip_first=kind != "static"),
            return_type=type_ref_from_node(child.returns, inner),
            is_abstract=is_abstract,
            is_async=isinstance(child, ast.AsyncFunctionDef),
            kind=kind,
            location=_location(path, child),
        )
        if child.name == "__init__":
            constructor = method
        else:
            methods.append(method)

    return TypeSymbol(
        name=node.name,
        qualname=qualname,
        namespace=namespace,
        module=module,
        bases=bases,
        markers=markers,
        methods=tuple(methods),
        properties=tuple(properties),
        constructor=constructor,
        type_parameters=_class_type_parameters(node, inner, type_vars),
        nested=tuple(nested),
        is_protocol=any(base.name in _PROTOCOL_BASES for base in bases),
        declaration=node,
        location=_location(path, node),
        dataclass_fields=_dataclass_fields(node, inner),
    )


def namespace_from_path(relative: str) -> str:
    parts = relative.removesuffix(".py").split("/")
    if parts[-1] == "__init__":
        parts = parts[:-1]
    return ".".join(parts)


def _top_level_statements(body: list[ast.stmt]) -> Iterator[ast.stmt]:
    """Yield module statements, descending into if/try blocks."""
    pending = deque(body)
    while pending:
        stmt = pending.popleft()
        yield stmt
        if isinstance(stmt, ast.If):
            pending.extend(stmt.body)
            pending.extend(stmt.orelse)
        elif isinstance(stmt, ast.Try):
            pending.extend(stmt.body)
            for handler in stmt.handlers:
                pending.extend(handler.body)
            pending.extend(stmt.orelse)


def _resolve_relative(namespace: str, is_package: bool, level: int, module: str | None) -> str:
    if level == 0:
        return module or ""
    parts = namespace.split(".") if namespace else []
    if not is_package:
        parts = parts[:-1]
    if level > 1:
        parts = parts[: len(parts) - (level - 1)]
    if module:
        parts.append(module)
    return ".".join(parts)


def build_namespace_symbol(
    namespace: str, source: str, path: str, module: str, is_package: bool = False
) -> NamespaceSymbol:
    """Parse one source file into a NamespaceSymbol.

    Raises:
        SyntaxError: If the source does not parse.
    """
    tree = ast.parse(source, filename=path)

    aliases: dict[str, str] = {}
    imports: set[str] = set()
    type_vars: dict[str, str] = {}
    local_names: dict[str, str] = {}
    for stmt in _top_level_statements(tree.body):
        if isinstance(stmt, ast.Import):
            for alias in stmt.names:
                imports.add(alias.name)
                if alias.asname:
                    aliases[alias.asname] = alias.name
                else:
                    top = alias.name.split(".", 1)[0]
                    aliases[top] = top
        elif isinstance(stmt, ast.ImportFrom):
            origin = _resolve_relative(namespace, is_package, stmt.level, stmt.module)
            if origin:
                imports.add(origin)
            for alias in stmt.names:
                if alias.name == "*":
                    continue
                target = f"{origin}.{alias.name}" if origin else alias.name
                imports.add(target)
                aliases[alias.asname or alias.name] = target
        elif isinstance(stmt, ast.ClassDef):
            local_names[stmt.name] = f"{namespace}.{stmt.name}"

    table = _NameTable(namespace, aliases, local_names)
    for stmt in _top_level_statements(tree.body):
        if (
            isinstance(stmt, ast.Assign)
            and len(stmt.targets) == 1
            and isinstance(stmt.targets[0], ast.Name)
            and isinstance(stmt.value, ast.Call)
            and _qualify(stmt.value.func, table) in _TYPEVAR_FACTORIES
        ):
            name = stmt.targets[0].id
            type_vars[name] = ast.unparse(stmt.value)
            local_names[name] = f"{namespace}.{name}"

    types = tuple(
        _build_type(stmt, namespace, module, "", table, type_vars, path)
        for stmt in tree.body
        if isinstance(stmt, ast.ClassDef)
    )
    return NamespaceSymbol(
        name=namespace,
        path=path,
        types=types,
        aliases=aliases,
        imports=frozenset(imports),
        type_vars=type_vars,
    )


def build_module_symbol(name: str, sources: dict[str, str], root: str = "") -> ModuleSymbol:
    """Build a ModuleSymbol from relative-path -> source text pairs.

    Relative paths use forward slashes ("shapes/base.py"). Files are parsed
    in sorted path order; a top-level __init__.py (the root itself) is not
    a namespace and is skipped.

    Raises:
        SyntaxError: If any source does not parse.
    """
    namespaces: list[NamespaceSymbol] = []
    for relative in sorted(sources):
        namespace = namespace_from_path(relative)
        if not namespace:
            continue
        path = str(Path(root) / relative) if root else relative
        namespaces.append(
            build_namespace_symbol(
                namespace,
                sources[relative],
                path,
                name,
                is_package=relative.endswith("__init__.py"),
            )
        )
    namespaces.sort(key=lambda ns: ns.name)
    return ModuleSymbol(name=name, root=root, namespaces=tuple(namespaces))


def load_module_from_path(path: Path, name: str | None = None) -> ModuleSymbol:
    """Read every .py file under a source root into a ModuleSymbol.

    Hidden directories and __pycache__ are skipped.

    Raises:
        OSError: If a file cannot be read.
        SyntaxError: If a file does not parse.
    """
    path = Path(path)
    sources: dict[str, str] = {}
    for file_path in sorted(path.rglob("*.py")):
        relative = file_path.relative_to(path)
        if any(part.startswith(".") or part == "__pycache__" for part in relative.parts):
            continue
        sources[relative.as_posix()] = file_path.read_text(encoding="utf-8")
    return build_module_symbol(name or path.resolve().name, sources, root=str(path))


def _module_references(module: ModuleSymbol, modules: tuple[ModuleSymbol, ...]) -> tuple[str, ...]:
    imported = set()
    for namespace in module.namespaces:
        imported |= namespace.imports
    referenced: list[str] = []
    for other in modules:
        if other.name == module.name:
            continue
        if any(namespace.name in imported for namespace in other.namespaces):
            referenced.append(other.name)
    return tuple(sorted(referenced))


def _reference_closure(name: str, references: dict[str, tuple[str, ...]]) -> tuple[str, ...]:
    visited = {name}
    ordered: list[str] = []
    queue = deque([name])
    while queue:
        current = queue.popleft()
        for referenced in references.get(current, ()):
            if referenced in visited:
                continue
            visited.add(referenced)
            ordered.append(referenced)
            queue.append(referenced)
    return tuple(ordered)


def build_symbol_graph(modules: Iterable[ModuleSymbol], current: str) -> SymbolGraph:
    """Link modules into a SymbolGraph rooted at the current module.

    Raises:
        ValueError: If two modules share a name, or current is not among them.
    """
    modules = tuple(modules)
    names = [m.name for m in modules]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate module names in symbol graph: {sorted(names)}")
    if current not in names:
        raise ValueError(f"Current module '{current}' is not part of the graph")

    linked = tuple(
        replace(module, references=_module_references(module, modules))
        for module in modules
    )
    references = {module.name: module.references for module in linked}

    type_index: dict[str, list[TypeSymbol]] = {}
    namespace_index: dict[str, list[NamespaceSymbol]] = {}
    for module in linked:
        for namespace in module.namespaces:
            namespace_index.setdefault(namespace.name, []).append(namespace)
            for symbol in iter_types(namespace.types):
                type_index.setdefault(symbol.full_name, []).append(symbol)

    return SymbolGraph(
        current=current,
        modules=linked,
        type_index={name: tuple(found) for name, found in type_index.items()},
        namespace_index={name: tuple(found) for name, found in namespace_index.items()},
        closures={name: _reference_closure(name, references) for name in references},
    )


# ===--- Marker scanner ---=== #


@dataclass(frozen=True)
class OptionCandidate:
    symbol: TypeSymbol
    marker: MarkerData
    full_name: str

    @property
    def collection_ref(self) -> TypeRef | None:
        value = self.marker.argument(0, "collection_type")
        return value if isinstance(value, TypeRef) else None


@dataclass(frozen=True)
class CollectionDeclaration:
    symbol: TypeSymbol
    base_type: TypeRef | None
    marker: MarkerData

    @property
    def collection_name(self) -> str:
        name = self.marker.argument(2, "name")
        return name if isinstance(name, str) and name else self.symbol.name

    @property
    def default_return(self) -> TypeRef | None:
        value = self.marker.argument(1, "default_return")
        return value if isinstance(value, TypeRef) else None


@dataclass(frozen=True)
class DiscoveryIndex:
    """Read-only result of one discovery pass, shared by every collection.

    Attributes:
        collections: Declarations found in the current module, in scan order.
        candidates: Collection full name -> deduplicated option candidates.
        diagnostics: Findings of the dedup step.
        scanned_modules: Modules visited, in scan order.
    """

    collections: tuple[CollectionDeclaration, ...]
    candidates: dict[str, tuple[OptionCandidate, ...]]
    diagnostics: tuple[Diagnostic, ...]
    scanned_modules: tuple[str, ...]


def scan_order(graph: SymbolGraph) -> tuple[str, ...]:
    return (graph.current, *graph.closures.get(graph.current, ()))


def _option_candidates_of(
    graph: SymbolGraph, symbol: TypeSymbol
) -> Iterator[tuple[str, OptionCandidate]]:
    for marker in symbol.markers_of(OPTION_MARKER):
        candidate = OptionCandidate(symbol=symbol, marker=marker, full_name=symbol.full_name)
        ref = candidate.collection_ref
        if ref is None:
            continue
        target = resolve_type(graph, ref.name, symbol.module)
        yield (target.full_name if target is not None else ref.name), candidate


def scan_option_candidates(graph: SymbolGraph) -> dict[str, list[OptionCandidate]]:
    """Collect option-marked classes reachable from the current module.

    Visits the current module, then its references breadth-first. Within a
    module namespaces go in lexicographic order and classes in declaration
    order, nested classes included. Names a namespace re-exports from
    elsewhere are visited after its own classes.

    Returns:
        Collection full name -> candidates in scan order, duplicates kept.
    """
    found: dict[str, list[OptionCandidate]] = {}
    if not marker_available(graph):
        return found

    for module_name in scan_order(graph):
        module = graph.module(module_name)
        for namespace in module.namespaces:
            for symbol in iter_types(namespace.types):
                for collection_name, candidate in _option_candidates_of(graph, symbol):
                    found.setdefault(collection_name, []).append(candidate)
            for local_name in sorted(namespace.aliases):
                target = resolve_type(graph, namespace.aliases[local_name], module_name)
                if target is None or target.namespace == namespace.name:
                    continue
                for collection_name, candidate in _option_candidates_of(graph, target):
                    found.setdefault(collection_name, []).append(candidate)
    return found


def scan_collection_declarations(graph: SymbolGraph) -> list[CollectionDeclaration]:
    """Collect collection-marked classes declared in the current module only."""
    declarations: list[CollectionDeclaration] = []
    if not marker_available(graph):
        return declarations

    for namespace in graph.module(graph.current).namespaces:
        for symbol in iter_types(namespace.types):
            for marker in symbol.markers_of(COLLECTION_MARKER):
                base = marker.argument(0, "base")
                declarations.append(
                    CollectionDeclaration(
                        symbol=symbol,
                        base_type=base if isinstance(base, TypeRef) else None,
                        marker=marker,
                    )
                )
    return declarations


def discover(graph: SymbolGraph) -> DiscoveryIndex:
    raw = scan_option_candidates(graph)
    candidates: dict[str, tuple[OptionCandidate, ...]] = {}
    diagnostics: list[Diagnostic] = []
    for collection_name, found in raw.items():
        kept, notes = deduplicate_candidates(graph, found)
        candidates[collection_name] = tuple(kept)
        diagnostics.extend(notes)
    return DiscoveryIndex(
        collections=tuple(scan_collection_declarations(graph)),
        candidates=candidates,
        diagnostics=tuple(diagnostics),
        scanned_modules=scan_order(graph),
    )


# ===--- Deduplication ---=== #


def derives_from(graph: SymbolGraph, symbol: TypeSymbol, ancestor: TypeSymbol) -> bool:
    """True when ancestor appears strictly above symbol on its base chain."""
    return any(parent is ancestor for parent in base_chain(graph, symbol)[1:])


def deduplicate_candidates(
    graph: SymbolGraph, candidates: Iterable[OptionCandidate]
) -> tuple[list[OptionCandidate], list[Diagnostic]]:
    """Collapse candidates sharing a fully-qualified name.

    The same declaration seen twice (directly and via a re-export) is kept
    once. Of two related declarations the more-derived one wins. Unrelated
    declarations keep the first in scan order and produce an RG103 warning.

    Returns:
        (kept candidates in first-seen order, diagnostics)
    """
    kept: dict[str, OptionCandidate] = {}
    diagnostics: list[Diagnostic] = []
    for candidate in candidates:
        existing = kept.get(candidate.full_name)
        if existing is None:
            kept[candidate.full_name] = candidate
            continue
        if existing.symbol is candidate.symbol:
            continue
        if derives_from(graph, candidate.symbol, existing.symbol):
            kept[candidate.full_name] = candidate
        elif not derives_from(graph, existing.symbol, candidate.symbol):
            diagnostics.append(
                make_diagnostic(
                    "RG103",
                    candidate.symbol.location,
                    name=candidate.full_name,
                    first=existing.symbol.module,
                    second=candidate.symbol.module,
                )
            )
    return list(kept.values()), diagnostics


# ===--- Key extraction ---=== #


def _int_literal(node: ast.expr) -> int | None:
    if isinstance(node, ast.Constant) and type(node.value) is int:
        return node.value
    if isinstance(node, ast.UnaryOp) and isinstance(node.op, (ast.USub, ast.UAdd)):
        inner = _int_literal(node.operand)
        if inner is None:
            return None
        return -inner if isinstance(node.op, ast.USub) else inner
    return None


_NESTED_SCOPES = (ast.FunctionDef, ast.AsyncFunctionDef, ast.Lambda, ast.ClassDef)


def _init_calls(init: ast.FunctionDef | ast.AsyncFunctionDef) -> Iterator[ast.Call]:
    """Yield calls of an __init__ body in source order, skipping nested scopes."""
    pending: list[ast.AST] = list(reversed(init.body))
    while pending:
        node = pending.pop()
        if isinstance(node, _NESTED_SCOPES):
            continue
        if isinstance(node, ast.Call):
            yield node
        pending.extend(reversed(list(ast.iter_child_nodes(node))))


def _constructor_key(
    init: ast.FunctionDef | ast.AsyncFunctionDef, ancestors: frozenset[str]
) -> tuple[bool, int | None]:
    """Find the base-constructor call in __init__ and read its key argument.

    Only ``super().__init__(...)`` and ``<Ancestor>.__init__(self, ...)``
    count, where ancestors holds the simple names of the classes above.

    Returns:
        (call found, literal key or None)
    """
    for node in _init_calls(init):
        if not (isinstance(node.func, ast.Attribute) and node.func.attr == "__init__"):
            continue
        owner = node.func.value
        if isinstance(owner, ast.Call) and isinstance(owner.func, ast.Name) and owner.func.id == "super":
            args = node.args
        elif isinstance(owner, ast.Name) and owner.id in ancestors:
            args = node.args[1:]
        elif isinstance(owner, ast.Attribute) and owner.attr in ancestors:
            args = node.args[1:]
        else:
            continue
        if args:
            return True, _int_literal(args[0])
        for kw in node.keywords:
            if kw.arg == IDENTITY_PROPERTY:
                return True, _int_literal(kw.value)
        return True, None
    return False, None


def extract_primary_key(
    graph: SymbolGraph, symbol: TypeSymbol, base: TypeSymbol | None = None
) -> int | None:
    """Return the literal integer key an option passes to its base, if any.

    Looks at the class header (``class Circle(Shape, id=1)``) and at the
    first base-constructor call of ``__init__``. Classes on the chain
    between symbol and base are consulted when symbol has neither.
    Anything that is not an integer literal yields None, and the generated
    registry reads ``instance.id`` at import time instead.
    """
    chain = base_chain(graph, symbol)
    for index, current in enumerate(chain):
        if current is base:
            return None
        for kw in current.declaration.keywords:
            if kw.arg == IDENTITY_PROPERTY:
                return _int_literal(kw.value)
        ancestors = frozenset(
            {ancestor.name for ancestor in chain[index + 1 :]}
            | {ref.simple_name for ref in current.bases}
        )
        for stmt in current.declaration.body:
            if isinstance(stmt, (ast.FunctionDef, ast.AsyncFunctionDef)) and stmt.name == "__init__":
                found, literal = _constructor_key(stmt, ancestors)
                if found:
                    return literal
                break
    return None


# ===--- Return-type resolution ---=== #


def resolve_return_type(
    graph: SymbolGraph,
    collection_symbol: TypeSymbol,
    base_ref: TypeRef,
    default_return: TypeRef | None = None,
) -> TypeRef:
    """Pick the type generated accessors return.

    Walks the collection's base chain for ``RegistryBase[...]``: with two
    arguments the second wins, with one the first. Otherwise falls back to
    default_return, then to the base type itself.
    """
    for symbol in base_chain(graph, collection_symbol):
        for ref in symbol.bases:
            if ref.name != REGISTRY_BASE:
                continue
            if len(ref.args) >= 2:
                return ref.args[1]
            if len(ref.args) == 1:
                return ref.args[0]
    if default_return is not None:
        return default_return
    return base_ref


# ===--- Collection model ---=== #


RESERVED_ACCESSORS = frozenset({"all", "empty", "by_id"})


@dataclass(frozen=True)
class ValueModel:
    short_name: str
    full_name: str
    namespace: str
    qualname: str
    display_key: str
    accessor_name: str
    constructor: tuple[ParameterSymbol, ...]
    primary_key: int | None
    is_abstract: bool
    instantiable: bool
    location: SourceLocation = NO_LOCATION


@dataclass(frozen=True)
class LookupSpec:
    property_name: str
    property_type: TypeRef | None
    method_name: str
    allow_multiple: bool = False
    return_type: TypeRef | None = None
    location: SourceLocation = field(default=NO_LOCATION, compare=False)


@dataclass(frozen=True)
class CollectionModel:
    """Everything the emitters need for one collection.

    Attributes:
        namespace: Namespace declaring the collection class.
        collection_name: Generated registry class name.
        declaration: The collection-marked class.
        base: Resolved base type symbol.
        base_ref: Base type reference as written in the marker.
        return_type: Type every value accessor returns.
        values: Included options, ordered by full name.
        lookups: Secondary lookups requested on the base chain.
        null_object: True when an Empty<Base> class is emitted.
        sentinel_instance: True when misses return an Empty<Base> instance,
            False when they return None (generic and protocol bases).
    """

    namespace: str
    collection_name: str
    declaration: TypeSymbol
    base: TypeSymbol
    base_ref: TypeRef
    return_type: TypeRef
    values: tuple[ValueModel, ...]
    lookups: tuple[LookupSpec, ...]
    null_object: bool
    sentinel_instance: bool

    @property
    def base_name(self) -> str:
        return self.base.name

    @property
    def module_stem(self) -> str:
        return to_snake_case(self.collection_name)


@dataclass(frozen=True)
class ModelBuildResult:
    model: CollectionModel | None
    diagnostics: tuple[Diagnostic, ...]


def to_snake_case(name: str) -> str:
    name = re.sub(r"[^0-9A-Za-z_]+", "_", name)
    name = re.sub(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])", "_", name).lower()
    return re.sub(r"_+", "_", name).strip("_")


def accessor_name_for(display_key: str) -> str:
    name = to_snake_case(display_key) or "value"
    if name[0].isdigit():
        name = f"value_{name}"
    if keyword.iskeyword(name):
        name = f"{name}_"
    return name


def find_constructor(graph: SymbolGraph, symbol: TypeSymbol) -> MethodSymbol | None:
    """Return the nearest __init__ on the base chain of symbol.

    A dataclass without an explicit __init__ gets a synthetic one built
    from its fields and those of the dataclasses above it, base fields
    first and keyword-only fields last.
    """
    chain = base_chain(graph, symbol)
    for index, current in enumerate(chain):
        if current.constructor is not None:
            return current.constructor
        if current.dataclass_fields is not None:
            return _dataclass_constructor(current, chain[index:])
    return None


def _dataclass_constructor(
    owner: TypeSymbol, chain: tuple[TypeSymbol, ...]
) -> MethodSymbol:
    fields_by_name: dict[str, ParameterSymbol] = {}
    for current in reversed(chain):
        for param in current.dataclass_fields or ():
            fields_by_name[param.name] = param
    params = sorted(fields_by_name.values(), key=lambda p: p.kind == "keyword")
    return MethodSymbol(
        name="__init__",
        parameters=tuple(params),
        return_type=TypeRef(NONE_TYPE, display="None"),
        is_abstract=False,
        is_async=False,
        kind="instance",
        location=owner.location,
    )


def remaining_abstract_members(graph: SymbolGraph, symbol: TypeSymbol) -> list[str]:
    """Names of abstract methods and properties symbol leaves unimplemented."""
    seen: set[str] = set()
    missing: list[str] = []
    for current in base_chain(graph, symbol):
        for member in (*current.properties, *current.methods):
            if member.name in seen:
                continue
            seen.add(member.name)
            if member.is_abstract:
                missing.append(member.name)
    return missing


def validate_base_type(
    graph: SymbolGraph, base: TypeSymbol, location: SourceLocation
) -> list[Diagnostic]:
    """Report every abstract property on the base chain, once per name (RG102)."""
    diagnostics: list[Diagnostic] = []
    seen: set[str] = set()
    for current in base_chain(graph, base):
        for prop in current.properties:
            if prop.name in seen:
                continue
            seen.add(prop.name)
            if prop.is_abstract:
                diagnostics.append(
                    make_diagnostic(
                        "RG102",
                        prop.location if prop.location is not NO_LOCATION else location,
                        base=base.name,
                        member=prop.name,
                    )
                )
    return diagnostics


def extract_lookup_specs(graph: SymbolGraph, base: TypeSymbol) -> tuple[LookupSpec, ...]:
    specs: list[LookupSpec] = []
    seen: set[str] = set()
    for current in base_chain(graph, base):
        for prop in current.properties:
            if prop.name in seen:
                continue
            seen.add(prop.name)
            for marker in prop.markers:
                if marker.marker != LOOKUP_MARKER:
                    continue
                method_name = marker.argument(0, "method_name")
                if not isinstance(method_name, str) or not method_name.isidentifier():
                    continue
                return_type = marker.argument(2, "return_type")
                specs.append(
                    LookupSpec(
                        property_name=prop.name,
                        property_type=prop.type,
                        method_name=method_name,
                        allow_multiple=bool(marker.argument(1, "allow_multiple", False)),
                        return_type=return_type if isinstance(return_type, TypeRef) else None,
                        location=marker.location,
                    )
                )
                break
    return tuple(specs)


def build_value_model(
    graph: SymbolGraph, candidate: OptionCandidate, base: TypeSymbol
) -> ValueModel:
    symbol = candidate.symbol
    key = candidate.marker.argument(1, "key")
    display_key = key if isinstance(key, str) and key else symbol.name
    constructor = find_constructor(graph, symbol)
    params = constructor.parameters if constructor is not None else ()
    is_abstract = symbol.is_protocol or bool(remaining_abstract_members(graph, symbol))
    return ValueModel(
        short_name=symbol.name,
        full_name=symbol.full_name,
        namespace=symbol.namespace,
        qualname=symbol.qualname,
        display_key=display_key,
        accessor_name=accessor_name_for(display_key),
        constructor=params,
        primary_key=extract_primary_key(graph, symbol, base),
        is_abstract=is_abstract,
        instantiable=not is_abstract and not any(p.required for p in params),
        location=symbol.location,
    )


def build_collection_model(
    graph: SymbolGraph,
    declaration: CollectionDeclaration,
    candidates: dict[str, tuple[OptionCandidate, ...]],
) -> ModelBuildResult:
    """Resolve, validate and order one collection.

    A collection with error diagnostics produces no model; the caller
    skips it and keeps going with the others.
    """
    collection_symbol = declaration.symbol
    name = declaration.collection_name
    diagnostics: list[Diagnostic] = []

    base_ref = declaration.base_type
    base = (
        resolve_type(graph, base_ref.name, collection_symbol.module)
        if base_ref is not None
        else None
    )
    if base_ref is None or base is None:
        diagnostics.append(
            make_diagnostic(
                "RG101",
                declaration.marker.location,
                base=base_ref or "<missing>",
                collection=name,
            )
        )
        return ModelBuildResult(None, tuple(diagnostics))

    diagnostics.extend(validate_base_type(graph, base, declaration.marker.location))
    if has_errors(diagnostics):
        return ModelBuildResult(None, tuple(diagnostics))

    values: list[ValueModel] = []
    for candidate in candidates.get(collection_symbol.full_name, ()):
        if candidate.symbol is not base and not derives_from(graph, candidate.symbol, base):
            diagnostics.append(
                make_diagnostic(
                    "RG106",
                    candidate.symbol.location,
                    name=candidate.full_name,
                    base=base.name,
                    collection=name,
                )
            )
        values.append(build_value_model(graph, candidate, base))
    values.sort(key=lambda value: value.full_name)

    lookups = extract_lookup_specs(graph, base)
    lookup_owners: dict[str, LookupSpec] = {}
    for spec in lookups:
        first = lookup_owners.setdefault(spec.method_name, spec)
        if first is spec and spec.method_name not in RESERVED_ACCESSORS:
            continue
        diagnostics.append(
            make_diagnostic(
                "RG107",
                spec.location,
                method=spec.method_name,
                property=spec.property_name,
                collection=name,
                owner=(
                    "the registry accessor"
                    if first is spec
                    else f"the lookup for property '{first.property_name}'"
                ),
            )
        )
    reserved = RESERVED_ACCESSORS | {spec.method_name for spec in lookups}
    by_key: dict[int, ValueModel] = {}
    by_accessor: dict[str, ValueModel] = {}
    for value in values:
        if value.primary_key is not None and value.instantiable:
            first = by_key.setdefault(value.primary_key, value)
            if first is not value:
                diagnostics.append(
                    make_diagnostic(
                        "RG104",
                        value.location,
                        first=first.full_name,
                        second=value.full_name,
                        collection=name,
                        key=value.primary_key,
                    )
                )
        first = by_accessor.setdefault(value.accessor_name, value)
        if first is not value or value.accessor_name in reserved:
            diagnostics.append(
                make_diagnostic(
                    "RG105",
                    value.location,
                    accessor=value.accessor_name,
                    collection=name,
                    first=first.full_name if first is not value else "the registry",
                    second=value.full_name,
                )
            )
    if has_errors(diagnostics):
        return ModelBuildResult(None, tuple(diagnostics))

    generic = bool(base.type_parameters)
    model = CollectionModel(
        namespace=collection_symbol.namespace,
        collection_name=name,
        declaration=collection_symbol,
        base=base,
        base_ref=base_ref,
        return_type=resolve_return_type(
            graph, collection_symbol, base_ref, declaration.default_return
        ),
        values=tuple(values),
        lookups=lookups,
        null_object=not base.is_protocol,
        sentinel_instance=not base.is_protocol and not generic,
    )
    return ModelBuildResult(model, tuple(diagnostics))


# ===--- Import planning ---=== #


class ImportPlan:
    """Allocates local names for the types a generated module refers to.

    Names needed at runtime (classes to instantiate or subclass, TypeVars)
    are imported normally. Names only used in annotations go under
    ``if TYPE_CHECKING:``. Clashing names get a numeric suffix.
    """

    def __init__(self, graph: SymbolGraph, reserved: Iterable[str] = ()):
        self._graph = graph
        self._names: dict[tuple[str, str], str] = {}
        self._runtime: set[tuple[str, str]] = set()
        self._taken: set[str] = set(reserved)

    def reserve(self, name: str) -> None:
        self._taken.add(name)

    def runtime_name(self, qualified: str, alias: str | None = None) -> str:
        return self._bind(qualified, alias, runtime=True)

    def annotation(self, ref: TypeRef | None, fallback: str = "object") -> str:
        if ref is None:
            return fallback
        if ref.name == UNION:
            return " | ".join(self.annotation(arg) for arg in ref.args)
        if ref.name == NONE_TYPE:
            return "None"
        if ref.name.startswith(RAW_PREFIX):
            text = ref.name[len(RAW_PREFIX) :]
            if text == "[]":
                return f"[{', '.join(self.annotation(arg) for arg in ref.args)}]"
            return text
        origin = self._bind(ref.name, None, runtime=False)
        if ref.args:
            return f"{origin}[{', '.join(self.annotation(arg) for arg in ref.args)}]"
        return origin

    def _bind(self, qualified: str, alias: str | None, runtime: bool) -> str:
        if qualified.startswith(TYPE_PARAM_PREFIX):
            return qualified[len(TYPE_PARAM_PREFIX) :]
        if qualified.startswith("builtins."):
            return qualified[len("builtins.") :]
        namespace, qualname = split_qualified_name(self._graph, qualified)
        if not namespace:
            return qualname
        top, _, rest = qualname.partition(".")
        key = (namespace, top)
        local = self._names.get(key)
        if local is None:
            wanted = alias or top
            local = wanted
            suffix = 2
            while local in self._taken:
                local = f"{wanted}_{suffix}"
                suffix += 1
            self._taken.add(local)
            self._names[key] = local
        if runtime:
            self._runtime.add(key)
        return f"{local}.{rest}" if rest else local

    def _group(self, keys: Iterable[tuple[str, str]]) -> tuple["ExternalImport", ...]:
        grouped: dict[str, list[str]] = {}
        for namespace, top in keys:
            local = self._names[(namespace, top)]
            grouped.setdefault(namespace, []).append(
                top if local == top else f"{top} as {local}"
            )
        return tuple(
            ExternalImport(module=namespace, names=tuple(sorted(names)))
            for namespace, names in sorted(grouped.items())
        )

    def runtime_imports(self) -> tuple["ExternalImport", ...]:
        return self._group(key for key in self._names if key in self._runtime)

    def type_checking_imports(self) -> tuple["ExternalImport", ...]:
        return self._group(key for key in self._names if key not in self._runtime)


# ===--- Null-object emitter ---=== #


RESULT_WRAPPERS: dict[str, str] = {
    "Result": "success",
    "GenericResult": "success",
}
"""Known result wrappers: simple name -> classmethod wrapping a success value."""

_ZERO_VALUES: dict[str, str] = {
    "builtins.str": '""',
    "builtins.int": "0",
    "builtins.bool": "False",
    "builtins.float": "0.0",
    "builtins.complex": "0j",
    "builtins.bytes": 'b""',
    "builtins.list": "[]",
    "builtins.dict": "{}",
    "builtins.set": "set()",
    "builtins.frozenset": "frozenset()",
    "builtins.tuple": "()",
}


def null_object_name(base: TypeSymbol) -> str:
    return f"Empty{base.name}"


def null_object_stem(base: TypeSymbol) -> str:
    return f"empty_{to_snake_case(base.name)}"


def default_argument_literal(param: ParameterSymbol) -> str:
    """Zero value passed for a required constructor parameter."""
    if param.annotation is None:
        return "None"
    return _ZERO_VALUES.get(param.annotation.name, "None")


def null_return_expression(method: MethodSymbol, plan: ImportPlan) -> str | None:
    """Pick what a null-object override returns; None means a ``pass`` body.

    Priority: echo a parameter of the return type, wrap a parameter in a
    known result wrapper, empty string for str, then the zero value.
    """
    returns = method.return_type
    if returns is None or returns.name == NONE_TYPE:
        return None

    params = [p for p in method.parameters if p.kind in ("positional", "keyword")]
    for param in params:
        if param.annotation == returns:
            return param.name

    wrapper = RESULT_WRAPPERS.get(returns.simple_name)
    if wrapper is not None and len(returns.args) == 1 and "." in returns.name:
        for param in params:
            if param.annotation == returns.args[0]:
                return f"{plan.runtime_name(returns.name)}.{wrapper}({param.name})"

    if returns.name == "builtins.str":
        return '""'
    return _ZERO_VALUES.get(returns.name, "None")


def _is_plain_literal(source: str) -> bool:
    try:
        ast.literal_eval(source)
    except (ValueError, SyntaxError):
        return False
    return True


def render_parameters(
    params: tuple[ParameterSymbol, ...], plan: ImportPlan, first: str | None = "self"
) -> str:
    """Render a parameter list; non-literal defaults become None."""
    rendered: list[str] = [first] if first else []
    keyword_marker_needed = any(p.kind == "keyword" for p in params) and not any(
        p.kind == "var_positional" for p in params
    )
    for param in params:
        if param.kind == "keyword" and keyword_marker_needed:
            rendered.append("*")
            keyword_marker_needed = False
        prefix = {"var_positional": "*", "var_keyword": "**"}.get(param.kind, "")
        text = f"{prefix}{param.name}"
        if param.annotation is not None:
            text += f": {plan.annotation(param.annotation)}"
        if param.default_source is not None:
            default = param.default_source if _is_plain_literal(param.default_source) else "None"
            text += f" = {default}" if param.annotation is not None else f"={default}"
        rendered.append(text)
    return ", ".join(rendered)


_FIRST_PARAMETER: dict[str, str | None] = {"instance": "self", "class": "cls", "static": None}


def _null_object_methods(graph: SymbolGraph, base: TypeSymbol) -> list[MethodSymbol]:
    """Abstract methods of the chain, most-derived first, once each.

    Class and static methods are included; each keeps its kind.
    """
    handled: set[str] = set()
    concrete: set[str] = set()
    methods: list[MethodSymbol] = []
    for current in base_chain(graph, base):
        for method in current.methods:
            if not method.is_abstract:
                concrete.add(method.name)
                continue
            signature = method.signature()
            if signature in handled or method.name in concrete:
                continue
            handled.add(signature)
            concrete.add(method.name)
            methods.append(method)
    return methods


def emit_null_object(graph: SymbolGraph, base: TypeSymbol, plan: ImportPlan) -> list[str]:
    """Return source lines of the Empty<Base> null-object class.

    The class calls the nearest base constructor with zero values and
    overrides every abstract method on the chain. A generic base yields a
    generic null object that reuses the base's type parameters.
    """
    name = null_object_name(base)
    base_name = plan.runtime_name(base.full_name)
    params = base.type_parameters
    if params and params[0].declared_in is None:
        header = f"class {name}[{', '.join(p.source for p in params)}]({base_name}[{', '.join(p.name for p in params)}]):"
    elif params:
        args = ", ".join(plan.runtime_name(p.declared_in or p.name) for p in params)
        header = f"class {name}({base_name}[{args}]):"
    else:
        header = f"class {name}({base_name}):"

    lines = [
        header,
        f'    """Null object for {base.name}: zero values, no side effects."""',
    ]

    constructor = find_constructor(graph, base)
    if constructor is not None and any(p.required for p in constructor.parameters):
        positional = [
            default_argument_literal(p)
            for p in constructor.parameters
            if p.required and p.kind == "positional"
        ]
        keywords = [
            f"{p.name}={default_argument_literal(p)}"
            for p in constructor.parameters
            if p.required and p.kind == "keyword"
        ]
        lines.extend(
            [
                "",
                "    def __init__(self) -> None:",
                f"        super().__init__({', '.join(positional + keywords)})",
            ]
        )

    for method in _null_object_methods(graph, base):
        prefix = "async def" if method.is_async else "def"
        returns = plan.annotation(method.return_type, fallback="")
        arrow = f" -> {returns}" if returns else ""
        body = null_return_expression(method, plan)
        first = _FIRST_PARAMETER[method.kind]
        lines.append("")
        if method.kind != "instance":
            lines.append(f"    @{method.kind}method")
        lines.extend(
            [
                f"    {prefix} {method.name}({render_parameters(method.parameters, plan, first)}){arrow}:",
                "        pass" if body is None else f"        return {body}",
            ]
        )
    return lines


# ===--- Registry emitter ---=== #


class EmitStage(Enum):
    NOT_STARTED = 0
    VALUES_CONVERTED = 1
    STATIC_FIELDS_EMITTED = 2
    STATIC_CONSTRUCTOR_EMITTED = 3
    ACCESSORS_EMITTED = 4
    DONE = 5


@dataclass(frozen=True)
class RenderedValue:
    model: ValueModel
    type_name: str | None
    variable: str
    key_expr: str | None


@dataclass(frozen=True)
class EmissionState:
    """Output accumulated by the registry emitter, one stage at a time.

    Every stage returns a new state; earlier output is never modified.
    """

    stage: EmitStage = EmitStage.NOT_STARTED
    values: tuple[RenderedValue, ...] = ()
    fields: tuple[str, ...] = ()
    initializer: tuple[str, ...] = ()
    accessors: tuple[str, ...] = ()
    source: tuple[str, ...] = ()


class RegistryEmitter:
    """Render one collection's registry module body.

    Stages run in a fixed order: convert values, emit fields, emit the
    initializer, emit accessors, then assemble. Calling a stage out of order
    raises RuntimeError.
    """

    def __init__(
        self,
        graph: SymbolGraph,
        model: CollectionModel,
        options: EmitOptions,
        plan: ImportPlan,
    ):
        self.graph = graph
        self.model = model
        self.options = options
        self.plan = plan
        self.class_name = model.collection_name
        plan.reserve(self.class_name)
        self.declared = plan.runtime_name(
            model.declaration.full_name, alias=f"_{model.declaration.name}Declaration"
        )
        self.value_type = plan.annotation(model.return_type)
        self.result_type = (
            self.value_type if model.sentinel_instance else f"{self.value_type} | None"
        )
        self.sentinel_class = null_object_name(model.base) if model.sentinel_instance else None

    def _expect(self, state: EmissionState, stage: EmitStage) -> None:
        if state.stage is not stage:
            raise RuntimeError(
                f"Registry emitter for {self.class_name} expected stage "
                f"{stage.name}, got {state.stage.name}"
            )

    def run(self) -> EmissionState:
        state = EmissionState()
        for step in (
            self.convert_values,
            self.emit_fields,
            self.emit_static_constructor,
            self.emit_accessors,
            self.finish,
        ):
            state = step(state)
        return state

    def convert_values(self, state: EmissionState) -> EmissionState:
        self._expect(state, EmitStage.NOT_STARTED)
        rendered: list[RenderedValue] = []
        for value in self.model.values:
            type_name = None
            if value.instantiable or (self.options.exposure == "factory" and not value.is_abstract):
                type_name = self.plan.runtime_name(f"{value.namespace}.{value.qualname}")
            variable = f"{value.accessor_name}_value"
            if not value.instantiable:
                key_expr = None
            elif value.primary_key is not None:
                key_expr = str(value.primary_key)
            else:
                key_expr = f"{variable}.{IDENTITY_PROPERTY}"
            rendered.append(RenderedValue(value, type_name, variable, key_expr))
        return replace(state, stage=EmitStage.VALUES_CONVERTED, values=tuple(rendered))

    def _lookup_field(self, spec: LookupSpec) -> str:
        return f"_{spec.method_name}"

    def emit_fields(self, state: EmissionState) -> EmissionState:
        self._expect(state, EmitStage.VALUES_CONVERTED)
        value_type = self.value_type
        lines = [
            f"_all: MappingProxyType[int, {value_type}] = MappingProxyType({{}})",
            f"_empty: {value_type} | None = None",
        ]
        if self.options.lookup_maps == "alternate":
            if self.model.lookups:
                lines.append(
                    "_alternate: MappingProxyType[tuple[str, object], object] = MappingProxyType({})"
                )
        else:
            for spec in self.model.lookups:
                key_type = self.plan.annotation(spec.property_type)
                stored = f"tuple[{value_type}, ...]" if spec.allow_multiple else value_type
                lines.append(
                    f"{self._lookup_field(spec)}: MappingProxyType[{key_type}, {stored}] = MappingProxyType({{}})"
                )
        for value in state.values:
            name = value.model.accessor_name
            if self.options.accessor_style == "property":
                lines.append(f"{name}: {self.result_type}")
            elif value.model.primary_key is None and value.model.instantiable:
                lines.append(f"_{name}_id: int | None = None")
        return replace(state, stage=EmitStage.STATIC_FIELDS_EMITTED, fields=tuple(lines))

    def _lookup_index_lines(self) -> list[str]:
        cls = self.class_name
        value_type = self.value_type
        lines: list[str] = []
        if not self.model.lookups:
            return lines
        if self.options.lookup_maps == "alternate":
            lines.extend(
                [
                    "    alternate: dict[tuple[str, object], object] = {}",
                    "    for value in values.values():",
                ]
            )
            for spec in self.model.lookups:
                key = f'("{spec.property_name}", value.{spec.property_name})'
                if spec.allow_multiple:
                    lines.append(f"        alternate.setdefault({key}, []).append(value)")
                else:
                    lines.append(f"        alternate.setdefault({key}, value)")
            lines.append(
                f"    {cls}._alternate = MappingProxyType("
                "{key: tuple(item) if isinstance(item, list) else item "
                "for key, item in alternate.items()})"
            )
            return lines

        for spec in self.model.lookups:
            key_type = self.plan.annotation(spec.property_type)
            index = f"index_{spec.property_name}"
            if spec.allow_multiple:
                lines.extend(
                    [
                        f"    {index}: dict[{key_type}, list[{value_type}]] = {{}}",
                        "    for value in values.values():",
                        f"        {index}.setdefault(value.{spec.property_name}, []).append(value)",
                        f"    {cls}.{self._lookup_field(spec)} = MappingProxyType(",
                        f"        {{key: tuple(items) for key, items in {index}.items()}}",
                        "    )",
                    ]
                )
            else:
                lines.extend(
                    [
                        f"    {index}: dict[{key_type}, {value_type}] = {{}}",
                        "    for value in values.values():",
                        f"        {index}.setdefault(value.{spec.property_name}, value)",
                        f"    {cls}.{self._lookup_field(spec)} = MappingProxyType({index})",
                    ]
                )
        return lines

    def emit_static_constructor(self, state: EmissionState) -> EmissionState:
        self._expect(state, EmitStage.STATIC_FIELDS_EMITTED)
        cls = self.class_name
        lines = [
            "def _initialize() -> None:",
            f'    """Build every {cls} map once; runs at import."""',
            f"    values: dict[int, {self.value_type}] = {{}}",
        ]
        for value in state.values:
            if not value.model.instantiable:
                continue
            lines.append(f"    {value.variable} = {value.type_name}()")
            lines.append(f"    values[{value.key_expr}] = {value.variable}")
        lines.append(f"    {cls}._all = MappingProxyType(values)")
        if self.sentinel_class is not None:
            lines.append(f"    {cls}._empty = {self.sentinel_class}()")
        lines.extend(self._lookup_index_lines())

        for value in state.values:
            name = value.model.accessor_name
            if self.options.accessor_style == "property":
                if value.key_expr is None:
                    lines.append(f"    {cls}.{name} = {cls}._empty")
                else:
                    lines.append(f"    {cls}.{name} = {cls}._all.get({value.key_expr}, {cls}._empty)")
            elif value.model.primary_key is None and value.model.instantiable:
                lines.append(f"    {cls}._{name}_id = {value.key_expr}")
        return replace(
            state, stage=EmitStage.STATIC_CONSTRUCTOR_EMITTED, initializer=tuple(lines)
        )

    def _classmethod(self, signature: str, doc: str | None, body: str) -> list[str]:
        lines = ["", "@classmethod", f"def {signature}:"]
        if doc:
            lines.append(f'    """{doc}"""')
        lines.append(f"    {body}")
        return lines

    def _lookup_accessor(self, spec: LookupSpec) -> list[str]:
        key_type = self.plan.annotation(spec.property_type)
        param = spec.property_name
        if self.options.lookup_maps == "alternate":
            source = f'cls._alternate.get(("{spec.property_name}", {param}), {{miss}})'
        else:
            source = f"cls.{self._lookup_field(spec)}.get({param}, {{miss}})"
        if spec.allow_multiple:
            returns = f"tuple[{self.value_type}, ...]"
            return self._classmethod(
                f"{spec.method_name}(cls, {param}: {key_type}) -> {returns}",
                f"Return every value whose {spec.property_name} equals ``{param}``.",
                f"return {source.format(miss='()')}",
            )
        returns = self.plan.annotation(spec.return_type) if spec.return_type else self.value_type
        if not self.model.sentinel_instance:
            returns = f"{returns} | None"
        return self._classmethod(
            f"{spec.method_name}(cls, {param}: {key_type}) -> {returns}",
            f"Return the value whose {spec.property_name} equals ``{param}``.",
            f"return {source.format(miss='cls._empty')}",
        )

    def _factory_accessor(self, value: RenderedValue) -> list[str]:
        params = value.model.constructor
        if all(
            p.default_source is None or _is_plain_literal(p.default_source) for p in params
        ):
            signature = render_parameters(params, self.plan, first="cls")
            call = ", ".join(
                {
                    "var_positional": f"*{p.name}",
                    "var_keyword": f"**{p.name}",
                    "keyword": f"{p.name}={p.name}",
                }.get(p.kind, p.name)
                for p in params
            )
        else:
            signature = "cls, *args, **kwargs"
            call = "*args, **kwargs"
        return self._classmethod(
            f"create_{value.model.accessor_name}({signature}) -> {self.value_type}",
            f"Construct a new {value.model.short_name} instead of the shared instance.",
            f"return {value.type_name}({call})",
        )

    def emit_accessors(self, state: EmissionState) -> EmissionState:
        self._expect(state, EmitStage.STATIC_CONSTRUCTOR_EMITTED)
        miss_note = "the empty sentinel" if self.model.sentinel_instance else "None"
        lines: list[str] = []
        lines += self._classmethod(
            f"all(cls) -> tuple[{self.value_type}, ...]",
            "Return every registered value in key order of registration.",
            "return tuple(cls._all.values())",
        )
        lines += self._classmethod(
            f"empty(cls) -> {self.result_type}",
            f"Return {miss_note}, the result of every lookup miss.",
            "return cls._empty",
        )
        lines += self._classmethod(
            f"by_id(cls, id: int) -> {self.result_type}",
            f"Return the value registered under ``id``, or {miss_note}.",
            "return cls._all.get(id, cls._empty)",
        )
        for spec in self.model.lookups:
            lines += self._lookup_accessor(spec)

        for value in state.values:
            name = value.model.accessor_name
            if self.options.accessor_style == "method":
                if value.key_expr is None:
                    body = "return cls._empty"
                elif value.model.primary_key is None:
                    body = f"return cls._all.get(cls._{name}_id, cls._empty)"
                else:
                    body = f"return cls._all.get({value.key_expr}, cls._empty)"
                lines += self._classmethod(f"{name}(cls) -> {self.result_type}", None, body)
            if self.options.exposure == "factory" and not value.model.is_abstract:
                lines += self._factory_accessor(value)
        return replace(state, stage=EmitStage.ACCESSORS_EMITTED, accessors=tuple(lines))

    def finish(self, state: EmissionState) -> EmissionState:
        self._expect(state, EmitStage.ACCESSORS_EMITTED)
        model = self.model
        if model.sentinel_instance:
            miss = f"Lookups that miss return the {self.sentinel_class} sentinel."
        else:
            miss = "Lookups that miss return None; callers must handle it."
        lines = [
            f"class {self.class_name}({self.declared}):",
            f'    """Registry of {model.base.name} values declared for {model.declaration.full_name}.',
            "",
            "    Built once at import time and read-only afterwards.",
            f"    {miss}",
            '    """',
            "",
        ]
        lines.extend(f"    {line}" for line in state.fields)
        lines.extend(f"    {line}" if line else "" for line in state.accessors)
        lines.extend(["", ""])
        lines.extend(state.initializer)
        lines.extend(["", "", "_initialize()"])
        return replace(state, stage=EmitStage.DONE, source=tuple(lines))


def emit_registry(
    graph: SymbolGraph, model: CollectionModel, options: EmitOptions, plan: ImportPlan
) -> EmissionState:
    return RegistryEmitter(graph, model, options, plan).run()


# ===--- Shared run metadata ---=== #


@dataclass(frozen=True)
class WriteConfig:
    """Generation metadata embedded in every file header.

    Attributes:
        current_module: Module registries were generated for.
        referenced_modules: Modules scanned for options, in scan order.
        options: Emission options of the run.
    """

    current_module: str
    referenced_modules: tuple[str, ...] = ()
    options: EmitOptions = EmitOptions()


# ===--- Import spec types ---=== #


@dataclass(frozen=True)
class ExternalImport:
    """Absolute import, rendered as ``from <module> import <names>``."""

    module: str
    names: tuple[str, ...]


@dataclass(frozen=True)
class SiblingImport:
    """Import from a module of the generated package.

    Renders as ``from .<module_stem> import <names>``.
    """

    module_stem: str
    names: tuple[str, ...]


@dataclass(frozen=True)
class ModuleSpec:
    """Complete input for one generated module (not __init__.py).

    Attributes:
        filename: Output filename including .py extension.
        title: First header line, e.g. "Registry Shapes for shapes.catalog".
        external_imports: Absolute imports needed at runtime.
        sibling_imports: Imports from other generated modules.
        type_checking_imports: Imports only annotations need; rendered under
            ``if TYPE_CHECKING:``.
        content_lines: Module body, one line per entry, no trailing newlines.
    """

    filename: str
    title: str
    external_imports: tuple[ExternalImport, ...]
    sibling_imports: tuple[SiblingImport, ...]
    content_lines: tuple[str, ...]
    type_checking_imports: tuple[ExternalImport, ...] = ()


# ===--- __init__.py spec types ---=== #


@dataclass(frozen=True)
class InitReExport:
    module_stem: str
    wildcard: bool
    names: tuple[str, ...]


@dataclass(frozen=True)
class InitModuleSpec:
    re_exports: tuple[InitReExport, ...]


# ===--- Write result types ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing a single generated file.

    Attributes:
        filename: Filename written, e.g. "shapes.py" or "__init__.py".
        path: Absolute path of the written file.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    filename: str
    path: Path
    line_count: int
    byte_count: int


@dataclass(frozen=True)
class PackageWriteResult:
    output_dir: Path
    files: tuple[FileWriteResult, ...]

    @property
    def total_lines(self) -> int:
        """Sum of line_count across all written files."""
        return sum(f.line_count for f in self.files)


# ===--- Pure formatting functions ---=== #

_HEADER_BORDER: str = "# x-------------------------------------------x #"


def build_source_label(current_module: str, referenced_modules: tuple[str, ...]) -> str:
    count = len(referenced_modules)
    if not count:
        return current_module
    plural = "module" if count == 1 else "modules"
    return f"{current_module} (+{count} referenced {plural})"


def format_file_header(config: WriteConfig, title: str) -> list[str]:
    """Return the boxed comment block that opens every generated module.

    Output format:
        # x-------------------------------------------x #
        # | Registry Shapes for shapes.catalog
        # | Generated by registry-gen; do not edit
        # | Source: app (+1 referenced module)
        # | Options: accessors=property, exposure=singleton, lookups=frozen
        # x-------------------------------------------x #

    Raises:
        ValueError: If config.current_module or title is empty.
    """
    if not config.current_module:
        raise ValueError("current_module must not be empty")
    if not title:
        raise ValueError("title must not be empty")

    options = config.options
    return [
        _HEADER_BORDER,
        f"# | {title}",
        "# | Generated by registry-gen; do not edit",
        f"# | Source: {build_source_label(config.current_module, config.referenced_modules)}",
        f"# | Options: accessors={options.accessor_style}, "
        f"exposure={options.exposure}, lookups={options.lookup_maps}",
        _HEADER_BORDER,
    ]


def format_import_block(
    external_imports: tuple[ExternalImport, ...],
    sibling_imports: tuple[SiblingImport, ...],
    type_checking_imports: tuple[ExternalImport, ...] = (),
) -> list[str]:
    """Return import statement lines for a module file.

    Groups are external, sibling, then the ``if TYPE_CHECKING:`` block,
    separated by single blank lines. Empty groups emit nothing.

    Raises:
        ValueError: If any import has an empty names tuple.
    """
    for imp in (*external_imports, *type_checking_imports):
        if not imp.names:
            raise ValueError(
                f"ExternalImport for module '{imp.module}' has empty names tuple"
            )
    for imp in sibling_imports:
        if not imp.names:
            raise ValueError(
                f"SiblingImport for module '{imp.module_stem}' has empty names tuple"
            )

    groups: list[list[str]] = [
        [f"from {imp.module} import {', '.join(imp.names)}" for imp in external_imports],
        [f"from .{imp.module_stem} import {', '.join(imp.names)}" for imp in sibling_imports],
    ]
    if type_checking_imports:
        groups.append(
            ["if TYPE_CHECKING:"]
            + [
                f"    from {imp.module} import {', '.join(imp.names)}"
                for imp in type_checking_imports
            ]
        )

    lines: list[str] = []
    for group in groups:
        if not group:
            continue
        if lines:
            lines.append("")
        lines.extend(group)
    return lines


def assemble_module_source(config: WriteConfig, spec: ModuleSpec) -> str:
    """Assemble a complete generated module from a ModuleSpec.

    File structure:
        <header comment block>
        <blank>
        from __future__ import annotations
        <blank>
        <import block>              (omitted when there are no imports)
        <two blank lines>
        <content lines>
        <trailing newline>

    Raises:
        ValueError: If spec.filename is empty or does not end with ".py".
        ValueError: Propagated from format_import_block on empty names tuple.
    """
    if not spec.filename or not spec.filename.endswith(".py"):
        raise ValueError(
            f"spec.filename must be non-empty and end with '.py', got {spec.filename!r}"
        )

    parts: list[str] = list(format_file_header(config, spec.title))
    parts.extend(["", "from __future__ import annotations"])

    imports = format_import_block(
        spec.external_imports, spec.sibling_imports, spec.type_checking_imports
    )
    if imports:
        parts.append("")
        parts.extend(imports)

    if spec.content_lines:
        parts.extend(["", ""])
        parts.extend(spec.content_lines)

    return "\n".join(parts) + "\n"


def assemble_init_source(config: WriteConfig, init_spec: InitModuleSpec) -> str:
    """Assemble the generated package's __init__.py.

    A one-line docstring, then one re-export per entry. Selective imports
    with several names use a parenthesized block with trailing commas.

    Raises:
        ValueError: If any InitReExport has wildcard=False and empty names.
    """
    for re_export in init_spec.re_exports:
        if not re_export.wildcard and not re_export.names:
            raise ValueError(
                f"InitReExport for module '{re_export.module_stem}' has "
                f"wildcard=False but empty names tuple"
            )

    source = build_source_label(config.current_module, config.referenced_modules)
    parts: list[str] = [f'"""Registries for {source}. Generated by registry-gen."""', ""]

    exported: list[str] = []
    for re_export in init_spec.re_exports:
        exported.extend(re_export.names)
        if re_export.wildcard:
            parts.append(f"from .{re_export.module_stem} import *")
        elif len(re_export.names) == 1:
            parts.append(f"from .{re_export.module_stem} import {re_export.names[0]}")
        else:
            name_lines = "\n".join(f"    {name}," for name in re_export.names)
            parts.append(f"from .{re_export.module_stem} import (\n{name_lines}\n)")

    if exported:
        parts.append("")
        parts.append("__all__ = [")
        parts.extend(f'    "{name}",' for name in exported)
        parts.append("]")

    return "\n".join(parts) + "\n"


# ===--- Writer I/O functions ---=== #


def _write_file(output_dir: Path, filename: str, content: str) -> FileWriteResult:
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    file_path = output_dir / filename
    file_path.write_text(content, encoding="utf-8")
    resolved = file_path.resolve()
    return FileWriteResult(
        filename=filename,
        path=resolved,
        line_count=content.count("\n"),
        byte_count=len(resolved.read_bytes()),
    )


def write_module(output_dir: Path, config: WriteConfig, spec: ModuleSpec) -> FileWriteResult:
    """Write a single generated module file to disk.

    Args:
        output_dir: Directory to write the file into. Created if absent.
        config: Shared generation metadata passed to assemble_module_source.
        spec: Per-module spec with filename, imports and content lines.

    Returns:
        FileWriteResult for spec.filename with line and byte counts.

    Raises:
        ValueError: Propagated from assemble_module_source on invalid spec.
        OSError: Propagated directly if the filesystem write fails.
    """
    return _write_file(output_dir, spec.filename, assemble_module_source(config, spec))


def write_init_module(
    output_dir: Path, config: WriteConfig, init_spec: InitModuleSpec
) -> FileWriteResult:
    """Write the package __init__.py to disk.

    Args:
        output_dir: Directory to write __init__.py into. Created if absent.
        config: Shared generation metadata passed to assemble_init_source.
        init_spec: Ordered re-export manifest.

    Returns:
        FileWriteResult with filename="__init__.py" and line and byte counts.

    Raises:
        ValueError: Propagated from assemble_init_source on invalid init_spec.
        OSError: Propagated directly if the filesystem write fails.
    """
    return _write_file(output_dir, "__init__.py", assemble_init_source(config, init_spec))


def write_package(
    output_dir: Path,
    config: WriteConfig,
    module_specs: tuple[ModuleSpec, ...],
    init_spec: InitModuleSpec,
) -> PackageWriteResult:
    """Write all module files, then __init__.py last.

    Args:
        output_dir: Directory to write all files into. Created if absent.
        config: Shared generation metadata passed to every write call.
        module_specs: Module specs, written in the given order.
        init_spec: Re-export manifest for __init__.py, written last.

    Returns:
        PackageWriteResult whose files follow the write order.

    Raises:
        ValueError: Propagated from any assemble_* call on an invalid spec.
        OSError: Propagated immediately; files already written stay on disk.
    """
    files: list[FileWriteResult] = []
    for spec in module_specs:
        files.append(write_module(output_dir, config, spec))
    files.append(write_init_module(output_dir, config, init_spec))
    return PackageWriteResult(output_dir=Path(output_dir), files=tuple(files))


# ===--- Pipeline stage boundaries ---=== #


@dataclass(frozen=True)
class GeneratedUnit:
    """One generated module and the names the package re-exports from it.

    Attributes:
        spec: Module content.
        exports: Public names defined by the module.
        origin: Full name of the collection or base type it was generated
            for; two units may share a filename only when origins match.
    """

    spec: ModuleSpec
    exports: tuple[str, ...]
    origin: str

    @property
    def module_stem(self) -> str:
        return self.spec.filename.removesuffix(".py")


@dataclass(frozen=True)
class CollectionOutcome:
    declaration: CollectionDeclaration
    model: CollectionModel | None
    units: tuple[GeneratedUnit, ...]
    diagnostics: tuple[Diagnostic, ...]

    @property
    def succeeded(self) -> bool:
        return bool(self.units) and not has_errors(self.diagnostics)


@dataclass(frozen=True)
class GenerationResult:
    index: DiscoveryIndex
    outcomes: tuple[CollectionOutcome, ...]
    units: tuple[GeneratedUnit, ...]
    diagnostics: tuple[Diagnostic, ...]

    @property
    def has_errors(self) -> bool:
        return has_errors(self.diagnostics)


# ===--- Pipeline stage functions ---=== #


def _unit(
    filename: str,
    title: str,
    plan: ImportPlan,
    stdlib_imports: tuple[ExternalImport, ...],
    sibling_imports: tuple[SiblingImport, ...],
    lines: list[str],
    exports: tuple[str, ...],
    origin: str,
) -> GeneratedUnit:
    type_checking = plan.type_checking_imports()
    externals = list(stdlib_imports)
    if type_checking:
        externals.append(ExternalImport("typing", ("TYPE_CHECKING",)))
    externals.extend(plan.runtime_imports())
    return GeneratedUnit(
        spec=ModuleSpec(
            filename=filename,
            title=title,
            external_imports=tuple(externals),
            sibling_imports=sibling_imports,
            content_lines=tuple(lines),
            type_checking_imports=type_checking,
        ),
        exports=exports,
        origin=origin,
    )


def emit_collection_units(
    graph: SymbolGraph, model: CollectionModel, options: EmitOptions
) -> tuple[GeneratedUnit, ...]:
    """Render the registry module and, when needed, its null-object module."""
    null_name = null_object_name(model.base)
    null_stem = null_object_stem(model.base)

    plan = ImportPlan(graph, reserved=("MappingProxyType", "TYPE_CHECKING", "annotations"))
    if model.sentinel_instance:
        plan.reserve(null_name)
    state = emit_registry(graph, model, options, plan)
    units = [
        _unit(
            f"{model.module_stem}.py",
            f"Registry {model.collection_name} for {model.namespace}",
            plan,
            (ExternalImport("types", ("MappingProxyType",)),),
            (SiblingImport(null_stem, (null_name,)),) if model.sentinel_instance else (),
            list(state.source),
            (model.collection_name,),
            model.declaration.full_name,
        )
    ]

    if model.null_object:
        plan = ImportPlan(graph, reserved=(null_name, "TYPE_CHECKING", "annotations"))
        units.append(
            _unit(
                f"{null_stem}.py",
                f"Null object for {model.base.full_name}",
                plan,
                (),
                (),
                emit_null_object(graph, model.base, plan),
                (null_name,),
                model.base.full_name,
            )
        )
    return tuple(units)


def generate_collection(
    graph: SymbolGraph,
    index: DiscoveryIndex,
    declaration: CollectionDeclaration,
    options: EmitOptions,
) -> CollectionOutcome:
    """Build and emit one collection; failures stay local to it.

    Validation problems come back as diagnostics. An exception while
    emitting becomes an RG201 diagnostic so other collections still
    generate.
    """
    build = build_collection_model(graph, declaration, index.candidates)
    if build.model is None:
        return CollectionOutcome(declaration, None, (), build.diagnostics)
    try:
        units = emit_collection_units(graph, build.model, options)
    except Exception as err:
        failure = make_diagnostic(
            "RG201",
            declaration.marker.location,
            collection=declaration.collection_name,
            reason=f"{type(err).__name__}: {err}",
        )
        return CollectionOutcome(declaration, build.model, (), (*build.diagnostics, failure))
    return CollectionOutcome(declaration, build.model, units, build.diagnostics)


def _claim_units(
    outcome: CollectionOutcome, claimed: dict[str, GeneratedUnit]
) -> CollectionOutcome:
    for unit in outcome.units:
        existing = claimed.get(unit.module_stem)
        if existing is not None and existing.origin != unit.origin:
            conflict = make_diagnostic(
                "RG202",
                outcome.declaration.marker.location,
                collection=outcome.declaration.collection_name,
                module=unit.spec.filename,
            )
            return replace(outcome, units=(), diagnostics=(*outcome.diagnostics, conflict))
    for unit in outcome.units:
        claimed.setdefault(unit.module_stem, unit)
    return outcome


def generate_registries(
    graph: SymbolGraph, options: EmitOptions = EmitOptions(), max_workers: int = 1
) -> GenerationResult:
    """Discover and generate every collection of the current module.

    The discovery index is built once and shared read-only. Collections are
    generated independently, on a thread pool when max_workers > 1, and
    their diagnostics are merged in declaration order.
    """
    index = discover(graph)

    def run(declaration: CollectionDeclaration) -> CollectionOutcome:
        return generate_collection(graph, index, declaration, options)

    if max_workers > 1 and len(index.collections) > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            outcomes = list(pool.map(run, index.collections))
    else:
        outcomes = [run(declaration) for declaration in index.collections]

    claimed: dict[str, GeneratedUnit] = {}
    outcomes = [_claim_units(outcome, claimed) for outcome in outcomes]

    diagnostics: list[Diagnostic] = list(index.diagnostics)
    for outcome in outcomes:
        diagnostics.extend(outcome.diagnostics)
    return GenerationResult(
        index=index,
        outcomes=tuple(outcomes),
        units=tuple(claimed.values()),
        diagnostics=tuple(diagnostics),
    )


def load_graph(source: ModuleSource, references: tuple[ModuleSource, ...] = ()) -> SymbolGraph:
    """Load the current module and its references into one symbol graph.

    Raises:
        OSError: If a source file cannot be read.
        SyntaxError: If a source file does not parse.
    """
    modules = [load_module_from_path(source.path, source.name)]
    modules.extend(load_module_from_path(ref.path, ref.name) for ref in references)
    return build_symbol_graph(modules, source.name)


def build_write_config(graph: SymbolGraph, options: EmitOptions) -> WriteConfig:
    """Derive the header metadata shared by every generated file.

    Args:
        graph: Symbol graph of the run; its current module and reference
            closure feed the Source: header line.
        options: Emission options echoed in the Options: header line.

    Returns:
        WriteConfig for assemble_module_source and assemble_init_source.
    """
    return WriteConfig(
        current_module=graph.current,
        referenced_modules=graph.closures.get(graph.current, ()),
        options=options,
    )


def build_init_spec(units: tuple[GeneratedUnit, ...]) -> InitModuleSpec:
    """Build the __init__.py manifest from the generated units.

    Args:
        units: Claimed units in write order.

    Returns:
        InitModuleSpec with one explicit re-export per unit, in unit order,
        never a wildcard.
    """
    return InitModuleSpec(
        re_exports=tuple(
            InitReExport(unit.module_stem, wildcard=False, names=unit.exports)
            for unit in units
        )
    )


def print_diagnostics(diagnostics: Iterable[Diagnostic]) -> None:
    for diagnostic in diagnostics:
        print(diagnostic)


@dataclass(frozen=True)
class GenerationRun:
    generation: GenerationResult
    written: PackageWriteResult | None


def run_generate(config: GenerateConfig) -> GenerationRun:
    """Execute the complete pipeline for a GenerateConfig.

    Healthy collections are written even when others report errors; the
    caller decides the exit status from the returned diagnostics. Nothing
    is written, not even __init__.py, when no collection produced output.

    Raises:
        OSError: Source file unreadable or filesystem write failure.
        SyntaxError: A source file does not parse.
        RuntimeError: Safety limit exceeded while walking a chain.
    """
    print(f"Parsing: {config.source.path}")
    graph = load_graph(config.source, config.references)
    type_count = sum(len(found) for found in graph.type_index.values())
    print(f"  Modules: {len(graph.modules)}, {type_count} classes")

    result = generate_registries(graph, config.options, config.jobs)
    option_count = sum(len(found) for found in result.index.candidates.values())
    print(
        f"  Discovered: {len(result.index.collections)} collections, "
        f"{option_count} options across {len(result.index.scanned_modules)} modules"
    )
    print_diagnostics(result.diagnostics)

    written: PackageWriteResult | None = None
    if result.units:
        write_config = build_write_config(graph, config.options)
        written = write_package(
            config.output_dir,
            write_config,
            tuple(unit.spec for unit in result.units),
            build_init_spec(result.units),
        )
        print(
            f"  Written: {len(written.files)} files, "
            f"{written.total_lines} lines to {written.output_dir}"
        )
    else:
        print("  Written: nothing")

    print_generation_summary(build_generation_summary(graph, result, written, config.output_dir))
    return GenerationRun(generation=result, written=written)


# ===--- Discovery ---=== #


@dataclass(frozen=True)
class CollectionSummary:
    name: str
    full_name: str
    base: str
    option_count: int


@dataclass(frozen=True)
class CollectionDetail:
    summary: CollectionSummary
    model: CollectionModel | None
    diagnostics: tuple[Diagnostic, ...]


def gather_collection_summaries(index: DiscoveryIndex) -> list[CollectionSummary]:
    return [
        CollectionSummary(
            name=declaration.collection_name,
            full_name=declaration.symbol.full_name,
            base=str(declaration.base_type) if declaration.base_type else "?",
            option_count=len(index.candidates.get(declaration.symbol.full_name, ())),
        )
        for declaration in index.collections
    ]


def gather_collection_detail(
    graph: SymbolGraph, index: DiscoveryIndex, name: str
) -> CollectionDetail | None:
    """Return detail for a collection by generated or full name, or None."""
    for declaration, summary in zip(index.collections, gather_collection_summaries(index)):
        if name not in (summary.name, summary.full_name):
            continue
        build = build_collection_model(graph, declaration, index.candidates)
        return CollectionDetail(summary=summary, model=build.model, diagnostics=build.diagnostics)
    return None


def format_collections_table(summaries: list[CollectionSummary], module_name: str) -> str:
    """Return the --list-collections output.

    Output format:

        2 collections in app:

          Shapes    shapes.catalog.Shapes    base: Shape    3 options
    """
    lines = [f"{len(summaries)} collections in {module_name}:", ""]
    if not summaries:
        lines.append("")
        return "\n".join(lines)

    name_width = max(len(s.name) for s in summaries)
    full_width = max(len(s.full_name) for s in summaries)
    base_width = max(len(s.base) for s in summaries)
    for s in summaries:
        lines.append(
            f"  {s.name.ljust(name_width)}  {s.full_name.ljust(full_width)}  "
            f"base: {s.base.ljust(base_width)}  {s.option_count} options"
        )
    lines.append("")
    return "\n".join(lines)


def format_collection_detail(detail: CollectionDetail) -> str:
    """Return the --info output for one collection.

    Output format:

        Shapes (shapes.catalog.Shapes)
          Base:    Shape
          Returns: Shape
          Lookups: by_name(name)

          Options (2):
            circle     shapes.circle.Circle      key: 1
            hexagon    shapes.hexagon.Hexagon    key: runtime
    """
    s = detail.summary
    lines = [f"{s.name} ({s.full_name})", f"  Base:    {s.base}"]
    model = detail.model
    if model is None:
        lines.append("")
        lines.append("  Not generated:")
        lines.extend(f"    {diagnostic}" for diagnostic in detail.diagnostics)
        lines.append("")
        return "\n".join(lines)

    lines.append(f"  Returns: {model.return_type}")
    lookups = ", ".join(
        f"{spec.method_name}({spec.property_name}{', multiple' if spec.allow_multiple else ''})"
        for spec in model.lookups
    )
    lines.append(f"  Lookups: {lookups or 'none'}")
    sentinel = null_object_name(model.base) if model.sentinel_instance else "None"
    lines.append(f"  Empty:   {sentinel}")

    lines.append("")
    lines.append(f"  Options ({len(model.values)}):")
    accessor_width = max((len(v.accessor_name) for v in model.values), default=0)
    full_width = max((len(v.full_name) for v in model.values), default=0)
    for value in model.values:
        if value.primary_key is not None:
            key = str(value.primary_key)
        elif value.instantiable:
            key = "runtime"
        else:
            key = "-"
        row = (
            f"    {value.accessor_name.ljust(accessor_width)}  "
            f"{value.full_name.ljust(full_width)}  key: {key}"
        )
        if not value.instantiable:
            row += "  (not instantiable)"
        lines.append(row)
    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    """Execute a discovery command and print its output.

    Raises:
        SystemExit(1): When --info names a collection that does not exist.
    """
    graph = load_graph(config.source, config.references)
    index = discover(graph)

    if config.command == "list-collections":
        print(format_collections_table(gather_collection_summaries(index), graph.current), end="")
        return

    detail = gather_collection_detail(graph, index, config.info_collection or "")
    if detail is None:
        print(
            f"Error: collection '{config.info_collection}' not found in {graph.current}",
            file=sys.stderr,
        )
        raise SystemExit(1)
    print(format_collection_detail(detail), end="")


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class CollectionRow:
    name: str
    value_count: int
    lookup_count: int
    sentinel: str


@dataclass(frozen=True)
class GenerationSummary:
    """Immutable data for the post-generation console report.

    Attributes:
        source_label: Current module plus referenced-module count.
        output_dir: Output directory as given on the command line.
        collections: One row per generated collection.
        skipped: (collection name, diagnostic codes) per failed collection.
        error_count: Error diagnostics of the run.
        warning_count: Warning diagnostics of the run.
        files: Write results, empty when nothing was written.
    """

    source_label: str
    output_dir: str
    collections: tuple[CollectionRow, ...]
    skipped: tuple[tuple[str, tuple[str, ...]], ...]
    error_count: int
    warning_count: int
    files: tuple[FileWriteResult, ...]


def build_generation_summary(
    graph: SymbolGraph,
    result: GenerationResult,
    written: PackageWriteResult | None,
    output_dir: Path,
) -> GenerationSummary:
    rows: list[CollectionRow] = []
    skipped: list[tuple[str, tuple[str, ...]]] = []
    for outcome in result.outcomes:
        name = outcome.declaration.collection_name
        if outcome.succeeded and outcome.model is not None:
            model = outcome.model
            rows.append(
                CollectionRow(
                    name=name,
                    value_count=len(model.values),
                    lookup_count=len(model.lookups),
                    sentinel=null_object_name(model.base) if model.sentinel_instance else "None",
                )
            )
        else:
            codes = tuple(
                dict.fromkeys(
                    d.code for d in outcome.diagnostics if d.severity is Severity.ERROR
                )
            )
            skipped.append((name, codes))

    return GenerationSummary(
        source_label=build_source_label(graph.current, graph.closures.get(graph.current, ())),
        output_dir=str(written.output_dir if written is not None else output_dir),
        collections=tuple(rows),
        skipped=tuple(skipped),
        error_count=sum(1 for d in result.diagnostics if d.severity is Severity.ERROR),
        warning_count=sum(1 for d in result.diagnostics if d.severity is Severity.WARNING),
        files=written.files if written is not None else (),
    )


def format_generation_summary(summary: GenerationSummary) -> str:
    """Render a GenerationSummary to the console report.

    Returns a string with exactly one trailing newline.
    """
    lines: list[str] = [f"Registries generated for {summary.source_label.split()[0]}:", ""]
    lines.append(f"  Source:     {summary.source_label}")
    lines.append(f"  Output:     {summary.output_dir}")
    lines.append("")

    lines.append("  Collections:")
    if not summary.collections:
        lines.append("    none")
    for row in summary.collections:
        lines.append(
            f"    {row.name:<24}{row.value_count:>4} values{row.lookup_count:>4} lookups"
            f"   empty: {row.sentinel}"
        )
    if summary.skipped:
        lines.append("  Skipped:")
        for name, codes in summary.skipped:
            lines.append(f"    {name:<24}{', '.join(codes)}")

    lines.append("")
    lines.append(
        f"  Diagnostics: {summary.error_count} errors, {summary.warning_count} warnings"
    )
    lines.append("")

    if not summary.files:
        lines.append("  Files written: none")
        lines.append("")
        return "\n".join(lines)

    lines.append("  Files written:")
    for file_result in summary.files:
        lines.append(f"    {file_result.filename:<28} {file_result.line_count:>6,} lines")
    total_lines = sum(f.line_count for f in summary.files)
    lines.append("")
    lines.append(f"  Total: {total_lines:,} lines across {len(summary.files)} files")
    lines.append("")
    return "\n".join(lines)


def print_generation_summary(summary: GenerationSummary) -> None:
    print(format_generation_summary(summary), end="")


# ===--- Main generation ---=== #


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        if isinstance(config, DiscoveryConfig):
            run_discovery(config)
            return
        run = run_generate(config)
    except (OSError, SyntaxError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err
    except (RuntimeError, ValueError) as err:
        print(f"Internal error: {err}")
        raise SystemExit(1) from err

    if run.generation.has_errors:
        raise SystemExit(1)


if __name__ == "__main__":
    main()
