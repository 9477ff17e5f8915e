"""Runtime loader for user-supplied parser source code.

Custom parsers are Python modules that define a ``BaseParser`` subclass.
Source is vetted before anything runs:

1. Compilation: syntax errors block loading, syntax warnings are advisory.
2. Policy: only allow-listed imports; no dunder access; no dynamic
   evaluation, reflection or file access builtins.
3. Structure: a ``BaseParser`` subclass implementing ``_probe_content``
   and ``_iter_events`` is expected. Absence is only a warning.

Vetted code executes with restricted builtins, and loaded parsers run their
probe and parse work in worker threads under a timeout.

Known gap: a worker thread that ignores the stop flag cannot be killed, and
no memory ceiling is enforced in-process. A production deployment should
run custom parsers in a separate constrained process.
"""

import ast
import asyncio
import builtins
import hashlib
import importlib
import inspect
import logging
import re
import threading
import time
import types
import warnings
from dataclasses import dataclass, field
from pathlib import PurePath
from typing import Any

from evidentia.parsers.base import (
    BaseParser,
    LogEvent,
    ParseContext,
    ParseResult,
    ParserDescriptor,
    ValidationResult,
    decode_content,
    utc_now,
)

logger = logging.getLogger(__name__)

ALLOWED_IMPORTS = frozenset({
    "re",
    "json",
    "csv",
    "datetime",
    "math",
    "collections",
    "collections.abc",
    "itertools",
    "functools",
    "typing",
    "dataclasses",
    "enum",
    "ipaddress",
    "urllib.parse",
    "evidentia.parsers.base",
})

BLOCKED_CALLS = frozenset({
    "eval",
    "exec",
    "compile",
    "open",
    "input",
    "breakpoint",
    "__import__",
    "getattr",
    "setattr",
    "delattr",
    "globals",
    "locals",
    "vars",
    "memoryview",
})

# Dunders user code may reference
ALLOWED_DUNDERS = frozenset({"__init__", "__name__"})

# Attributes that reach interpreter internals without dunder syntax
BLOCKED_ATTRIBUTES = frozenset({
    "format",
    "format_map",
    "vformat",
    "get_field",
    "format_field",
    "convert_field",
    "mro",
    "gi_frame",
    "gi_code",
    "cr_frame",
    "ag_frame",
    "tb_frame",
    "f_back",
    "f_globals",
    "f_locals",
    "f_builtins",
})

# Dunder names spelled inside string literals, e.g. subscript keys or field paths
_DUNDER_IN_TEXT = re.compile(r"__[A-Za-z][A-Za-z0-9_]*?__")

SAFE_BUILTIN_NAMES = [
    "abs", "all", "any", "bool", "bytes", "callable", "chr", "dict", "divmod",
    "enumerate", "filter", "float", "format", "frozenset", "hasattr", "hash",
    "int", "isinstance", "issubclass", "iter", "len", "list", "map", "max",
    "min", "next", "object", "ord", "pow", "print", "property", "range",
    "repr", "reversed", "round", "set", "slice", "sorted", "staticmethod",
    "classmethod", "str", "sum", "super", "tuple", "type", "zip",
    "Exception", "ValueError", "TypeError", "KeyError", "IndexError",
    "AttributeError", "RuntimeError", "StopIteration", "UnicodeDecodeError",
    "NotImplementedError",
]

PARSER_METHODS = ("_probe_content", "_iter_events")


def _module_view(module: types.ModuleType) -> types.SimpleNamespace:
    """Public, non-module attributes of a module."""
    return types.SimpleNamespace(**{
        name: value
        for name, value in vars(module).items()
        if not name.startswith("_") and not inspect.ismodule(value)
    })


def _guarded_import(name: str, globals: Any = None, locals: Any = None, fromlist: Any = (), level: int = 0) -> Any:
    if level != 0 or name not in ALLOWED_IMPORTS:
        raise ImportError(f"Import of '{name}' is not permitted in custom parsers")

    view: Any = _module_view(importlib.import_module(name))
    if fromlist:
        return view

    # `import a.b` binds `a`; expose only the imported path
    for part in reversed(name.split(".")[1:]):
        view = types.SimpleNamespace(**{part: view})
    return view


def _restricted_builtins() -> dict[str, Any]:
    safe = {name: getattr(builtins, name) for name in SAFE_BUILTIN_NAMES}
    safe["__build_class__"] = builtins.__build_class__
    safe["__import__"] = _guarded_import
    return safe


def source_digest(source: str) -> str:
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


class _PolicyVisitor(ast.NodeVisitor):
    """Collects policy violations and parser-shaped classes from a module AST."""

    def __init__(self, result: ValidationResult):
        self.result = result
        self.parser_classes: list[tuple[str, set[str]]] = []

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            if alias.name not in ALLOWED_IMPORTS:
                self.result.add_error(f"Import of '{alias.name}' is not allowed", node.lineno, node.col_offset)
        self.generic_visit(node)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        if node.level:
            self.result.add_error("Relative imports are not allowed", node.lineno, node.col_offset)
        elif node.module not in ALLOWED_IMPORTS:
            self.result.add_error(f"Import from '{node.module}' is not allowed", node.lineno, node.col_offset)
        self.generic_visit(node)

    def visit_Attribute(self, node: ast.Attribute) -> None:
        if _is_dunder(node.attr) and node.attr not in ALLOWED_DUNDERS:
            self.result.add_error(f"Access to '{node.attr}' is not allowed", node.lineno, node.col_offset)
        elif node.attr in BLOCKED_ATTRIBUTES:
            self.result.add_error(f"Access to '{node.attr}' is not allowed", node.lineno, node.col_offset)
        self.generic_visit(node)

    def visit_Name(self, node: ast.Name) -> None:
        if _is_dunder(node.id) and node.id not in ALLOWED_DUNDERS:
            self.result.add_error(f"Use of '{node.id}' is not allowed", node.lineno, node.col_offset)
        self.generic_visit(node)

    def visit_Constant(self, node: ast.Constant) -> None:
        if isinstance(node.value, str):
            for name in _DUNDER_IN_TEXT.findall(node.value):
                if name not in ALLOWED_DUNDERS:
                    self.result.add_error(
                        f"String reference to '{name}' is not allowed", node.lineno, node.col_offset
                    )
                    break

    def visit_Call(self, node: ast.Call) -> None:
        if isinstance(node.func, ast.Name) and node.func.id in BLOCKED_CALLS:
            self.result.add_error(f"Call to '{node.func.id}' is not allowed", node.lineno, node.col_offset)
        self.generic_visit(node)

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        base_names = {
            base.id if isinstance(base, ast.Name) else base.attr
            for base in node.bases
            if isinstance(base, (ast.Name, ast.Attribute))
        }
        if "BaseParser" in base_names:
            methods = {
                item.name
                for item in node.body
                if isinstance(item, (ast.FunctionDef, ast.AsyncFunctionDef))
            }
            self.parser_classes.append((node.name, methods))
        self.generic_visit(node)


def _is_dunder(name: str) -> bool:
    return name.startswith("__") and name.endswith("__")


@dataclass
class ParserTestResult:
    """Outcome of a dry run of a parser against sample content."""

    passed: bool
    duration_ms: float
    diagnostic: str
    events_count: int = 0
    probe_accepted: bool | None = None
    sample_events: list[dict[str, Any]] = field(default_factory=list)
    validation: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "passed": self.passed,
            "duration_ms": round(self.duration_ms, 3),
            "diagnostic": self.diagnostic,
            "events_count": self.events_count,
            "probe_accepted": self.probe_accepted,
            "sample_events": self.sample_events,
            "validation": self.validation,
        }


@dataclass
class _CacheEntry:
    digest: str
    parser_class: type[BaseParser]
    loaded_at: float = field(default_factory=time.time)


class IsolatedParser(BaseParser):
    """Wraps a custom parser instance so its code runs off the event loop.

    Probe and parse calls execute in worker threads bounded by ``timeout``.
    A stop flag is raised when the caller gives up so cooperative generators
    halt at their next yield.
    """

    def __init__(self, inner: BaseParser, descriptor: ParserDescriptor, timeout: float):
        super().__init__(logger=getattr(inner, "logger", None), clock=getattr(inner, "clock", None))
        self._inner = inner
        self._timeout = timeout
        self.name = descriptor.name
        self.display_name = getattr(inner, "display_name", "") or descriptor.name
        self.description = descriptor.description or getattr(inner, "description", "")
        self.version = descriptor.version
        self.author = descriptor.author
        self.supported_extensions = tuple(descriptor.extensions) or tuple(inner.supported_extensions)
        self.tags = tuple(getattr(inner, "tags", ())) + ("custom",)
        self.configuration = dict(descriptor.configuration)

    @property
    def inner(self) -> BaseParser:
        return self._inner

    def _probe_content(self, text: str) -> bool:
        return bool(self._inner._probe_content(text))

    def _iter_events(self, text: str, context: ParseContext):
        return self._inner._iter_events(text, context)

    def _validate_text(self, text: str, result: ValidationResult) -> None:
        self._inner._validate_text(text, result)

    async def probe(self, file_path: str | PurePath | None, content: bytes | str | None) -> bool:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.can_parse, file_path, content), self._timeout
            )
        except TimeoutError:
            self.logger.warning("Probe of custom parser %s timed out", self.name)
            return False

    async def parse(
        self,
        file_path: str | PurePath | None,
        content: bytes | str,
        cancel_event: asyncio.Event | None = None,
    ) -> ParseResult:
        started = time.perf_counter()
        stop = threading.Event()
        context = ParseContext(file_path=PurePath(str(file_path)) if file_path else None)

        def run() -> tuple[list[LogEvent], bool]:
            events: list[LogEvent] = []
            for event in self._inner._iter_events(decode_content(content), context):
                if not isinstance(event, LogEvent):
                    raise TypeError(f"Custom parser yielded {type(event).__name__}, expected LogEvent")
                events.append(event)
                if stop.is_set():
                    return events, True
                if cancel_event is not None and cancel_event.is_set():
                    return events, True
            return events, False

        try:
            events, interrupted = await asyncio.wait_for(asyncio.to_thread(run), self._timeout)
        except TimeoutError:
            self.logger.warning("Custom parser %s exceeded %.1fs timeout", self.name, self._timeout)
            return ParseResult.failed(
                self.name, f"Custom parser exceeded {self._timeout}s timeout", time.perf_counter() - started
            )
        except Exception as e:
            self.logger.warning("Custom parser %s failed: %s", self.name, e)
            return ParseResult.failed(self.name, f"{type(e).__name__}: {e}", time.perf_counter() - started)
        finally:
            stop.set()

        duration = time.perf_counter() - started
        if interrupted or (cancel_event is not None and cancel_event.is_set()):
            return ParseResult.cancelled_result(self.name, duration, events_before_cancel=len(events))
        return ParseResult.completed(self.name, events, duration, **context.metadata)


class CustomParserLoader:
    """Compiles, caches and instantiates user-supplied parsers."""

    def __init__(self, timeout_seconds: float = 30.0):
        self._timeout = timeout_seconds
        self._cache: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._stats = {"compiled": 0, "cache_hits": 0, "failures": 0, "invalidations": 0}

    # ------------------------------------------------------------------
    # Vetting
    # ------------------------------------------------------------------

    def validate_code(self, source: str) -> ValidationResult:
        """Vet parser source without executing it.

        Args:
            source: Python source text

        Returns:
            ValidationResult with located diagnostics
        """
        result = ValidationResult()
        if not source or not source.strip():
            result.add_error("Parser code is empty")
            return result

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            try:
                tree = compile(source, "<custom-parser>", "exec", flags=ast.PyCF_ONLY_AST)
                compile(tree, "<custom-parser>", "exec")
            except SyntaxError as e:
                result.add_error(f"Syntax error: {e.msg}", e.lineno, e.offset)
                return result
            except ValueError as e:
                result.add_error(f"Invalid source: {e}")
                return result

        for warning in caught:
            if issubclass(warning.category, SyntaxWarning):
                result.add_warning(str(warning.message), warning.lineno)

        visitor = _PolicyVisitor(result)
        visitor.visit(tree)

        candidates = [
            (name, methods)
            for name, methods in visitor.parser_classes
            if all(method in methods for method in PARSER_METHODS)
        ]
        result.suggestions["parser_classes"] = [name for name, _ in visitor.parser_classes]
        if not visitor.parser_classes:
            result.add_warning("No class deriving from BaseParser was found")
        elif not candidates:
            result.add_warning(
                "Parser class does not define both _probe_content and _iter_events"
            )

        return result

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_parser(self, descriptor: ParserDescriptor) -> BaseParser | None:
        """Return a ready parser for the descriptor, or None if unavailable.

        Never raises; failures are logged.
        """
        if not descriptor.source_code:
            logger.warning("Custom parser %s has no source code", descriptor.name)
            return None

        parser_class = await self._get_class(descriptor)
        if parser_class is None:
            return None
        return self._instantiate(parser_class, descriptor)

    async def _get_class(self, descriptor: ParserDescriptor) -> type[BaseParser] | None:
        digest = source_digest(descriptor.source_code or "")

        async with self._lock:
            entry = self._cache.get(descriptor.id)
            if entry is not None and entry.digest == digest:
                self._stats["cache_hits"] += 1
                return entry.parser_class

            validation = self.validate_code(descriptor.source_code or "")
            if not validation.is_valid:
                self._stats["failures"] += 1
                logger.warning(
                    "Custom parser %s failed validation: %s", descriptor.name, "; ".join(validation.errors)
                )
                return None

            try:
                parser_class = await asyncio.wait_for(
                    asyncio.to_thread(self._compile_class, descriptor), self._timeout
                )
            except Exception as e:
                self._stats["failures"] += 1
                logger.warning("Custom parser %s could not be compiled: %s", descriptor.name, e)
                return None

            if parser_class is None:
                self._stats["failures"] += 1
                logger.warning("Custom parser %s defines no concrete BaseParser subclass", descriptor.name)
                return None

            self._cache[descriptor.id] = _CacheEntry(digest=digest, parser_class=parser_class)
            self._stats["compiled"] += 1
            logger.info("Compiled custom parser %s (%s)", descriptor.name, parser_class.__name__)
            return parser_class

    @staticmethod
    def _compile_class(descriptor: ParserDescriptor) -> type[BaseParser] | None:
        code = compile(descriptor.source_code or "", f"<custom-parser:{descriptor.name}>", "exec")
        namespace: dict[str, Any] = {
            "__builtins__": _restricted_builtins(),
            "__name__": f"evidentia_custom_{descriptor.id}",
        }
        exec(code, namespace)

        for value in namespace.values():
            if (
                inspect.isclass(value)
                and issubclass(value, BaseParser)
                and value.__module__ == namespace["__name__"]
                and not inspect.isabstract(value)
            ):
                return value
        return None

    def _instantiate(self, parser_class: type[BaseParser], descriptor: ParserDescriptor) -> BaseParser | None:
        parser_logger = logging.getLogger(f"{__name__}.custom.{descriptor.name}")

        instance: BaseParser | None = None
        for args in ((parser_logger,), ()):
            try:
                instance = parser_class(*args)
                break
            except TypeError:
                continue
            except Exception as e:
                logger.warning("Custom parser %s raised during construction: %s", descriptor.name, e)
                return None

        if instance is None:
            logger.warning("Custom parser %s has no usable constructor", descriptor.name)
            return None

        # Subclass __init__ may skip BaseParser.__init__
        if not hasattr(instance, "logger"):
            instance.logger = parser_logger
        if not hasattr(instance, "clock"):
            instance.clock = utc_now
        if not hasattr(instance, "configuration"):
            instance.configuration = {}
        instance.configuration.update(descriptor.configuration)

        return IsolatedParser(instance, descriptor, self._timeout)

    # ------------------------------------------------------------------
    # Cache management
    # ------------------------------------------------------------------

    def invalidate(self, parser_id: str) -> bool:
        """Drop a cached class; the next load recompiles."""
        removed = self._cache.pop(parser_id, None) is not None
        if removed:
            self._stats["invalidations"] += 1
            logger.info("Invalidated cached custom parser %s", parser_id)
        return removed

    def clear_cache(self) -> None:
        self._cache.clear()

    def is_cached(self, parser_id: str) -> bool:
        return parser_id in self._cache

    def get_loader_statistics(self) -> dict[str, Any]:
        return {
            "cached_parsers": len(self._cache),
            "compiled": self._stats["compiled"],
            "cache_hits": self._stats["cache_hits"],
            "failures": self._stats["failures"],
            "invalidations": self._stats["invalidations"],
            "timeout_seconds": self._timeout,
        }

    # ------------------------------------------------------------------
    # Test runs
    # ------------------------------------------------------------------

    async def test_parser(
        self,
        descriptor: ParserDescriptor,
        sample: bytes | str,
        filename: str | None = None,
    ) -> ParserTestResult:
        """Compile and run a custom parser against sample content."""
        started = time.perf_counter()

        validation = self.validate_code(descriptor.source_code or "")
        if not validation.is_valid:
            return ParserTestResult(
                passed=False,
                duration_ms=(time.perf_counter() - started) * 1000,
                diagnostic="Compilation failed: " + "; ".join(validation.errors),
                validation=validation.to_dict(),
            )

        parser = await self.load_parser(descriptor)
        if parser is None:
            return ParserTestResult(
                passed=False,
                duration_ms=(time.perf_counter() - started) * 1000,
                diagnostic="Failed to load parser",
                validation=validation.to_dict(),
            )

        result = await run_parser_test(parser, sample, filename)
        result.validation = validation.to_dict()
        result.duration_ms = (time.perf_counter() - started) * 1000
        return result


async def run_parser_test(parser: BaseParser, sample: bytes | str, filename: str | None = None) -> ParserTestResult:
    """Probe then parse sample content with an instantiated parser."""
    started = time.perf_counter()
    if filename is None:
        extension = parser.supported_extensions[0] if parser.supported_extensions else ".txt"
        filename = f"sample{extension}"

    try:
        accepted = await parser.probe(filename, sample)
        if not accepted:
            return ParserTestResult(
                passed=False,
                duration_ms=(time.perf_counter() - started) * 1000,
                diagnostic="Parser cannot handle the test content",
                probe_accepted=False,
            )

        parse_result = await parser.parse(filename, sample)
    except Exception as e:
        logger.exception("Error testing parser %s", parser.name)
        return ParserTestResult(
            passed=False,
            duration_ms=(time.perf_counter() - started) * 1000,
            diagnostic=f"{type(e).__name__}: {e}",
        )

    if parse_result.success:
        diagnostic = f"Parsed {parse_result.events_count} events"
    else:
        diagnostic = parse_result.error_message or f"Parsing {parse_result.status.value}"

    return ParserTestResult(
        passed=parse_result.success,
        duration_ms=(time.perf_counter() - started) * 1000,
        diagnostic=diagnostic,
        events_count=parse_result.events_count,
        probe_accepted=True,
        sample_events=[event.to_dict() for event in parse_result.events[:5]],
    )
