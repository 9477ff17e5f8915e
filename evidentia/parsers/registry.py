"""Parser registry for catalog management and parser selection.

The registry owns the descriptor catalog (built-in and custom parsers),
selects the parser for a given file and keeps usage telemetry. Custom
parsers are compiled on demand through the CustomParserLoader.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from pathlib import PurePath
from typing import Any

from evidentia.exceptions import (
    BadRequestError,
    ConflictError,
    ErrorDetail,
    NotFoundError,
    ValidationError,
)
from evidentia.parsers.base import (
    BaseParser,
    Clock,
    ParserDescriptor,
    ValidationResult,
    normalize_extension,
    utc_now,
)
from evidentia.parsers.formats import BUILTIN_PARSERS
from evidentia.parsers.loader import CustomParserLoader, ParserTestResult, run_parser_test

logger = logging.getLogger(__name__)

DEFAULT_CUSTOM_PRIORITY = 100

# Fields a caller may change on built-in descriptors
BUILTIN_MUTABLE_FIELDS = frozenset({"enabled", "priority"})
CUSTOM_MUTABLE_FIELDS = frozenset({
    "description",
    "version",
    "author",
    "extensions",
    "priority",
    "enabled",
    "source_code",
    "configuration",
})


class ParserStore:
    """In-memory descriptor store keyed by opaque parser id."""

    def __init__(self):
        self._items: dict[str, ParserDescriptor] = {}
        self._lock = asyncio.Lock()

    async def add(self, descriptor: ParserDescriptor) -> ParserDescriptor:
        async with self._lock:
            if any(d.name.lower() == descriptor.name.lower() for d in self._items.values()):
                raise ConflictError(f"A parser named '{descriptor.name}' already exists")
            self._items[descriptor.id] = descriptor
            return descriptor

    async def get(self, parser_id: str) -> ParserDescriptor | None:
        return self._items.get(parser_id)

    async def get_by_name(self, name: str) -> ParserDescriptor | None:
        lowered = name.lower()
        return next((d for d in self._items.values() if d.name.lower() == lowered), None)

    async def list(self) -> list[ParserDescriptor]:
        return list(self._items.values())

    async def update(self, parser_id: str, **changes: Any) -> ParserDescriptor | None:
        async with self._lock:
            current = self._items.get(parser_id)
            if current is None:
                return None
            updated = replace(current, **changes)
            self._items[parser_id] = updated
            return updated

    async def delete(self, parser_id: str) -> bool:
        async with self._lock:
            return self._items.pop(parser_id, None) is not None

    async def record_usage(self, parser_id: str, when) -> None:
        async with self._lock:
            current = self._items.get(parser_id)
            if current is None:
                return
            self._items[parser_id] = replace(
                current, usage_count=current.usage_count + 1, last_used=when
            )


@dataclass
class SelectedParser:
    """Outcome of a successful selection."""

    descriptor: ParserDescriptor
    parser: BaseParser
    via_preference: bool = False


class ParserRegistry:
    """Central catalog of parsers and the selection policy over it.

    Responsibilities:
    - Seed built-in descriptors once
    - Register, update and remove custom parsers
    - Select a parser for a file (preferred hint, then priority order)
    - Track usage counters without blocking selection
    """

    def __init__(
        self,
        store: ParserStore | None = None,
        loader: CustomParserLoader | None = None,
        clock: Clock | None = None,
    ):
        self.store = store or ParserStore()
        self.loader = loader or CustomParserLoader()
        self._clock = clock or utc_now
        self._builtin_classes: dict[str, type[BaseParser]] = {}
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._usage_tasks: set[asyncio.Task] = set()

    async def initialize(self) -> None:
        """Seed built-in parser descriptors. Safe to call repeatedly."""
        async with self._init_lock:
            if self._initialized:
                return

            for parser_class, priority in BUILTIN_PARSERS:
                self._builtin_classes[parser_class.name] = parser_class
                if await self.store.get_by_name(parser_class.name) is not None:
                    continue
                await self.store.add(
                    ParserDescriptor(
                        name=parser_class.name,
                        description=parser_class.description,
                        version=parser_class.version,
                        author=parser_class.author,
                        extensions=list(parser_class.supported_extensions),
                        priority=priority,
                        is_builtin=True,
                    )
                )

            self._initialized = True
            logger.info("Loaded %d built-in parsers", len(self._builtin_classes))

    # ------------------------------------------------------------------
    # Instantiation
    # ------------------------------------------------------------------

    async def create_parser(self, descriptor: ParserDescriptor) -> BaseParser | None:
        """Instantiate the parser described by a descriptor.

        Returns:
            Parser instance, or None when a custom parser cannot be loaded
        """
        if descriptor.is_builtin:
            parser_class = self._builtin_classes.get(descriptor.name)
            if parser_class is None:
                logger.warning("No implementation registered for built-in parser %s", descriptor.name)
                return None
            parser = parser_class(clock=self._clock)
            parser.configuration.update(descriptor.configuration)
            return parser
        return await self.loader.load_parser(descriptor)

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    async def select_parser(
        self,
        filename: str,
        sample: bytes | str,
        preferred_parser_id: str | None = None,
    ) -> SelectedParser | None:
        """Find the parser for a file.

        Uses two strategies:
        1. If a preferred parser is given and its probe accepts, use it
        2. Otherwise scan enabled parsers supporting the extension in
           ascending priority order and take the first probe acceptance

        Args:
            filename: Original file name (its extension drives filtering)
            sample: Leading bytes of the file for content probing
            preferred_parser_id: Optional operator override

        Returns:
            Selected parser, or None if no parser qualifies
        """
        await self.initialize()

        if preferred_parser_id:
            descriptor = await self.store.get(preferred_parser_id)
            if descriptor is None:
                logger.info("Preferred parser %s not found, falling back", preferred_parser_id)
            else:
                parser = await self.create_parser(descriptor)
                if parser is not None and await parser.probe(filename, sample):
                    logger.info("Using preferred parser %s for %s", descriptor.name, filename)
                    return SelectedParser(descriptor, parser, via_preference=True)
                logger.info(
                    "Preferred parser %s rejected %s, falling back to catalog scan", descriptor.name, filename
                )

        extension = normalize_extension(PurePath(filename).suffix)
        if not extension:
            logger.info("No extension on %s; no parser can be selected", filename)
            return None

        candidates = sorted(
            (
                d for d in await self.store.list()
                if d.enabled and extension in {normalize_extension(e) for e in d.extensions}
            ),
            key=lambda d: (d.priority, d.name),
        )

        for descriptor in candidates:
            parser = await self.create_parser(descriptor)
            if parser is None:
                continue
            if await parser.probe(filename, sample):
                logger.info("Selected parser %s for %s", descriptor.name, filename)
                self._schedule_usage_update(descriptor.id)
                return SelectedParser(descriptor, parser)

        logger.info("No parser found for %s", filename)
        return None

    def _schedule_usage_update(self, parser_id: str) -> None:
        task = asyncio.create_task(self._record_usage(parser_id))
        self._usage_tasks.add(task)
        task.add_done_callback(self._usage_tasks.discard)

    async def _record_usage(self, parser_id: str) -> None:
        try:
            await self.store.record_usage(parser_id, self._clock())
        except Exception as e:
            logger.warning("Failed to update usage statistics for parser %s: %s", parser_id, e)

    async def drain(self) -> None:
        """Wait for outstanding usage updates."""
        if self._usage_tasks:
            await asyncio.gather(*list(self._usage_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Catalog management
    # ------------------------------------------------------------------

    async def get_parser(self, parser_id: str) -> ParserDescriptor:
        await self.initialize()
        descriptor = await self.store.get(parser_id)
        if descriptor is None:
            raise NotFoundError("Parser", parser_id)
        return descriptor

    async def list_parsers(self, include_disabled: bool = True) -> list[ParserDescriptor]:
        await self.initialize()
        descriptors = await self.store.list()
        if not include_disabled:
            descriptors = [d for d in descriptors if d.enabled]
        return sorted(descriptors, key=lambda d: (d.priority, d.name))

    async def register_custom_parser(
        self,
        name: str,
        description: str,
        version: str,
        author: str,
        extensions: list[str],
        source_code: str,
        configuration: dict[str, Any] | None = None,
        priority: int = DEFAULT_CUSTOM_PRIORITY,
    ) -> ParserDescriptor:
        """Register a user-supplied parser.

        Raises:
            ConflictError: A parser with the same name exists
            ValidationError: The source failed vetting
        """
        await self.initialize()

        if await self.store.get_by_name(name) is not None:
            raise ConflictError(f"A parser named '{name}' already exists")

        normalized = [normalize_extension(e) for e in extensions if normalize_extension(e)]
        if not normalized:
            raise ValidationError("At least one file extension is required")

        validation = self.loader.validate_code(source_code)
        if not validation.is_valid:
            raise ValidationError("Parser code failed validation", details=_details(validation))

        descriptor = await self.store.add(
            ParserDescriptor(
                name=name,
                description=description,
                version=version,
                author=author,
                extensions=normalized,
                priority=priority,
                source_code=source_code,
                configuration=dict(configuration or {}),
            )
        )
        logger.info("Registered custom parser %s (%s)", name, descriptor.id)
        return descriptor

    async def update_parser(self, parser_id: str, **changes: Any) -> ParserDescriptor:
        """Apply changes to a descriptor.

        Built-ins only accept enabled/priority changes. New custom source is
        vetted and invalidates the compiled-class cache.
        """
        descriptor = await self.get_parser(parser_id)
        changes = {k: v for k, v in changes.items() if v is not None}

        allowed = BUILTIN_MUTABLE_FIELDS if descriptor.is_builtin else CUSTOM_MUTABLE_FIELDS
        rejected = sorted(set(changes) - allowed)
        if rejected:
            raise BadRequestError(
                f"Cannot change {', '.join(rejected)} on parser '{descriptor.name}'"
            )

        if "extensions" in changes:
            changes["extensions"] = [normalize_extension(e) for e in changes["extensions"] if normalize_extension(e)]
            if not changes["extensions"]:
                raise ValidationError("At least one file extension is required")

        if "source_code" in changes:
            validation = self.loader.validate_code(changes["source_code"])
            if not validation.is_valid:
                raise ValidationError("Parser code failed validation", details=_details(validation))

        changes["updated_at"] = self._clock()
        updated = await self.store.update(parser_id, **changes)
        if updated is None:
            raise NotFoundError("Parser", parser_id)

        if not descriptor.is_builtin:
            self.loader.invalidate(parser_id)
        logger.info("Updated parser %s", descriptor.name)
        return updated

    async def unregister_parser(self, parser_id: str) -> None:
        """Remove a custom parser. Built-ins cannot be removed."""
        descriptor = await self.get_parser(parser_id)
        if descriptor.is_builtin:
            raise BadRequestError(f"Built-in parser '{descriptor.name}' cannot be deleted")

        await self.store.delete(parser_id)
        self.loader.invalidate(parser_id)
        logger.info("Unregistered custom parser %s", descriptor.name)

    # ------------------------------------------------------------------
    # Code vetting and dry runs
    # ------------------------------------------------------------------

    async def validate_code(self, source_code: str) -> ValidationResult:
        return self.loader.validate_code(source_code)

    async def test_parser(
        self,
        parser_id: str,
        sample: bytes | str,
        filename: str | None = None,
    ) -> ParserTestResult:
        """Dry-run a catalogued parser against sample content."""
        descriptor = await self.get_parser(parser_id)
        if not descriptor.is_builtin:
            return await self.loader.test_parser(descriptor, sample, filename)

        parser = await self.create_parser(descriptor)
        if parser is None:
            raise NotFoundError("Parser implementation", descriptor.name)
        return await run_parser_test(parser, sample, filename)

    async def get_statistics(self) -> dict[str, Any]:
        descriptors = await self.list_parsers()
        return {
            "total_parsers": len(descriptors),
            "builtin_parsers": sum(1 for d in descriptors if d.is_builtin),
            "custom_parsers": sum(1 for d in descriptors if not d.is_builtin),
            "enabled_parsers": sum(1 for d in descriptors if d.enabled),
            "total_usage": sum(d.usage_count for d in descriptors),
            "usage_by_parser": {d.name: d.usage_count for d in descriptors},
            "loader": self.loader.get_loader_statistics(),
        }


def _details(validation: ValidationResult) -> list[ErrorDetail]:
    return [
        ErrorDetail(field="source_code", message=d.message, code=d.severity, line=d.line)
        for d in validation.diagnostics
    ]
