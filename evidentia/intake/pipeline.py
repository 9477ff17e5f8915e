"""Analysis pipeline for submitted evidence files.

Flow for one submission:

1. Screen the upload (reject, quarantine or accept) synchronously
2. Store accepted bytes and schedule background processing
3. Select a parser and parse (direct mode) or stream the file through
   IOC extraction chunk by chunk (chunked mode, for large files)
4. Extract indicators, map them to ATT&CK techniques, summarize
5. Publish progress to subscribers of ``analysis:{id}``

A failing enrichment stage is recorded in ``stage_errors`` and the
remaining stages still run. Whole-analysis failures (timeout, unexpected
errors) end in ``failed``; operator cancellation ends in ``cancelled``.
"""

import asyncio
import codecs
import logging
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from evidentia.config import Settings
from evidentia.enrichment.extractors.ioc import Indicator, IOCExtractor
from evidentia.enrichment.mitre import MitreMapper, TechniqueMatch, tactic_summary
from evidentia.enrichment.summarizer import DisabledSummarizer, Summarizer
from evidentia.exceptions import BadRequestError, NotFoundError
from evidentia.intake.models import (
    AnalysisMode,
    AnalysisRecord,
    AnalysisStatus,
    AnalysisStore,
)
from evidentia.intake.quarantine import QuarantineStore, safe_filename
from evidentia.intake.validation import FileValidator, ScreeningAction
from evidentia.parsers.base import Clock, decode_content, utc_now
from evidentia.parsers.registry import ParserRegistry
from evidentia.websocket import AnalysisNotifier, EventType, Notifier

logger = logging.getLogger(__name__)

# Progress checkpoints (percent)
PROGRESS_VALIDATED = 10
PROGRESS_SELECTING = 20
PROGRESS_PARSED = 50
PROGRESS_EXTRACTED = 70
PROGRESS_MAPPED = 90
PROGRESS_DONE = 100

# Indicators included in a single ioc_found notification
NOTIFY_INDICATOR_LIMIT = 50


class AnalysisCancelled(Exception):
    """Raised inside processing when the cancel flag is observed."""


class AnalysisPipeline:
    """Runs submitted evidence through parsing and enrichment.

    Analyses run concurrently as independent asyncio tasks.
    """

    def __init__(
        self,
        settings: Settings,
        registry: ParserRegistry,
        store: AnalysisStore | None = None,
        extractor: IOCExtractor | None = None,
        mapper: MitreMapper | None = None,
        summarizer: Summarizer | None = None,
        notifier: Notifier | None = None,
        validator: FileValidator | None = None,
        quarantine: QuarantineStore | None = None,
        clock: Clock | None = None,
    ):
        self.settings = settings
        self.registry = registry
        self.store = store or AnalysisStore()
        self.extractor = extractor or IOCExtractor()
        self.mapper = mapper or MitreMapper()
        self.summarizer = summarizer or DisabledSummarizer()
        self.notifier = notifier or AnalysisNotifier()
        self.validator = validator or FileValidator(settings)
        self._clock = clock or utc_now
        self.quarantine = quarantine or QuarantineStore(settings.quarantine_path, clock=self._clock)
        self.upload_path = Path(settings.upload_path)

        self._tasks: dict[str, asyncio.Task] = {}
        self._cancel_events: dict[str, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    async def submit(
        self,
        content: bytes,
        filename: str,
        preferred_parser_id: str | None = None,
        options: dict[str, Any] | None = None,
    ) -> AnalysisRecord:
        """Screen an upload and schedule its analysis.

        The returned record already reflects the screening outcome:
        ``rejected``, ``quarantined`` or ``validated``.
        """
        record = await self.store.add(
            AnalysisRecord(
                filename=filename,
                size=len(content),
                preferred_parser_id=preferred_parser_id,
                options=dict(options or {}),
                created_at=self._clock(),
            )
        )
        logger.info("Received %s (%d bytes) as analysis %s", filename, len(content), record.id)

        screening = self.validator.validate(filename, content)

        if screening.action == ScreeningAction.REJECT:
            await self.store.update(
                record.id,
                status=AnalysisStatus.REJECTED,
                error_message=screening.reason,
                completed_at=self._clock(),
            )
            await self._notify(record.id, EventType.ERROR, {"status": "rejected", "error": screening.reason})
            return record

        if screening.action == ScreeningAction.QUARANTINE:
            try:
                quarantine_record = await self.quarantine.quarantine(
                    record.id, filename, content, screening.reason, screening.sha256
                )
            except OSError as e:
                logger.error("Could not quarantine %s for analysis %s: %s", filename, record.id, e)
                await self.store.update(record.id, sha256=screening.sha256)
                await self._fail(record.id, f"Quarantine failed: {e}")
                return record
            await self.store.update(
                record.id,
                status=AnalysisStatus.QUARANTINED,
                sha256=screening.sha256,
                quarantine=quarantine_record,
                error_message=screening.reason,
                completed_at=self._clock(),
            )
            await self._notify(record.id, EventType.ERROR, {"status": "quarantined", "error": screening.reason})
            return record

        try:
            stored_path = await self._store_upload(record.id, filename, content)
        except OSError as e:
            logger.error("Could not store upload %s for analysis %s: %s", filename, record.id, e)
            await self.store.update(record.id, sha256=screening.sha256)
            await self._fail(record.id, f"Upload storage failed: {e}")
            return record
        mode = (
            AnalysisMode.CHUNKED
            if len(content) > self.settings.large_file_threshold
            else AnalysisMode.DIRECT
        )
        await self.store.update(
            record.id,
            status=AnalysisStatus.VALIDATED,
            progress=PROGRESS_VALIDATED,
            sha256=screening.sha256,
            stored_path=str(stored_path),
            mode=mode,
        )
        await self._notify_progress(record)

        self._schedule(record.id)
        return record

    def _schedule(self, analysis_id: str) -> None:
        self._cancel_events[analysis_id] = asyncio.Event()
        task = asyncio.create_task(self.process(analysis_id), name=f"analysis-{analysis_id}")
        self._tasks[analysis_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(analysis_id, None))

    async def _store_upload(self, analysis_id: str, filename: str, content: bytes) -> Path:
        directory = self.upload_path / analysis_id
        await aiofiles.os.makedirs(directory, exist_ok=True)
        path = directory / safe_filename(filename)
        async with aiofiles.open(path, "wb") as f:
            await f.write(content)
        return path

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, analysis_id: str) -> AnalysisRecord:
        """Run a validated analysis to a terminal state."""
        record = await self.store.get(analysis_id)
        if record is None:
            raise NotFoundError("Analysis", analysis_id)

        cancel_event = self._cancel_events.setdefault(analysis_id, asyncio.Event())
        timeout = self.settings.analysis_timeout_seconds
        await self.store.update(analysis_id, started_at=self._clock())

        try:
            async with asyncio.timeout(timeout):
                if record.mode == AnalysisMode.CHUNKED:
                    await self._process_chunked(record, cancel_event)
                else:
                    await self._process_direct(record, cancel_event)
        except AnalysisCancelled:
            await self._mark_cancelled(analysis_id)
        except TimeoutError:
            logger.warning("Analysis %s timed out after %ss", analysis_id, timeout)
            await self._fail(analysis_id, f"Analysis timed out after {timeout} seconds")
        except asyncio.CancelledError:
            await self._mark_cancelled(analysis_id)
            raise
        except Exception as e:
            logger.exception("Analysis %s failed", analysis_id)
            await self._fail(analysis_id, f"{type(e).__name__}: {e}")
        finally:
            self._cancel_events.pop(analysis_id, None)

        return record

    async def _process_direct(self, record: AnalysisRecord, cancel_event: asyncio.Event) -> None:
        content = await self._read_upload(record)
        text = decode_content(content)

        await self._advance(record, AnalysisStatus.SELECTING, PROGRESS_SELECTING)
        selected = await self._select_parser(record, content[: self.settings.sample_size])
        self._check_cancelled(cancel_event)

        events_text = text
        if selected is None:
            record.metadata["parsing"] = "no_parser"
        else:
            await self._advance(record, AnalysisStatus.PARSING, PROGRESS_SELECTING, parser_name=selected.descriptor.name)
            result = await selected.parser.parse(record.filename, content, cancel_event)
            if result.cancelled:
                raise AnalysisCancelled()
            if result.success:
                record.metadata["parsing"] = "completed"
                record.metadata["parse"] = {"duration": result.duration, **result.metadata}
                await self.store.update(record.id, events_count=result.events_count)
                if result.events:
                    events_text = "\n".join(event.raw for event in result.events)
            else:
                record.metadata["parsing"] = "failed"
                await self._stage_error(record, "parse", result.error_message or "Parsing failed")

        await self._advance(record, AnalysisStatus.EXTRACTING, PROGRESS_PARSED)
        self._check_cancelled(cancel_event)
        indicators = await self._extract(record, events_text)
        await self._publish_indicators(record, indicators)

        await self._enrich_and_finish(record, indicators, events_text, cancel_event)

    async def _process_chunked(self, record: AnalysisRecord, cancel_event: asyncio.Event) -> None:
        """Stream a large file through IOC extraction.

        Parser selection uses the head sample; full event parsing is skipped.
        """
        async with aiofiles.open(record.stored_path, "rb") as f:
            sample = await f.read(self.settings.sample_size)

        await self._advance(record, AnalysisStatus.SELECTING, PROGRESS_SELECTING)
        selected = await self._select_parser(record, sample)
        if selected is not None:
            await self.store.update(record.id, parser_name=selected.descriptor.name)
        record.metadata["parsing"] = "skipped_chunked"
        self._check_cancelled(cancel_event)

        await self._advance(record, AnalysisStatus.EXTRACTING, PROGRESS_SELECTING)

        decoder = codecs.getincrementaldecoder("utf-8-sig")(errors="replace")
        found: dict[tuple[str, str], Indicator] = {}
        carry = ""
        processed = 0
        chunks = 0
        total = max(record.size, 1)
        span = PROGRESS_EXTRACTED - PROGRESS_SELECTING

        async with aiofiles.open(record.stored_path, "rb") as f:
            while chunk := await f.read(self.settings.chunk_size):
                processed += len(chunk)
                chunks += 1

                text = carry + decoder.decode(chunk)
                # Hold back the trailing partial line so indicators are never split
                cut = text.rfind("\n")
                if cut == -1 or len(text) - cut > self.settings.chunk_size:
                    carry = ""
                else:
                    text, carry = text[: cut + 1], text[cut + 1:]

                await self._extract_into(record, text, found)

                progress = PROGRESS_SELECTING + int(span * processed / total)
                await self.store.update(record.id, progress=min(progress, PROGRESS_EXTRACTED))
                await self._notify_progress(record)

                self._check_cancelled(cancel_event)
                if chunks % self.settings.yield_every_chunks == 0:
                    await asyncio.sleep(0)

        await self._extract_into(record, carry + decoder.decode(b"", final=True), found)
        record.metadata["chunks_processed"] = chunks

        indicators = sorted(found.values(), key=lambda i: (-i.confidence, i.type.value, i.value))
        await self.store.update(record.id, indicators=indicators, progress=PROGRESS_EXTRACTED)
        await self._publish_indicators(record, indicators)

        await self._enrich_and_finish(record, indicators, decode_content(sample), cancel_event)

    async def _enrich_and_finish(
        self,
        record: AnalysisRecord,
        indicators: list[Indicator],
        summary_text: str,
        cancel_event: asyncio.Event,
    ) -> None:
        await self._advance(record, AnalysisStatus.MAPPING, PROGRESS_EXTRACTED)
        self._check_cancelled(cancel_event)
        techniques = await self._map(record, indicators)
        for technique in techniques:
            await self._notify(record.id, EventType.TECHNIQUE_MAPPED, technique.to_dict())

        await self._advance(record, AnalysisStatus.SUMMARIZING, PROGRESS_MAPPED)
        self._check_cancelled(cancel_event)
        summary = await self._summarize(record, summary_text)

        await self.store.update(
            record.id,
            summary=summary,
            status=AnalysisStatus.COMPLETED,
            progress=PROGRESS_DONE,
            completed_at=self._clock(),
        )
        logger.info(
            "Analysis %s completed: %d events, %d indicators, %d techniques",
            record.id,
            record.events_count,
            len(record.indicators),
            len(record.techniques),
        )
        await self._notify(
            record.id,
            EventType.COMPLETED,
            {
                "status": record.status.value,
                "events_count": record.events_count,
                "indicators_count": len(record.indicators),
                "techniques_count": len(record.techniques),
                "tactics": tactic_summary(record.techniques),
                "stage_errors": dict(record.stage_errors),
            },
        )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _select_parser(self, record: AnalysisRecord, sample: bytes):
        try:
            return await self.registry.select_parser(record.filename, sample, record.preferred_parser_id)
        except Exception as e:
            logger.warning("Parser selection failed for analysis %s: %s", record.id, e)
            await self._stage_error(record, "selection", str(e))
            return None

    async def _extract(self, record: AnalysisRecord, text: str) -> list[Indicator]:
        try:
            indicators = await self.extractor.extract(text, record.options.get("ioc"))
        except Exception as e:
            logger.warning("IOC extraction failed for analysis %s: %s", record.id, e)
            await self._stage_error(record, "ioc", str(e))
            return []
        await self.store.update(record.id, indicators=indicators, progress=PROGRESS_EXTRACTED)
        return indicators

    async def _extract_into(
        self,
        record: AnalysisRecord,
        text: str,
        found: dict[tuple[str, str], Indicator],
    ) -> None:
        """Extract from one chunk, keeping the highest confidence per (type, value)."""
        if not text:
            return
        try:
            indicators = await self.extractor.extract(text, record.options.get("ioc"))
        except Exception as e:
            logger.warning("IOC extraction failed on a chunk of analysis %s: %s", record.id, e)
            record.stage_errors.setdefault("ioc", str(e))
            return
        for indicator in indicators:
            current = found.get(indicator.key)
            if current is None or indicator.confidence > current.confidence:
                found[indicator.key] = indicator

    async def _map(self, record: AnalysisRecord, indicators: list[Indicator]) -> list[TechniqueMatch]:
        try:
            techniques = await self.mapper.map(indicators)
        except Exception as e:
            logger.warning("ATT&CK mapping failed for analysis %s: %s", record.id, e)
            await self._stage_error(record, "mitre", str(e))
            return []
        await self.store.update(record.id, techniques=techniques, progress=PROGRESS_MAPPED)
        return techniques

    async def _summarize(self, record: AnalysisRecord, text: str) -> str | None:
        try:
            return await self.summarizer.summarize(text, record.options.get("ai"))
        except Exception as e:
            logger.warning("Summarization failed for analysis %s: %s", record.id, e)
            await self._stage_error(record, "ai", str(e))
            return None

    # ------------------------------------------------------------------
    # Cancellation and queries
    # ------------------------------------------------------------------

    async def cancel(self, analysis_id: str) -> AnalysisRecord:
        """Cancel a running analysis.

        Raises:
            NotFoundError: Unknown analysis
            BadRequestError: The analysis already reached a terminal state
        """
        record = await self.get(analysis_id)
        if record.is_terminal:
            raise BadRequestError(f"Analysis '{analysis_id}' is already {record.status.value}")

        event = self._cancel_events.get(analysis_id)
        if event is not None:
            event.set()

        task = self._tasks.get(analysis_id)
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])

        if not record.is_terminal:
            await self._mark_cancelled(analysis_id)
        return record

    async def get(self, analysis_id: str) -> AnalysisRecord:
        record = await self.store.get(analysis_id)
        if record is None:
            raise NotFoundError("Analysis", analysis_id)
        return record

    async def list_analyses(self) -> list[AnalysisRecord]:
        return await self.store.list()

    @property
    def running_count(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    async def wait(self, analysis_id: str) -> AnalysisRecord:
        """Wait for the background task of an analysis to finish."""
        task = self._tasks.get(analysis_id)
        if task is not None:
            await asyncio.wait([task])
        return await self.get(analysis_id)

    async def shutdown(self) -> None:
        """Cancel outstanding analyses and wait for them to settle."""
        tasks = [t for t in self._tasks.values() if not t.done()]
        if not tasks:
            return
        logger.info("Cancelling %d running analyses", len(tasks))
        for task in tasks:
            task.cancel()
        await asyncio.wait(tasks)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_cancelled(cancel_event: asyncio.Event) -> None:
        if cancel_event.is_set():
            raise AnalysisCancelled()

    async def _read_upload(self, record: AnalysisRecord) -> bytes:
        async with aiofiles.open(record.stored_path, "rb") as f:
            return await f.read()

    async def _advance(self, record: AnalysisRecord, status: AnalysisStatus, progress: int, **changes: Any) -> None:
        await self.store.update(record.id, status=status, progress=progress, **changes)
        await self._notify_progress(record)

    async def _stage_error(self, record: AnalysisRecord, stage: str, message: str) -> None:
        record.stage_errors[stage] = message
        await self._notify(record.id, EventType.ERROR, {"stage": stage, "error": message})

    async def _fail(self, analysis_id: str, message: str) -> None:
        await self.store.update(
            analysis_id,
            status=AnalysisStatus.FAILED,
            error_message=message,
            completed_at=self._clock(),
        )
        await self._notify(analysis_id, EventType.ERROR, {"status": "failed", "error": message})

    async def _mark_cancelled(self, analysis_id: str) -> None:
        await self.store.update(
            analysis_id,
            status=AnalysisStatus.CANCELLED,
            error_message="Analysis was cancelled",
            completed_at=self._clock(),
        )
        logger.info("Analysis %s cancelled", analysis_id)
        await self._notify(analysis_id, EventType.ERROR, {"status": "cancelled", "error": "Analysis was cancelled"})

    async def _publish_indicators(self, record: AnalysisRecord, indicators: list[Indicator]) -> None:
        if not indicators:
            return
        await self._notify(
            record.id,
            EventType.IOC_FOUND,
            {
                "count": len(indicators),
                "by_type": IOCExtractor.get_summary(indicators),
                "indicators": [i.to_dict() for i in indicators[:NOTIFY_INDICATOR_LIMIT]],
            },
        )

    async def _notify_progress(self, record: AnalysisRecord) -> None:
        await self._notify(
            record.id,
            EventType.PROGRESS,
            {"status": record.status.value, "progress": record.progress},
        )

    async def _notify(self, analysis_id: str, kind: EventType, data: dict[str, Any]) -> None:
        try:
            await self.notifier.publish(analysis_id, kind, data)
        except Exception as e:
            logger.warning("Notification %s for analysis %s failed: %s", kind.value, analysis_id, e)
