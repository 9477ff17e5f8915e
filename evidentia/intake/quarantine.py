"""Quarantine storage for suspicious uploads.

Each quarantined analysis gets its own directory holding the original bytes
in an ``original/`` subdirectory and a ``metadata.json`` sidecar describing
why the file was held back.
"""

import json
import logging
import os
import re
from datetime import datetime
from pathlib import Path

import aiofiles
import aiofiles.os

from evidentia.intake.models import QuarantineRecord
from evidentia.parsers.base import Clock, ensure_utc, utc_now

logger = logging.getLogger(__name__)

SIDECAR_NAME = "metadata.json"
# Original bytes are kept apart from the sidecar
DATA_DIR = "original"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(filename: str) -> str:
    """Reduce a client-supplied name to a single safe path component."""
    name = os.path.basename(filename.replace("\\", "/"))
    name = _UNSAFE_CHARS.sub("_", name).lstrip(".")
    return name or "upload.bin"


class QuarantineStore:
    """Writes quarantined files and their sidecars under a base directory."""

    def __init__(self, base_path: str | Path, clock: Clock | None = None):
        self.base_path = Path(base_path)
        self._clock = clock or utc_now

    async def quarantine(
        self,
        analysis_id: str,
        filename: str,
        content: bytes,
        reason: str,
        sha256: str,
    ) -> QuarantineRecord:
        """Store a file in quarantine and return its record."""
        directory = self.base_path / analysis_id
        await aiofiles.os.makedirs(directory / DATA_DIR, exist_ok=True)

        data_path = directory / DATA_DIR / safe_filename(filename)
        sidecar_path = directory / SIDECAR_NAME

        record = QuarantineRecord(
            analysis_id=analysis_id,
            original_filename=filename,
            reason=reason,
            sha256=sha256,
            size=len(content),
            quarantined_at=ensure_utc(self._clock()),
            data_path=str(data_path),
            sidecar_path=str(sidecar_path),
        )

        async with aiofiles.open(data_path, "wb") as f:
            await f.write(content)
        async with aiofiles.open(sidecar_path, "w") as f:
            await f.write(json.dumps(record.to_dict(), indent=2))

        logger.warning("Quarantined %s for analysis %s: %s", filename, analysis_id, reason)
        return record

    async def list_records(self) -> list[QuarantineRecord]:
        """Read all quarantine sidecars back."""
        if not await aiofiles.os.path.isdir(self.base_path):
            return []

        records = []
        for entry in sorted(await aiofiles.os.listdir(self.base_path)):
            sidecar = self.base_path / entry / SIDECAR_NAME
            if not await aiofiles.os.path.isfile(sidecar):
                continue
            try:
                async with aiofiles.open(sidecar) as f:
                    data = json.loads(await f.read())
                records.append(_record_from_dict(data))
            except (OSError, ValueError, KeyError) as e:
                logger.warning("Unreadable quarantine sidecar %s: %s", sidecar, e)
        return records


def _record_from_dict(data: dict) -> QuarantineRecord:
    return QuarantineRecord(
        analysis_id=data["analysis_id"],
        original_filename=data["original_filename"],
        reason=data["reason"],
        sha256=data["sha256"],
        size=data["size"],
        quarantined_at=datetime.fromisoformat(data["quarantined_at"]),
        data_path=data["data_path"],
        sidecar_path=data["sidecar_path"],
    )
