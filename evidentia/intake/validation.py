"""Upload screening: size, extension, file signature and malware checks."""

import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import PurePath

from evidentia.config import Settings
from evidentia.parsers.base import normalize_extension

logger = logging.getLogger(__name__)

# Expected leading bytes per extension; any listed signature is accepted
MAGIC_SIGNATURES: dict[str, tuple[bytes, ...]] = {
    ".pdf": (b"%PDF",),
    ".zip": (b"PK\x03\x04",),
    ".docx": (b"PK\x03\x04",),
    ".xlsx": (b"PK\x03\x04",),
    ".png": (b"\x89PNG",),
    ".jpg": (b"\xff\xd8\xff",),
    ".jpeg": (b"\xff\xd8\xff",),
    ".gif": (b"GIF8",),
    ".doc": (b"\xd0\xcf\x11\xe0",),
    ".xls": (b"\xd0\xcf\x11\xe0",),
    ".evtx": (b"ElfFile",),
    ".pcap": (b"\xa1\xb2\xc3\xd4", b"\xd4\xc3\xb2\xa1"),
    ".pcapng": (b"\x0a\x0d\x0d\x0a",),
    ".gz": (b"\x1f\x8b",),
}


class ScreeningAction(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"
    QUARANTINE = "quarantine"


@dataclass
class ScreeningResult:
    """Outcome of screening one upload."""

    action: ScreeningAction
    extension: str
    sha256: str | None = None
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.action == ScreeningAction.ACCEPT


def sha256_digest(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


class FileValidator:
    """Screens uploads before they enter the analysis pipeline.

    Rejections are for files that should never have been sent (too big,
    empty, executable or unknown type). Quarantine is for files that look
    deceptive or dangerous and are kept for later inspection.
    """

    def __init__(self, settings: Settings):
        self.max_file_size = settings.max_file_size
        self.allowed_extensions = {normalize_extension(e) for e in settings.allowed_extensions}
        self.blocked_extensions = {normalize_extension(e) for e in settings.blocked_extensions}
        self.malware_signatures = [
            s.encode("utf-8").lower() for s in settings.malware_signatures if s
        ]

    def validate(self, filename: str, content: bytes) -> ScreeningResult:
        extension = normalize_extension(PurePath(filename).suffix)
        size = len(content)

        if size == 0:
            return self._reject(extension, filename, "File is empty")
        if size > self.max_file_size:
            return self._reject(
                extension, filename, f"File size {size} exceeds maximum of {self.max_file_size} bytes"
            )
        if extension in self.blocked_extensions:
            return self._reject(extension, filename, f"File type {extension} is blocked")
        if extension not in self.allowed_extensions:
            return self._reject(
                extension, filename, f"File type {extension or '(none)'} is not allowed"
            )

        digest = sha256_digest(content)

        expected = MAGIC_SIGNATURES.get(extension)
        if expected and not content.startswith(expected):
            return self._quarantine(
                extension,
                digest,
                filename,
                f"File content does not match the expected format for {extension}",
            )

        signature = self._find_malware_signature(content)
        if signature is not None:
            return self._quarantine(extension, digest, filename, "Known malware signature detected")

        return ScreeningResult(ScreeningAction.ACCEPT, extension, sha256=digest)

    def _find_malware_signature(self, content: bytes) -> bytes | None:
        if not self.malware_signatures:
            return None
        lowered = content.lower()
        return next((s for s in self.malware_signatures if s in lowered), None)

    @staticmethod
    def _reject(extension: str, filename: str, reason: str) -> ScreeningResult:
        logger.info("Rejected upload %s: %s", filename, reason)
        return ScreeningResult(ScreeningAction.REJECT, extension, reason=reason)

    @staticmethod
    def _quarantine(extension: str, digest: str, filename: str, reason: str) -> ScreeningResult:
        logger.warning("Quarantining upload %s: %s", filename, reason)
        return ScreeningResult(ScreeningAction.QUARANTINE, extension, sha256=digest, reason=reason)
