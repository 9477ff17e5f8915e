"""IOC (Indicator of Compromise) extractor.

Extracts indicators from evidence text using regex patterns. Supports IP
addresses, domains, URLs, hashes, email addresses, CVE and ATT&CK ids,
registry keys, file paths and bitcoin addresses. Every indicator carries a
confidence score derived from how specific its pattern is.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class IOCType(str, Enum):
    """Types of indicators of compromise."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"
    DOMAIN = "domain"
    URL = "url"
    EMAIL = "email"
    MD5 = "md5"
    SHA1 = "sha1"
    SHA256 = "sha256"
    SHA512 = "sha512"
    FILEPATH = "filepath"
    CVE = "cve"
    MITRE_TECHNIQUE = "mitre_technique"
    REGISTRY_KEY = "registry_key"
    BITCOIN_ADDRESS = "bitcoin"


HASH_TYPES = frozenset({IOCType.MD5, IOCType.SHA1, IOCType.SHA256, IOCType.SHA512})

# Base confidence per indicator type
TYPE_CONFIDENCE: dict[IOCType, float] = {
    IOCType.SHA512: 0.95,
    IOCType.SHA256: 0.95,
    IOCType.CVE: 0.95,
    IOCType.SHA1: 0.9,
    IOCType.URL: 0.9,
    IOCType.MITRE_TECHNIQUE: 0.9,
    IOCType.MD5: 0.85,
    IOCType.REGISTRY_KEY: 0.85,
    IOCType.IPV4: 0.8,
    IOCType.EMAIL: 0.8,
    IOCType.IPV6: 0.75,
    IOCType.DOMAIN: 0.6,
    IOCType.BITCOIN_ADDRESS: 0.6,
    IOCType.FILEPATH: 0.5,
}

# Indicators seen in defanged form were written down deliberately
DEFANGED_BONUS = 0.05


@dataclass
class Indicator:
    """An indicator found in evidence text."""

    type: IOCType
    value: str
    confidence: float
    context: str = ""
    original: str = ""
    start: int = 0

    @property
    def key(self) -> tuple[str, str]:
        return self.type.value, self.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "value": self.value,
            "confidence": self.confidence,
            "context": self.context,
        }


class IOCExtractor:
    """Extracts IOCs from text using pattern matching.

    Options accepted by ``extract``:
    - include_types: only extract these types (names or IOCType)
    - exclude_types: skip these types
    - filter_false_positives: drop well-known benign values (default True)
    """

    PATTERNS = {
        IOCType.URL: re.compile(
            r"https?://(?:[-\w.]|(?:%[\da-fA-F]{2}))+(?::\d+)?(?:/[-\w./?%&=+#~!@$*,;:()]*)?",
            re.IGNORECASE,
        ),
        IOCType.EMAIL: re.compile(
            r"\b[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}\b"
        ),
        IOCType.IPV4: re.compile(
            r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}"
            r"(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b"
        ),
        IOCType.IPV6: re.compile(
            r"\b(?:[0-9a-fA-F]{1,4}:){7}[0-9a-fA-F]{1,4}\b|"
            r"\b(?:[0-9a-fA-F]{1,4}:){1,6}:[0-9a-fA-F]{1,4}\b|"
            r"\b(?:[0-9a-fA-F]{1,4}:){1,5}(?::[0-9a-fA-F]{1,4}){1,2}\b|"
            r"\b(?:[0-9a-fA-F]{1,4}:){1,4}(?::[0-9a-fA-F]{1,4}){1,3}\b"
        ),
        IOCType.MD5: re.compile(r"\b[a-fA-F0-9]{32}\b"),
        IOCType.SHA1: re.compile(r"\b[a-fA-F0-9]{40}\b"),
        IOCType.SHA256: re.compile(r"\b[a-fA-F0-9]{64}\b"),
        IOCType.SHA512: re.compile(r"\b[a-fA-F0-9]{128}\b"),
        IOCType.DOMAIN: re.compile(
            r"\b(?:[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+[a-zA-Z]{2,}\b"
        ),
        IOCType.CVE: re.compile(r"\bCVE-\d{4}-\d{4,}\b", re.IGNORECASE),
        IOCType.MITRE_TECHNIQUE: re.compile(r"\bT\d{4}(?:\.\d{3})?\b"),
        IOCType.REGISTRY_KEY: re.compile(
            r"\b(?:HKEY_(?:LOCAL_MACHINE|CURRENT_USER|CLASSES_ROOT|USERS|CURRENT_CONFIG)|"
            r"HKLM|HKCU|HKCR|HKU|HKCC)\\[^\s\"']+",
            re.IGNORECASE,
        ),
        IOCType.FILEPATH: re.compile(
            r'\b[A-Za-z]:\\(?:[^\\/:*?"<>|\r\n\s]+\\)*[^\\/:*?"<>|\r\n\s]+|'
            r"(?<![\w/])/(?:etc|tmp|var|usr|home|root|bin|sbin|opt|dev/shm)(?:/[^\s/\"']+)+"
        ),
        IOCType.BITCOIN_ADDRESS: re.compile(
            r"\b(?:[13][a-km-zA-HJ-NP-Z1-9]{25,34}|bc1[ac-hj-np-z02-9]{11,71})\b"
        ),
    }

    VALID_TLDS = {
        "com", "org", "net", "edu", "gov", "mil", "int",
        "io", "co", "me", "info", "biz", "tv", "cc",
        "eu", "xyz", "online", "site", "tech", "app", "dev", "top", "club",
    }

    FALSE_POSITIVE_DOMAINS = {
        "example.com", "example.org", "example.net",
        "localhost.localdomain", "test.local",
        "schema.org", "w3.org",
    }

    FALSE_POSITIVE_IPS = {
        "0.0.0.0", "127.0.0.1", "255.255.255.255",
    }

    REFANG_RULES = [
        (re.compile(r"\[\.\]|\(\.\)|\[dot\]", re.IGNORECASE), "."),
        (re.compile(r"\[:\]"), ":"),
        (re.compile(r"\bhxxp", re.IGNORECASE), "http"),
        (re.compile(r"\[at\]|\[@\]|\(at\)", re.IGNORECASE), "@"),
    ]

    def __init__(self, context_chars: int = 50):
        """Initialize the IOC extractor.

        Args:
            context_chars: Number of context characters kept on each side
        """
        self.context_chars = context_chars

    async def extract(self, content: str, options: dict[str, Any] | None = None) -> list[Indicator]:
        """Extract indicators without blocking the event loop."""
        return await asyncio.to_thread(self.extract_sync, content, options)

    def extract_sync(self, content: str, options: dict[str, Any] | None = None) -> list[Indicator]:
        """Extract all IOCs from text.

        Args:
            content: Text to extract IOCs from
            options: Extraction options (see class docstring)

        Returns:
            Indicators ordered by position, unique per (type, value)
        """
        options = options or {}
        include = _type_set(options.get("include_types"))
        exclude = _type_set(options.get("exclude_types")) or set()
        filter_false_positives = options.get("filter_false_positives", True)

        text = self.refang(content)
        defanged = text != content

        indicators: list[Indicator] = []
        seen: set[tuple[str, str]] = set()

        for ioc_type, pattern in self.PATTERNS.items():
            if include is not None and ioc_type not in include:
                continue
            if ioc_type in exclude:
                continue

            for match in pattern.finditer(text):
                raw = match.group()
                value = self.normalize(raw, ioc_type)

                key = (ioc_type.value, value)
                if key in seen:
                    continue
                if not self.is_valid(value, ioc_type):
                    continue
                if filter_false_positives and self.is_false_positive(value, ioc_type):
                    continue
                seen.add(key)

                start = max(0, match.start() - self.context_chars)
                end = min(len(text), match.end() + self.context_chars)
                confidence = TYPE_CONFIDENCE[ioc_type]
                if defanged and value not in content.lower():
                    confidence = min(1.0, confidence + DEFANGED_BONUS)

                indicators.append(Indicator(
                    type=ioc_type,
                    value=value,
                    confidence=round(confidence, 2),
                    context=text[start:end],
                    original=raw,
                    start=match.start(),
                ))

        indicators.sort(key=lambda i: i.start)
        logger.debug("Extracted %d indicators from %d characters", len(indicators), len(content))
        return indicators

    def refang(self, text: str) -> str:
        """Convert defanged indicators back to normal form.

        Handles [.] (.) [dot] [:] hxxp [at] [@] (at).
        """
        for pattern, replacement in self.REFANG_RULES:
            text = pattern.sub(replacement, text)
        return text

    def normalize(self, value: str, ioc_type: IOCType) -> str:
        if ioc_type in HASH_TYPES or ioc_type in (IOCType.DOMAIN, IOCType.EMAIL):
            return value.lower()
        if ioc_type == IOCType.URL:
            return value.rstrip(".,;:)")
        if ioc_type in (IOCType.CVE, IOCType.MITRE_TECHNIQUE):
            return value.upper()
        return value

    def is_valid(self, value: str, ioc_type: IOCType) -> bool:
        if ioc_type == IOCType.DOMAIN:
            parts = value.split(".")
            if len(parts) < 2:
                return False
            tld = parts[-1]
            # Common TLDs or two-letter country codes
            if tld not in self.VALID_TLDS and len(tld) != 2:
                return False
            # Version numbers like 1.0.0
            return not all(p.isdigit() for p in parts)

        if ioc_type == IOCType.FILEPATH:
            return len(value) >= 5

        if ioc_type == IOCType.IPV4:
            parts = value.split(".")
            return len(parts) == 4 and all(0 <= int(p) <= 255 for p in parts)

        return True

    def is_false_positive(self, value: str, ioc_type: IOCType) -> bool:
        if ioc_type == IOCType.DOMAIN:
            return value in self.FALSE_POSITIVE_DOMAINS

        if ioc_type == IOCType.IPV4:
            if value in self.FALSE_POSITIVE_IPS:
                return True
            first, second = (int(p) for p in value.split(".")[:2])
            # Private and loopback ranges
            return (
                first in (10, 127)
                or (first == 172 and 16 <= second <= 31)
                or (first == 192 and second == 168)
            )

        if ioc_type in HASH_TYPES:
            return value == "0" * len(value) or value == "f" * len(value)

        return False

    @staticmethod
    def get_summary(indicators: list[Indicator]) -> dict[str, list[str]]:
        """Group indicator values by type."""
        summary: dict[str, list[str]] = {}
        for indicator in indicators:
            values = summary.setdefault(indicator.type.value, [])
            if indicator.value not in values:
                values.append(indicator.value)
        return summary


def _type_set(values: Any) -> set[IOCType] | None:
    if values is None:
        return None
    return {IOCType(v) for v in values}
