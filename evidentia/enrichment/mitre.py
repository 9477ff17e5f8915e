"""MITRE ATT&CK mapping for extracted indicators.

Maps indicators to techniques using a static rule table. Each rule carries
a weight; a technique's confidence is the rule weight times the highest
confidence among the indicators that triggered it. Technique ids quoted
verbatim in evidence (T1059.001) map with full weight.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from evidentia.enrichment.extractors.ioc import HASH_TYPES, Indicator, IOCType

logger = logging.getLogger(__name__)

TACTICS: dict[str, str] = {
    "initial_access": "Initial Access",
    "execution": "Execution",
    "persistence": "Persistence",
    "privilege_escalation": "Privilege Escalation",
    "defense_evasion": "Defense Evasion",
    "credential_access": "Credential Access",
    "discovery": "Discovery",
    "lateral_movement": "Lateral Movement",
    "collection": "Collection",
    "command_and_control": "Command and Control",
    "exfiltration": "Exfiltration",
    "impact": "Impact",
}

TECHNIQUE_ID = re.compile(r"^T\d{4}(?:\.\d{3})?$")

_EXECUTABLE_URL = re.compile(r"\.(?:exe|dll|ps1|bat|sh|hta|vbs|scr|msi)(?:$|[?#])", re.IGNORECASE)
_NON_STANDARD_PORT = re.compile(r"^https?://[^/]+:(?!80(?:/|$)|443(?:/|$))\d+", re.IGNORECASE)
_RUN_KEY = re.compile(r"\\(?:Run|RunOnce)(?:\\|$)", re.IGNORECASE)
_CREDENTIAL_FILE = re.compile(r"lsass|ntds\.dit|\\config\\SAM\b|/etc/shadow", re.IGNORECASE)
_POWERSHELL = re.compile(r"powershell|\.ps1\b", re.IGNORECASE)
_SCRIPT_PATH = re.compile(r"\.(?:sh|py|pl)$|/tmp/|/dev/shm/", re.IGNORECASE)


@dataclass(frozen=True)
class TechniqueRule:
    """Static mapping from indicator shape to an ATT&CK technique."""

    technique_id: str
    name: str
    tactic: str
    weight: float
    matches: Callable[[Indicator], bool]


def _of_type(*types: IOCType) -> Callable[[Indicator], bool]:
    return lambda indicator: indicator.type in types


def _value_matches(pattern: re.Pattern, *types: IOCType) -> Callable[[Indicator], bool]:
    return lambda indicator: indicator.type in types and bool(pattern.search(indicator.value))


TECHNIQUE_RULES: list[TechniqueRule] = [
    TechniqueRule("T1105", "Ingress Tool Transfer", "command_and_control", 0.8,
                  _value_matches(_EXECUTABLE_URL, IOCType.URL)),
    TechniqueRule("T1071.001", "Application Layer Protocol: Web Protocols", "command_and_control", 0.6,
                  _of_type(IOCType.URL)),
    TechniqueRule("T1071.004", "Application Layer Protocol: DNS", "command_and_control", 0.4,
                  _of_type(IOCType.DOMAIN)),
    TechniqueRule("T1571", "Non-Standard Port", "command_and_control", 0.6,
                  _value_matches(_NON_STANDARD_PORT, IOCType.URL)),
    TechniqueRule("T1041", "Exfiltration Over C2 Channel", "exfiltration", 0.3,
                  _of_type(IOCType.IPV4, IOCType.IPV6)),
    TechniqueRule("T1566", "Phishing", "initial_access", 0.5,
                  _of_type(IOCType.EMAIL)),
    TechniqueRule("T1190", "Exploit Public-Facing Application", "initial_access", 0.7,
                  _of_type(IOCType.CVE)),
    TechniqueRule("T1204.002", "User Execution: Malicious File", "execution", 0.4,
                  _of_type(*HASH_TYPES)),
    TechniqueRule("T1059.001", "Command and Scripting Interpreter: PowerShell", "execution", 0.8,
                  _value_matches(_POWERSHELL, IOCType.FILEPATH, IOCType.URL)),
    TechniqueRule("T1059.004", "Command and Scripting Interpreter: Unix Shell", "execution", 0.5,
                  _value_matches(_SCRIPT_PATH, IOCType.FILEPATH)),
    TechniqueRule("T1547.001", "Boot or Logon Autostart Execution: Registry Run Keys", "persistence", 0.9,
                  _value_matches(_RUN_KEY, IOCType.REGISTRY_KEY)),
    TechniqueRule("T1112", "Modify Registry", "defense_evasion", 0.5,
                  _of_type(IOCType.REGISTRY_KEY)),
    TechniqueRule("T1003", "OS Credential Dumping", "credential_access", 0.85,
                  _value_matches(_CREDENTIAL_FILE, IOCType.FILEPATH)),
    TechniqueRule("T1496", "Resource Hijacking", "impact", 0.6,
                  _of_type(IOCType.BITCOIN_ADDRESS)),
]

# Names for technique ids that are quoted directly in evidence
KNOWN_TECHNIQUES: dict[str, tuple[str, str]] = {
    rule.technique_id: (rule.name, rule.tactic) for rule in TECHNIQUE_RULES
}
KNOWN_TECHNIQUES.update({
    "T1059": ("Command and Scripting Interpreter", "execution"),
    "T1071": ("Application Layer Protocol", "command_and_control"),
    "T1078": ("Valid Accounts", "initial_access"),
    "T1110": ("Brute Force", "credential_access"),
    "T1021": ("Remote Services", "lateral_movement"),
    "T1082": ("System Information Discovery", "discovery"),
    "T1083": ("File and Directory Discovery", "discovery"),
    "T1005": ("Data from Local System", "collection"),
    "T1048": ("Exfiltration Over Alternative Protocol", "exfiltration"),
    "T1486": ("Data Encrypted for Impact", "impact"),
    "T1547": ("Boot or Logon Autostart Execution", "persistence"),
    "T1548": ("Abuse Elevation Control Mechanism", "privilege_escalation"),
    "T1562": ("Impair Defenses", "defense_evasion"),
})


@dataclass
class TechniqueMatch:
    """An ATT&CK technique supported by one or more indicators."""

    technique_id: str
    name: str
    tactic: str
    confidence: float
    indicators: list[str] = field(default_factory=list)

    @property
    def tactic_name(self) -> str:
        return TACTICS.get(self.tactic, self.tactic)

    def to_dict(self) -> dict[str, Any]:
        return {
            "technique_id": self.technique_id,
            "name": self.name,
            "tactic": self.tactic,
            "tactic_name": self.tactic_name,
            "confidence": self.confidence,
            "indicators": list(self.indicators),
        }


def lookup_technique(technique_id: str) -> tuple[str, str]:
    """Name and tactic for a technique, falling back to its parent."""
    if technique_id in KNOWN_TECHNIQUES:
        return KNOWN_TECHNIQUES[technique_id]
    parent = technique_id.split(".")[0]
    if parent in KNOWN_TECHNIQUES:
        name, tactic = KNOWN_TECHNIQUES[parent]
        return f"{name} ({technique_id})", tactic
    return f"Technique {technique_id}", "unknown"


class MitreMapper:
    """Maps indicators onto ATT&CK techniques."""

    def __init__(self, rules: list[TechniqueRule] | None = None):
        self.rules = rules if rules is not None else TECHNIQUE_RULES

    async def map(self, indicators: list[Indicator]) -> list[TechniqueMatch]:
        """Map indicators to techniques.

        Returns:
            Matches sorted by confidence (highest first), one per technique
        """
        matches: dict[str, TechniqueMatch] = {}

        for rule in self.rules:
            triggered = [i for i in indicators if rule.matches(i)]
            if not triggered:
                continue
            confidence = rule.weight * max(i.confidence for i in triggered)
            self._merge(matches, rule.technique_id, rule.name, rule.tactic, confidence, triggered)

        for indicator in indicators:
            if indicator.type != IOCType.MITRE_TECHNIQUE or not TECHNIQUE_ID.match(indicator.value):
                continue
            name, tactic = lookup_technique(indicator.value)
            self._merge(matches, indicator.value, name, tactic, indicator.confidence, [indicator])

        result = sorted(matches.values(), key=lambda m: (-m.confidence, m.technique_id))
        logger.debug("Mapped %d indicators to %d techniques", len(indicators), len(result))
        return result

    @staticmethod
    def _merge(
        matches: dict[str, TechniqueMatch],
        technique_id: str,
        name: str,
        tactic: str,
        confidence: float,
        triggered: list[Indicator],
    ) -> None:
        confidence = round(min(confidence, 1.0), 2)
        existing = matches.get(technique_id)
        if existing is None:
            matches[technique_id] = TechniqueMatch(
                technique_id=technique_id,
                name=name,
                tactic=tactic,
                confidence=confidence,
                indicators=[i.value for i in triggered],
            )
            return
        existing.confidence = max(existing.confidence, confidence)
        for indicator in triggered:
            if indicator.value not in existing.indicators:
                existing.indicators.append(indicator.value)


def tactic_summary(techniques: list[TechniqueMatch]) -> dict[str, int]:
    """Count mapped techniques per tactic display name."""
    counts: dict[str, int] = {}
    for technique in techniques:
        counts[technique.tactic_name] = counts.get(technique.tactic_name, 0) + 1
    return counts
