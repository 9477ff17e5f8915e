"""Evidentia enrichment stages.

Indicator extraction, ATT&CK technique mapping and optional AI
summarization of analyzed evidence.
"""

from evidentia.enrichment.extractors.ioc import Indicator, IOCExtractor, IOCType
from evidentia.enrichment.mitre import MitreMapper, TechniqueMatch
from evidentia.enrichment.summarizer import DisabledSummarizer, HttpSummarizer, create_summarizer

__all__ = [
    "DisabledSummarizer",
    "HttpSummarizer",
    "IOCExtractor",
    "IOCType",
    "Indicator",
    "MitreMapper",
    "TechniqueMatch",
    "create_summarizer",
]
