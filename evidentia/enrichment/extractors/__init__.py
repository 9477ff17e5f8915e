"""IOC and entity extractors."""

from evidentia.enrichment.extractors.ioc import Indicator, IOCExtractor, IOCType

__all__ = [
    "IOCExtractor",
    "IOCType",
    "Indicator",
]
