"""Evidence intake: screening, quarantine and the analysis pipeline."""

from evidentia.intake.models import AnalysisRecord, AnalysisStatus, AnalysisStore
from evidentia.intake.pipeline import AnalysisPipeline
from evidentia.intake.quarantine import QuarantineStore
from evidentia.intake.validation import FileValidator

__all__ = [
    "AnalysisPipeline",
    "AnalysisRecord",
    "AnalysisStatus",
    "AnalysisStore",
    "FileValidator",
    "QuarantineStore",
]
