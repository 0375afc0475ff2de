from docpipe.pipeline.stages.base import BaseStage, StageOutcome, StageResult
from docpipe.pipeline.stages.registry import StageRegistry
from docpipe.pipeline.stages.metadata import MetadataStage
from docpipe.pipeline.stages.text_extraction import TextExtractionStage
from docpipe.pipeline.stages.analysis import AnalysisStage
from docpipe.pipeline.stages.persistence import PersistenceStage

__all__ = [
    "BaseStage",
    "StageOutcome",
    "StageResult",
    "StageRegistry",
    "MetadataStage",
    "TextExtractionStage",
    "AnalysisStage",
    "PersistenceStage",
]
