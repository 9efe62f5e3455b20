from aicoder.ai.parser import GeneratedFile, parse_response
from aicoder.ai.pipeline import AIPipeline, PipelineEvent

__all__ = [
    "AIPipeline",
    "GeneratedFile",
    "PipelineEvent",
    "parse_response",
]
