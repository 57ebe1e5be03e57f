from damflow_core.enrichment.analysis import AnalysisEngine, AnalysisInput
from damflow_core.enrichment.client import ModelClient, OpenAIModelClient
from damflow_core.enrichment.prompts import PALETTE, normalize_colors

__all__ = [
    "AnalysisEngine",
    "AnalysisInput",
    "ModelClient",
    "OpenAIModelClient",
    "PALETTE",
    "normalize_colors",
]
