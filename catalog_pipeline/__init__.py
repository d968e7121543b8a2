"""Build, publish and round-trip verification of operator catalog index images."""

from .identifiers import RunIdentifiers, generate_identifier
from .pipeline import CatalogPipeline, PipelineContext, PipelineResult, PipelineState, Stage
from .plan import RunPlan

__all__ = [
    "CatalogPipeline",
    "PipelineContext",
    "PipelineResult",
    "PipelineState",
    "RunIdentifiers",
    "RunPlan",
    "Stage",
    "generate_identifier",
]
