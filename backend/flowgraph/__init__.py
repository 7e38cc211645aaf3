"""
Flowgraph Package - Financial Statement to Verified Flow Diagram

Modules:
- schema: Data contracts (flows, statement metadata, verification reports)
- stages: Extraction, generation and verification adapters with bounded retry
- pipeline: State machine orchestrator with the regeneration cycle
- formatter: External response shapes
- document: PDF validation and text capture
- gemini: Capability clients for the Gemini REST API
"""
from .config import Config, StageOptions
from .errors import ErrorCode, PipelineError, Stage
from .pipeline import DiagramPipeline, PipelineOptions, PipelineState
from .schema import AnalysisOutput, Flow, PipelineResult, VerificationReport

__all__ = [
    'Config', 'StageOptions', 'ErrorCode', 'PipelineError', 'Stage',
    'DiagramPipeline', 'PipelineOptions', 'PipelineState',
    'AnalysisOutput', 'Flow', 'PipelineResult', 'VerificationReport',
]
