"""
External collaborators of the pipeline.

The intelligence services and the persistence layer are consumed through
these interfaces only; the Gemini clients and the Supabase stores are the
production implementations, tests substitute in-memory ones.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from .retry import Attempt
from .schema import Flow, PipelineRun, RunStatus, StatementMetadata, VerificationReport


# ─────────────────────────────────────────────────────────────
# Stage requests
# ─────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExtractionRequest:
    text: Optional[str]
    is_scanned: bool
    document: Optional[bytes] = None


@dataclass(frozen=True)
class GenerationRequest:
    flows: Tuple[Flow, ...]
    metadata: StatementMetadata


@dataclass(frozen=True)
class VerificationRequest:
    diagram: bytes
    flows: Tuple[Flow, ...]
    threshold: float


# ─────────────────────────────────────────────────────────────
# Intelligence services
# ─────────────────────────────────────────────────────────────

class ExtractionCapability(ABC):
    @abstractmethod
    async def extract(self, request: ExtractionRequest, prompt: str, attempt: Attempt,
                      api_key: Optional[str] = None) -> Dict[str, Any]:
        """Return the raw AnalysisOutput-shaped payload."""


class GenerationCapability(ABC):
    @abstractmethod
    async def generate(self, request: GenerationRequest, prompt: str, attempt: Attempt,
                       api_key: Optional[str] = None) -> bytes:
        """Return the encoded diagram image."""


class VerificationCapability(ABC):
    @abstractmethod
    async def verify(self, request: VerificationRequest, prompt: str, attempt: Attempt,
                     api_key: Optional[str] = None) -> Dict[str, Any]:
        """Return the raw verification payload read off the diagram."""


# ─────────────────────────────────────────────────────────────
# Persistence
# ─────────────────────────────────────────────────────────────

class RecordStore(ABC):
    @abstractmethod
    async def create_run(self, filename: str, status: RunStatus = RunStatus.PROCESSING) -> PipelineRun:
        pass

    @abstractmethod
    async def update_run_status(self, run_id: str, status: RunStatus,
                                retries: Optional[int] = None) -> None:
        pass

    @abstractmethod
    async def insert_flows(self, run_id: str, flows: List[Flow]) -> None:
        pass

    @abstractmethod
    async def insert_verification(self, run_id: str, report: VerificationReport) -> None:
        pass

    @abstractmethod
    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        pass

    @abstractmethod
    async def get_flows(self, run_id: str) -> List[Flow]:
        pass

    @abstractmethod
    async def get_verification(self, run_id: str) -> Optional[VerificationReport]:
        pass

    @abstractmethod
    async def delete_run(self, run_id: str) -> None:
        pass


class BlobStore(ABC):
    @abstractmethod
    async def put_object(self, data: bytes, key: str, bucket: str,
                         content_type: str = "application/octet-stream") -> str:
        """Store `data` under `key` and return its storage path."""

    @abstractmethod
    async def get_object(self, key: str, bucket: str) -> bytes:
        pass

    @abstractmethod
    async def get_signed_url(self, path: str, bucket: str) -> str:
        pass

    @abstractmethod
    async def delete_prefix(self, bucket: str, prefix: str) -> None:
        pass


def input_key(run_id: str, filename: str) -> str:
    return f"{run_id}/{filename}"


def diagram_key(run_id: str) -> str:
    return f"{run_id}/{run_id}-diagram.png"
