"""
Error taxonomy and tagged result values for the diagram pipeline.

Stage outcomes travel as values (Ok / Err) rather than exceptions, so the
orchestrator can read what happened instead of inferring it from a catch block.
Exceptions remain at the edges: PDF parsing, HTTP calls and storage I/O.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar, Union

T = TypeVar("T")
E = TypeVar("E")


class ErrorCode(str, Enum):
    PDF_ERROR = "PDF_ERROR"
    EXTRACTION_ERROR = "EXTRACTION_ERROR"
    GENERATION_ERROR = "GENERATION_ERROR"
    VERIFICATION_ERROR = "VERIFICATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class Stage(str, Enum):
    PARSING = "parsing"
    EXTRACTION = "extraction"
    GENERATION = "generation"
    VERIFICATION = "verification"


@dataclass(frozen=True)
class PipelineError:
    """Tagged failure surfaced to callers of the pipeline."""
    code: ErrorCode
    message: str
    stage: Stage

    @property
    def recoverable(self) -> bool:
        # Retrying the whole run may succeed for every classified failure
        return self.code != ErrorCode.UNKNOWN_ERROR

    def to_dict(self):
        return {
            "code": self.code.value,
            "message": self.message,
            "stage": self.stage.value,
            "recoverable": self.recoverable,
        }


@dataclass(frozen=True)
class StageFailure:
    """Definitive failure of a Stage Adapter after its local retries."""
    label: str
    message: str
    attempts: int
    cause: Optional[BaseException] = None


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Union[Ok[T], Err[E]]


# ─────────────────────────────────────────────────────────────
# Edge exceptions
# ─────────────────────────────────────────────────────────────

class DocumentError(Exception):
    """Malformed or unreadable input document (PDF_ERROR)."""


class CapabilityError(Exception):
    """Transport or payload failure of an external intelligence service."""


class StorageError(Exception):
    """Record store or blob store call failed."""


class NonRetryableError(Exception):
    """Raised inside a retried operation to stop the retry loop immediately."""


class ContentError(NonRetryableError):
    """The service answered, but the content is unusable (e.g. low confidence)."""
