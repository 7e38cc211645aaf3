"""
Data Contracts - Records exchanged between the pipeline stages.

Every payload returned by an external service is parsed into one of these
models before the next stage sees it; a schema violation is a stage failure.
Field aliases follow the camelCase JSON the services speak.
"""
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .errors import PipelineError

MIN_EXTRACTION_CONFIDENCE = 0.5
DEFAULT_ACCURACY_THRESHOLD = 0.001  # 0.1%
_BOUNDARY_EPSILON = 1e-12  # float rounding of 1 - threshold


class _Contract(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_json_dict(self):
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class FlowCategory(str, Enum):
    REVENUE = "revenue"
    EXPENSE = "expense"
    ASSET = "asset"
    LIABILITY = "liability"
    EQUITY = "equity"


class FlowMetadata(_Contract):
    line_item: Optional[str] = None
    statement_section: Optional[str] = None


class Flow(_Contract):
    """A single directed money movement between two named entities."""
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    amount: float = Field(gt=0)
    category: FlowCategory
    metadata: Optional[FlowMetadata] = None

    @field_validator("source", "target")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @property
    def label(self) -> str:
        return flow_label(self.source, self.target)


class Period(_Contract):
    start: date
    end: date
    quarter: int = Field(ge=1, le=4)
    year: int = Field(ge=2000, le=2100)

    @model_validator(mode="after")
    def _ordered(self):
        if self.end < self.start:
            raise ValueError("period end must not precede period start")
        return self


class StatementMetadata(_Contract):
    company: str = Field(min_length=1)
    period: Period
    currency: str = Field(pattern=r"^[A-Za-z]{3}$")
    statement_type: List[str] = Field(min_length=1)

    @field_validator("currency")
    @classmethod
    def _upper(cls, value: str) -> str:
        return value.upper()


class AnalysisOutput(_Contract):
    """Sole output of extraction; sole input of generation."""
    flows: List[Flow] = Field(min_length=1)
    metadata: StatementMetadata
    confidence: float = Field(ge=0, le=1)


class Discrepancy(_Contract):
    flow: str
    expected: float
    actual: float
    percentage_error: float = Field(ge=0)

    @field_serializer("percentage_error")
    def _finite(self, value: float, info):
        # JSON has no infinity; an unmatchable discrepancy is reported as null
        if info.mode_is_json() and not math.isfinite(value):
            return None
        return value


class ValueComparison(_Contract):
    flow: str
    diagram_value: float
    source_value: float
    match: bool
    error: Optional[float] = None


class VerificationReport(_Contract):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    overall_accuracy: float = Field(ge=0, le=1)
    flows_verified: int = Field(ge=0)
    flows_total: int = Field(ge=0)
    discrepancies: List[Discrepancy] = Field(default_factory=list)
    passed: bool
    confidence_score: float = Field(ge=0, le=1)
    reasoning: str = Field(min_length=1)
    value_comparisons: Optional[List[ValueComparison]] = None

    @model_validator(mode="after")
    def _consistent(self):
        if self.flows_verified > self.flows_total:
            raise ValueError("flowsVerified cannot exceed flowsTotal")
        if self.passed and self.discrepancies:
            raise ValueError("a report with discrepancies cannot pass")
        return self


class GenerationOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    diagram: bytes
    width: int = 1024
    height: int = 1024
    format: str = "png"

    @property
    def mime_type(self) -> str:
        return f"image/{self.format}"


class VerificationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    verified: bool
    accuracy: float
    discrepancies: List[Discrepancy]
    report: VerificationReport


# ─────────────────────────────────────────────────────────────
# Numeric policy
# ─────────────────────────────────────────────────────────────

def flow_label(source: str, target: str) -> str:
    return f"{source} -> {target}"


def percentage_error(expected: float, actual: float) -> float:
    """|actual - expected| / expected * 100; a zero expectation only matches zero."""
    if expected == 0:
        return 0.0 if actual == 0 else math.inf
    return abs((actual - expected) / expected) * 100


def is_passing(discrepancies: List[Discrepancy], overall_accuracy: float,
               threshold: float = DEFAULT_ACCURACY_THRESHOLD) -> bool:
    # A single out-of-tolerance flow fails the diagram regardless of aggregate accuracy
    return len(discrepancies) == 0 and overall_accuracy >= 1 - threshold - _BOUNDARY_EPSILON


# ─────────────────────────────────────────────────────────────
# Run records
# ─────────────────────────────────────────────────────────────

class RunStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PipelineRun:
    """Persisted working record of one run; status is its only mutable field."""
    id: str
    status: RunStatus
    retries: int
    started_at: datetime
    filename: str = "financial-statement.pdf"
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class ResultMetadata:
    processing_time_ms: int
    retries: int
    flows_extracted: int


@dataclass(frozen=True)
class PipelineResult:
    """Terminal output of a run. Always fully populated, including on failure."""
    success: bool
    diagram: bytes
    reasoning: str
    accuracy: float
    metadata: ResultMetadata
    run_id: Optional[str] = None
    verification_report: Optional[VerificationReport] = None
    statement_metadata: Optional[StatementMetadata] = None
    flows: Tuple[Flow, ...] = field(default_factory=tuple)
    error: Optional[PipelineError] = None
