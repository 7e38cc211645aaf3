"""
Diagram Pipeline Orchestrator - Coordinates Parse, Extract, Generate and Verify.

Flow: Created → Parsing → Extracting → Generating → Verifying → Completed | Failed

Verifying owns the regeneration cycle: a diagram that fails verification is
regenerated from the same extracted flows and verified again, up to
MAX_VERIFICATION_RETRIES verifications in total.

Each state has one transition coroutine taking the RunContext accumulator and
returning (next state, new context). The context is replaced, never mutated,
and failure results are built from what it holds.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Tuple

from .config import Config, StageOptions, check_threshold
from .document import BaseParser, ParsedDocument, PDFParser, validate_pdf
from .errors import (
    DocumentError,
    Err,
    ErrorCode,
    NonRetryableError,
    PipelineError,
    Stage,
    StageFailure,
)
from .interfaces import (
    BlobStore,
    ExtractionRequest,
    GenerationRequest,
    RecordStore,
    VerificationRequest,
    diagram_key,
    input_key,
)
from .retry import Attempt, no_backoff, retry_with_backoff
from .schema import (
    AnalysisOutput,
    PipelineResult,
    ResultMetadata,
    RunStatus,
    VerificationReport,
)
from .stages import ExtractionStage, GenerationStage, VerificationStage

MAX_VERIFICATION_RETRIES = 3


class PipelineState(str, Enum):
    CREATED = "created"
    PARSING = "parsing"
    EXTRACTING = "extracting"
    GENERATING = "generating"
    VERIFYING = "verifying"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (PipelineState.COMPLETED, PipelineState.FAILED)

STAGE_OF_STATE = {
    PipelineState.CREATED: Stage.PARSING,
    PipelineState.PARSING: Stage.PARSING,
    PipelineState.EXTRACTING: Stage.EXTRACTION,
    PipelineState.GENERATING: Stage.GENERATION,
    PipelineState.VERIFYING: Stage.VERIFICATION,
    PipelineState.COMPLETED: Stage.VERIFICATION,
}


@dataclass(frozen=True)
class PipelineOptions:
    filename: str = "financial-statement.pdf"
    max_retries: Optional[int] = None          # extraction adapter retries
    accuracy_threshold: Optional[float] = None
    run_id: Optional[str] = None               # pending run created at upload

    def __post_init__(self):
        if self.max_retries is not None and self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.accuracy_threshold is not None:
            check_threshold(self.accuracy_threshold)


@dataclass(frozen=True)
class RunContext:
    """Last known good state of a run."""
    started: float
    document: bytes
    threshold: float
    filename: str
    extraction_retries: Optional[int] = None
    run_id: Optional[str] = None
    parsed: Optional[ParsedDocument] = None
    analysis: Optional[AnalysisOutput] = None
    diagram: bytes = b""
    report: Optional[VerificationReport] = None
    retries: int = 0
    error: Optional[PipelineError] = None

    @property
    def flows_extracted(self) -> int:
        return len(self.analysis.flows) if self.analysis else 0

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


Transition = Tuple[PipelineState, RunContext]


class DiagramRejected(Exception):
    """A verification ran and the diagram did not pass."""

    def __init__(self, report: VerificationReport):
        super().__init__(
            f"Diagram failed verification: {len(report.discrepancies)} discrepancies, "
            f"accuracy {report.overall_accuracy:.4f}"
        )
        self.report = report


class VerificationUnavailable(Exception):
    def __init__(self, failure: StageFailure):
        super().__init__(failure.message)
        self.failure = failure


class RegenerationFailed(NonRetryableError):
    def __init__(self, error: PipelineError):
        super().__init__(error.message)
        self.error = error


class VerificationRefused(NonRetryableError):
    """The adapter rejected its input without calling the service."""

    def __init__(self, failure: StageFailure):
        super().__init__(failure.message)
        self.failure = failure


class DiagramPipeline:
    """
    Runs one financial statement through extraction, generation and
    verification. Holds no per-run state, so concurrent runs are independent.
    """

    def __init__(self, config: Config, extraction: ExtractionStage, generation: GenerationStage,
                 verification: VerificationStage, records: RecordStore, blobs: BlobStore,
                 parser: Optional[BaseParser] = None):
        self.config = config
        self.extraction = extraction
        self.generation = generation
        self.verification = verification
        self.records = records
        self.blobs = blobs
        self.parser = parser or PDFParser()
        self._transitions = {
            PipelineState.CREATED: self._validate,
            PipelineState.PARSING: self._parse,
            PipelineState.EXTRACTING: self._extract,
            PipelineState.GENERATING: self._generate,
            PipelineState.VERIFYING: self._verify,
        }

    @classmethod
    def from_config(cls, config: Config) -> "DiagramPipeline":
        from .gemini import GeminiClient, GeminiDiagramGenerator, GeminiExtractor, GeminiVerifier
        from ..supabase_client import SupabaseBlobStore, SupabaseRecordStore, create_supabase_client

        gemini = GeminiClient(config)
        supabase = create_supabase_client(config)
        return cls(
            config,
            extraction=ExtractionStage(GeminiExtractor(gemini), config),
            generation=GenerationStage(GeminiDiagramGenerator(gemini), config),
            verification=VerificationStage(GeminiVerifier(gemini), config),
            records=SupabaseRecordStore(supabase),
            blobs=SupabaseBlobStore(supabase, config),
        )

    async def run(self, document: bytes, options: Optional[PipelineOptions] = None) -> PipelineResult:
        options = options or PipelineOptions()
        threshold = options.accuracy_threshold
        if threshold is None:
            threshold = self.config.accuracy_threshold
        check_threshold(threshold)

        ctx = RunContext(
            started=time.monotonic(),
            document=document,
            threshold=threshold,
            filename=options.filename,
            extraction_retries=options.max_retries,
            run_id=options.run_id,
        )
        state = PipelineState.CREATED

        while state not in TERMINAL_STATES:
            logging.info(f"Pipeline run {ctx.run_id or '-'}: entering {state.value}")
            try:
                state, ctx = await self._transitions[state](ctx)
            except Exception as e:
                logging.exception(f"PIPELINE_ERROR in state {state.value}")
                state, ctx = self._fail(ctx, ErrorCode.UNKNOWN_ERROR, STAGE_OF_STATE[state], str(e) or repr(e))

        if state == PipelineState.COMPLETED:
            try:
                return await self._complete(ctx)
            except Exception as e:
                logging.exception("PIPELINE_ERROR while persisting the verification outcome")
                _, ctx = self._fail(ctx, ErrorCode.UNKNOWN_ERROR, Stage.VERIFICATION, str(e) or repr(e))

        return await self._failed(ctx)

    # ─────────────────────────────────────────────────────────────
    # Transitions
    # ─────────────────────────────────────────────────────────────

    async def _validate(self, ctx: RunContext) -> Transition:
        try:
            validate_pdf(ctx.document)
        except DocumentError as e:
            return self._fail(ctx, ErrorCode.PDF_ERROR, Stage.PARSING, str(e))
        return PipelineState.PARSING, ctx

    async def _parse(self, ctx: RunContext) -> Transition:
        try:
            parsed = await asyncio.to_thread(self.parser.parse, ctx.document)
        except DocumentError as e:
            return self._fail(ctx, ErrorCode.PDF_ERROR, Stage.PARSING, str(e))

        if ctx.run_id is None:
            run = await self.records.create_run(ctx.filename, RunStatus.PROCESSING)
            await self.blobs.put_object(
                ctx.document, input_key(run.id, ctx.filename), self.config.pdf_bucket, "application/pdf"
            )
            run_id = run.id
            logging.info(f"Pipeline run {run_id} created for {ctx.filename}")
        else:
            # Uploaded earlier; the input is already stored
            run_id = ctx.run_id
            await self.records.update_run_status(run_id, RunStatus.PROCESSING, retries=0)
            logging.info(f"Pipeline run {run_id} picked up for {ctx.filename}")

        logging.info(f"Pipeline run {run_id}: {parsed.page_count} pages, scanned={parsed.is_scanned}")
        return PipelineState.EXTRACTING, replace(ctx, run_id=run_id, parsed=parsed)

    async def _extract(self, ctx: RunContext) -> Transition:
        request = ExtractionRequest(
            text=ctx.parsed.text,
            is_scanned=ctx.parsed.is_scanned,
            document=ctx.document if ctx.parsed.text is None else None,
        )
        retries = ctx.extraction_retries
        if retries is None:
            retries = self.config.extraction_max_retries
        outcome = await self.extraction.run(request, StageOptions(max_retries=retries))
        if isinstance(outcome, Err):
            return self._fail(ctx, ErrorCode.EXTRACTION_ERROR, Stage.EXTRACTION, outcome.error.message)

        analysis = outcome.value
        try:
            await self.records.insert_flows(ctx.run_id, list(analysis.flows))
        except Exception as e:
            logging.error(f"Failed to store extracted flows for run {ctx.run_id}: {e}")
            return self._fail(ctx, ErrorCode.EXTRACTION_ERROR, Stage.EXTRACTION,
                              f"Failed to store extracted flows: {e}")
        return PipelineState.GENERATING, replace(ctx, analysis=analysis)

    async def _generate(self, ctx: RunContext) -> Transition:
        produced = await self._produce_diagram(ctx)
        if isinstance(produced, PipelineError):
            return PipelineState.FAILED, replace(ctx, error=produced)
        return PipelineState.VERIFYING, replace(ctx, diagram=produced)

    async def _verify(self, ctx: RunContext) -> Transition:
        acc = ctx

        async def verification_cycle(attempt: Attempt) -> VerificationReport:
            nonlocal acc
            if isinstance(attempt.error, DiagramRejected):
                logging.warning(f"Pipeline run {acc.run_id}: regenerating diagram "
                                f"(verification attempt {attempt.number})")
                produced = await self._produce_diagram(acc)
                if isinstance(produced, PipelineError):
                    raise RegenerationFailed(produced)
                acc = replace(acc, diagram=produced)

            outcome = await self.verification.run(
                VerificationRequest(diagram=acc.diagram, flows=tuple(acc.analysis.flows),
                                    threshold=acc.threshold),
                StageOptions(max_retries=0),
            )
            if isinstance(outcome, Err):
                if outcome.error.attempts == 0:
                    raise VerificationRefused(outcome.error)
                raise VerificationUnavailable(outcome.error)
            report = outcome.value.report
            acc = replace(acc, report=report)
            if not outcome.value.verified:
                raise DiagramRejected(report)
            return report

        def count_retry(attempt: Attempt, error: BaseException) -> None:
            nonlocal acc
            acc = replace(acc, retries=acc.retries + 1)

        outcome = await retry_with_backoff(
            verification_cycle,
            max_attempts=MAX_VERIFICATION_RETRIES,
            label="Verification cycle",
            backoff=no_backoff,
            on_retry=count_retry,
        )
        if not isinstance(outcome, Err):
            return PipelineState.COMPLETED, acc

        cause = outcome.error.cause
        if isinstance(cause, DiagramRejected):
            # Every verification ran; the run still completes, unverified
            logging.warning(f"Pipeline run {acc.run_id}: diagram never passed verification "
                            f"after {outcome.error.attempts} attempts")
            return PipelineState.COMPLETED, acc
        if isinstance(cause, RegenerationFailed):
            return PipelineState.FAILED, replace(acc, error=cause.error)
        if isinstance(cause, VerificationUnavailable):
            return self._fail(acc, ErrorCode.VERIFICATION_ERROR, Stage.VERIFICATION, cause.failure.message)
        if isinstance(cause, VerificationRefused):
            return self._fail(acc, ErrorCode.UNKNOWN_ERROR, Stage.VERIFICATION, cause.failure.message)
        return self._fail(acc, ErrorCode.UNKNOWN_ERROR, Stage.VERIFICATION, outcome.error.message)

    # ─────────────────────────────────────────────────────────────
    # Helpers
    # ─────────────────────────────────────────────────────────────

    async def _produce_diagram(self, ctx: RunContext):
        """Generate and store a diagram; returns its bytes or a PipelineError."""
        outcome = await self.generation.run(
            GenerationRequest(flows=tuple(ctx.analysis.flows), metadata=ctx.analysis.metadata),
            StageOptions(max_retries=self.config.generation_max_retries),
        )
        if isinstance(outcome, Err):
            return PipelineError(ErrorCode.GENERATION_ERROR, outcome.error.message, Stage.GENERATION)

        diagram = outcome.value.diagram
        try:
            await self.blobs.put_object(
                diagram, diagram_key(ctx.run_id), self.config.diagram_bucket, outcome.value.mime_type
            )
        except Exception as e:
            logging.error(f"Failed to upload diagram for run {ctx.run_id}: {e}")
            return PipelineError(ErrorCode.GENERATION_ERROR, f"Failed to upload diagram: {e}", Stage.GENERATION)
        return diagram

    def _fail(self, ctx: RunContext, code: ErrorCode, stage: Stage, message: str) -> Transition:
        logging.error(f"Pipeline run {ctx.run_id or '-'} failed at {stage.value}: [{code.value}] {message}")
        return PipelineState.FAILED, replace(ctx, error=PipelineError(code, message, stage))

    def _metadata(self, ctx: RunContext) -> ResultMetadata:
        return ResultMetadata(
            processing_time_ms=ctx.elapsed_ms,
            retries=ctx.retries,
            flows_extracted=ctx.flows_extracted,
        )

    async def _complete(self, ctx: RunContext) -> PipelineResult:
        report = ctx.report
        passed = bool(report and report.passed)
        if report is not None:
            await self.records.insert_verification(ctx.run_id, report)
        await self.records.update_run_status(
            ctx.run_id, RunStatus.COMPLETED if passed else RunStatus.FAILED, retries=ctx.retries
        )

        result = PipelineResult(
            success=passed,
            diagram=ctx.diagram,
            reasoning=report.reasoning if report else "Verification completed",
            accuracy=report.overall_accuracy if report else 0.0,
            metadata=self._metadata(ctx),
            run_id=ctx.run_id,
            verification_report=report,
            statement_metadata=ctx.analysis.metadata,
            flows=() if passed else tuple(ctx.analysis.flows),
        )
        logging.info(f"Pipeline run {ctx.run_id} finished: success={passed}, "
                     f"retries={ctx.retries}, {result.metadata.processing_time_ms}ms")
        return result

    async def _failed(self, ctx: RunContext) -> PipelineResult:
        if ctx.run_id:
            try:
                await self.records.update_run_status(ctx.run_id, RunStatus.FAILED, retries=ctx.retries)
            except Exception as e:
                # Must never mask the original error
                logging.error(f"Failed to update status for run {ctx.run_id}: {e}")

        error = ctx.error or PipelineError(ErrorCode.UNKNOWN_ERROR, "An unknown error occurred", Stage.PARSING)
        # Only a diagram that reached verification is kept for audit
        reached_verification = error.stage == Stage.VERIFICATION or ctx.report is not None
        audit_diagram = ctx.diagram if reached_verification else b""
        return PipelineResult(
            success=False,
            diagram=audit_diagram,
            reasoning=error.message,
            accuracy=0.0,
            metadata=self._metadata(ctx),
            run_id=ctx.run_id,
            verification_report=ctx.report,
            statement_metadata=ctx.analysis.metadata if ctx.analysis else None,
            flows=tuple(ctx.analysis.flows) if ctx.analysis else (),
            error=error,
        )
