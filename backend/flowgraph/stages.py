"""
Stage Adapters - Extraction, Generation and Verification.

Each adapter wraps one external capability:
1. Input validation (bad input fails without calling the service)
2. Prompt framing per attempt (base framing first, corrective framing after)
3. Output validation against the data contracts
4. Local bounded retry with exponential backoff

Adapters hold no shared state; every call returns Ok(value) or Err(StageFailure).
"""
import asyncio
import logging
import math
from functools import partial
from typing import Any, Dict, List, Optional

from . import prompts
from .config import Config, StageOptions
from .errors import ContentError, Err, Result, StageFailure
from .interfaces import (
    ExtractionCapability,
    ExtractionRequest,
    GenerationCapability,
    GenerationRequest,
    VerificationCapability,
    VerificationRequest,
)
from .retry import Attempt, exponential_backoff, retry_with_backoff
from .schema import (
    MIN_EXTRACTION_CONFIDENCE,
    AnalysisOutput,
    Discrepancy,
    Flow,
    GenerationOutput,
    VerificationOutcome,
    VerificationReport,
    flow_label,
    is_passing,
    percentage_error,
)

MIN_DIAGRAM_BYTES = 1024


class StageAdapter:
    label = "Stage"

    def __init__(self, config: Config, sleep=asyncio.sleep):
        self.config = config
        self.sleep = sleep
        self.backoff = partial(
            exponential_backoff,
            base_ms=config.backoff_base_ms,
            cap_ms=config.backoff_cap_ms,
        )

    def _options(self, options: Optional[StageOptions], default_retries: int) -> StageOptions:
        return options if options is not None else StageOptions(max_retries=default_retries)

    def _reject(self, message: str) -> Err:
        logging.error(f"{self.label} rejected its input: {message}")
        return Err(StageFailure(label=self.label, message=message, attempts=0))

    async def _retry(self, operation, options: StageOptions) -> Result:
        return await retry_with_backoff(
            operation,
            max_attempts=options.max_retries + 1,
            label=self.label,
            backoff=self.backoff,
            sleep=self.sleep,
        )


class ExtractionStage(StageAdapter):
    label = "Extraction"

    def __init__(self, capability: ExtractionCapability, config: Config, sleep=asyncio.sleep):
        super().__init__(config, sleep)
        self.capability = capability

    async def run(self, request: ExtractionRequest, options: Optional[StageOptions] = None) -> Result:
        options = self._options(options, self.config.extraction_max_retries)
        if request.text is None and not request.is_scanned:
            return self._reject("Document text is required unless the document is scanned")

        async def attempt_extraction(attempt: Attempt) -> AnalysisOutput:
            prompt = prompts.extraction_prompt(request.text, request.is_scanned, attempt)
            raw = await self.capability.extract(request, prompt, attempt, api_key=options.api_key)
            output = AnalysisOutput.model_validate(raw)
            if output.confidence < MIN_EXTRACTION_CONFIDENCE:
                raise ContentError(
                    f"Low confidence extraction ({output.confidence:.2f}). Please review the document."
                )
            logging.info(f"Extraction attempt {attempt.number}: {len(output.flows)} flows, "
                         f"confidence {output.confidence:.2f}")
            return output

        return await self._retry(attempt_extraction, options)


class GenerationStage(StageAdapter):
    label = "Diagram generation"

    def __init__(self, capability: GenerationCapability, config: Config, sleep=asyncio.sleep):
        super().__init__(config, sleep)
        self.capability = capability

    async def run(self, request: GenerationRequest, options: Optional[StageOptions] = None) -> Result:
        options = self._options(options, self.config.generation_max_retries)
        if not request.flows:
            return self._reject("At least one flow is required for diagram generation")

        async def attempt_generation(attempt: Attempt) -> GenerationOutput:
            prompt = prompts.diagram_prompt(request.flows, request.metadata, attempt)
            image = await self.capability.generate(request, prompt, attempt, api_key=options.api_key)
            if not image:
                raise ValueError("No image data found in response")
            if len(image) < MIN_DIAGRAM_BYTES:
                raise ValueError(f"Generated image is implausibly small ({len(image)} bytes)")
            logging.info(f"Generation attempt {attempt.number}: {len(image)} byte diagram")
            return GenerationOutput(diagram=image)

        return await self._retry(attempt_generation, options)


class VerificationStage(StageAdapter):
    label = "Verification"

    def __init__(self, capability: VerificationCapability, config: Config, sleep=asyncio.sleep):
        super().__init__(config, sleep)
        self.capability = capability

    async def run(self, request: VerificationRequest, options: Optional[StageOptions] = None) -> Result:
        options = self._options(options, self.config.verification_max_retries)
        if not request.diagram:
            return self._reject("Diagram image is required for verification")
        if not request.flows:
            return self._reject("Original flows are required for verification")
        if not 0 <= request.threshold <= 1:
            return self._reject(f"Accuracy threshold must be within [0, 1], got {request.threshold}")

        async def attempt_verification(attempt: Attempt) -> VerificationOutcome:
            prompt = prompts.verification_prompt(request.flows, request.threshold, attempt)
            raw = await self.capability.verify(request, prompt, attempt, api_key=options.api_key)
            report = build_report(raw, list(request.flows), request.threshold)
            logging.info(
                f"Verification attempt {attempt.number}: "
                f"{'passed' if report.passed else 'failed'}, accuracy {report.overall_accuracy:.4f}, "
                f"{len(report.discrepancies)} discrepancies"
            )
            return VerificationOutcome(
                verified=report.passed,
                accuracy=report.overall_accuracy,
                discrepancies=report.discrepancies,
                report=report,
            )

        return await self._retry(attempt_verification, options)


def _finite(item: Dict[str, Any], key: str) -> float:
    value = float(item[key])
    if not math.isfinite(value):
        raise ValueError(f"Flow {item.get('flow')!r} has a non-finite {key}: {item[key]!r}")
    return value


def _collect_discrepancies(raw: Dict[str, Any], tolerance_pct: float) -> List[Discrepancy]:
    """Recompute errors locally and keep only flows outside the tolerance."""
    found: Dict[str, Discrepancy] = {}

    for item in raw.get("discrepancies") or []:
        expected = _finite(item, "expected")
        actual = _finite(item, "actual")
        error = percentage_error(expected, actual)
        if error > tolerance_pct:
            found[item["flow"]] = Discrepancy(
                flow=item["flow"], expected=expected, actual=actual, percentage_error=error
            )

    for item in raw.get("valueComparisons") or []:
        if item["flow"] in found:
            continue
        expected = _finite(item, "sourceValue")
        actual = _finite(item, "diagramValue")
        error = percentage_error(expected, actual)
        if error > tolerance_pct:
            found[item["flow"]] = Discrepancy(
                flow=item["flow"], expected=expected, actual=actual, percentage_error=error
            )

    return list(found.values())


def build_report(raw: Dict[str, Any], flows: List[Flow], threshold: float) -> VerificationReport:
    """Turn the service's reading of the diagram into a validated report."""
    if not isinstance(raw, dict):
        raise ValueError(f"Verification response must be a JSON object, got {type(raw).__name__}")

    tolerance_pct = threshold * 100
    discrepancies = _collect_discrepancies(raw, tolerance_pct)
    overall_accuracy = float(raw.get("overallAccuracy") or 0)
    if not math.isfinite(overall_accuracy):
        raise ValueError(f"overallAccuracy must be a finite number, got {raw['overallAccuracy']!r}")
    flows_total = len(flows)
    flows_verified = max(0, flows_total - len(discrepancies))

    confidence = raw.get("confidenceScore")
    if confidence is None:
        confidence = overall_accuracy * (1 - len(discrepancies) / max(flows_total, 1))
        confidence = max(0.0, min(1.0, confidence))

    known_flows = {flow_label(f.source, f.target) for f in flows}
    unknown = [d.flow for d in discrepancies if d.flow not in known_flows]
    if unknown:
        logging.warning(f"Verification reported flows not in the source data: {unknown}")

    payload = {
        "overallAccuracy": overall_accuracy,
        "flowsVerified": flows_verified,
        "flowsTotal": flows_total,
        "discrepancies": discrepancies,
        "passed": is_passing(discrepancies, overall_accuracy, threshold),
        "confidenceScore": confidence,
        "reasoning": raw.get("reasoning") or "Verification completed",
        "valueComparisons": raw.get("valueComparisons"),
    }
    if raw.get("timestamp"):
        payload["timestamp"] = raw["timestamp"]
    return VerificationReport.model_validate(payload)


__all__ = [
    "ExtractionStage",
    "GenerationStage",
    "VerificationStage",
    "build_report",
    "MIN_DIAGRAM_BYTES",
]
