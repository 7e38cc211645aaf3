"""
Tests for DiagramPipeline
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from backend.flowgraph.config import Config
from backend.flowgraph.errors import CapabilityError, DocumentError, Err, ErrorCode, Stage, StageFailure
from backend.flowgraph.interfaces import diagram_key, input_key
from backend.flowgraph.pipeline import MAX_VERIFICATION_RETRIES, PipelineOptions
from backend.flowgraph.schema import RunStatus


def calls(pipeline):
    return (
        len(pipeline.extraction.capability.calls),
        len(pipeline.generation.capability.calls),
        len(pipeline.verification.capability.calls),
    )


@pytest.mark.asyncio
async def test_clean_run_completes(build_pipeline, fakes):
    """Verified on the first cycle: one call per stage, nothing retried"""
    pipeline = build_pipeline()
    result = await pipeline.run(fakes.pdf, PipelineOptions(filename="acme.pdf"))

    assert result.success is True
    assert result.error is None
    assert result.accuracy == pytest.approx(0.999)
    assert result.diagram == fakes.diagram
    assert result.metadata.retries == 0
    assert result.metadata.flows_extracted == 2
    assert result.metadata.processing_time_ms >= 0
    assert result.statement_metadata.company == "Acme Corp"
    assert result.verification_report.passed is True
    assert calls(pipeline) == (1, 1, 1)


@pytest.mark.asyncio
async def test_clean_run_persists_artifacts(build_pipeline, fakes):
    """Run record, flows, input, diagram and verification are all stored"""
    records = fakes.Records()
    blobs = fakes.Blobs()
    pipeline = build_pipeline(records=records, blobs=blobs)

    result = await pipeline.run(fakes.pdf, PipelineOptions(filename="acme.pdf"))
    run = records.runs[result.run_id]

    assert run.status == RunStatus.COMPLETED
    assert run.retries == 0
    assert len(records.flows[result.run_id]) == 2
    assert len(records.verifications[result.run_id]) == 1
    assert ("pdf-uploads", input_key(result.run_id, "acme.pdf")) in blobs.objects
    diagram, content_type = blobs.objects[("diagrams", diagram_key(result.run_id))]
    assert diagram == fakes.diagram
    assert content_type == "image/png"


@pytest.mark.asyncio
async def test_single_flow_scenario(build_pipeline, fakes):
    """One flow of 1000, no discrepancies, accuracy 0.999"""
    single = fakes.analysis(flows=[
        {"source": "Sales", "target": "Revenue", "amount": 1000, "category": "revenue"},
    ])
    pipeline = build_pipeline(extraction=[single], verification=[fakes.passing(0.999)])

    result = await pipeline.run(fakes.pdf)

    assert result.success is True
    assert result.accuracy == pytest.approx(0.999)
    assert result.metadata.retries == 0
    assert result.metadata.flows_extracted == 1


@pytest.mark.asyncio
async def test_regeneration_until_verified(build_pipeline, fakes):
    """Two rejected diagrams, the third passes"""
    records = fakes.Records()
    pipeline = build_pipeline(
        verification=[fakes.failing(), fakes.failing(), fakes.passing()],
        records=records,
    )

    result = await pipeline.run(fakes.pdf)

    assert result.success is True
    assert result.metadata.retries == 2
    assert calls(pipeline) == (1, 3, 3)
    assert records.runs[result.run_id].status == RunStatus.COMPLETED
    assert records.runs[result.run_id].retries == 2
    # Regenerations reuse the same extracted flows
    requests = [c.request for c in pipeline.generation.capability.calls]
    assert all(r.flows == requests[0].flows for r in requests)


@pytest.mark.asyncio
async def test_regeneration_exhausted(build_pipeline, fakes):
    """Every cycle rejected: the run ends unverified, the last artifacts kept"""
    records = fakes.Records()
    pipeline = build_pipeline(verification=[fakes.failing()], records=records)

    result = await pipeline.run(fakes.pdf)

    assert result.success is False
    assert result.error is None
    assert result.metadata.retries == 2
    assert result.metadata.flows_extracted == 2
    assert result.diagram == fakes.diagram
    assert result.verification_report is not None
    assert result.verification_report.passed is False
    assert len(result.flows) == 2
    assert calls(pipeline) == (1, MAX_VERIFICATION_RETRIES, MAX_VERIFICATION_RETRIES)
    # Persisted status mirrors success
    assert records.runs[result.run_id].status == RunStatus.FAILED
    assert len(records.verifications[result.run_id]) == 1


@pytest.mark.asyncio
async def test_retries_never_exceed_cycle_bound(build_pipeline, fakes):
    pipeline = build_pipeline(verification=[fakes.failing()])
    result = await pipeline.run(fakes.pdf)
    assert result.metadata.retries <= MAX_VERIFICATION_RETRIES
    assert len(pipeline.verification.capability.calls) <= MAX_VERIFICATION_RETRIES


@pytest.mark.asyncio
async def test_invalid_document(build_pipeline, fakes):
    """Not a PDF: fails before any run record exists"""
    records = fakes.Records()
    pipeline = build_pipeline(records=records)

    result = await pipeline.run(b"plain text, not a statement" * 10)

    assert result.success is False
    assert result.error.code == ErrorCode.PDF_ERROR
    assert result.error.stage == Stage.PARSING
    assert result.error.recoverable is True
    assert result.run_id is None
    assert result.diagram == b""
    assert records.runs == {}
    assert calls(pipeline) == (0, 0, 0)


@pytest.mark.asyncio
async def test_unreadable_document(build_pipeline, fakes):
    pipeline = build_pipeline(parser=fakes.Parser(error=DocumentError("Failed to parse PDF: broken xref")))

    result = await pipeline.run(fakes.pdf)

    assert result.error.code == ErrorCode.PDF_ERROR
    assert "broken xref" in result.error.message
    assert result.metadata.flows_extracted == 0


@pytest.mark.asyncio
async def test_extraction_failure(build_pipeline, fakes, sleep):
    """Extraction exhausts its own retries; nothing downstream runs"""
    records = fakes.Records()
    pipeline = build_pipeline(extraction=[CapabilityError("Gemini returned HTTP 503")], records=records)

    result = await pipeline.run(fakes.pdf)

    assert result.success is False
    assert result.error.code == ErrorCode.EXTRACTION_ERROR
    assert result.error.stage == Stage.EXTRACTION
    assert "after 3 attempts" in result.error.message
    assert result.metadata.flows_extracted == 0
    assert result.flows == ()
    assert calls(pipeline) == (3, 0, 0)
    assert sleep.delays == [1.0, 2.0]
    assert records.runs[result.run_id].status == RunStatus.FAILED


@pytest.mark.asyncio
async def test_extraction_retries_option(build_pipeline, fakes):
    pipeline = build_pipeline(extraction=[CapabilityError("timeout")])
    result = await pipeline.run(fakes.pdf, PipelineOptions(max_retries=0))
    assert result.error.code == ErrorCode.EXTRACTION_ERROR
    assert calls(pipeline) == (1, 0, 0)


@pytest.mark.asyncio
async def test_low_confidence_extraction(build_pipeline, fakes):
    pipeline = build_pipeline(extraction=[fakes.analysis(confidence=0.42)])

    result = await pipeline.run(fakes.pdf)

    assert result.error.code == ErrorCode.EXTRACTION_ERROR
    assert "Low confidence" in result.error.message
    assert calls(pipeline) == (1, 0, 0)


@pytest.mark.asyncio
async def test_generation_failure_keeps_partial_results(build_pipeline, fakes):
    pipeline = build_pipeline(generation=[CapabilityError("No image data found in response")])

    result = await pipeline.run(fakes.pdf)

    assert result.success is False
    assert result.error.code == ErrorCode.GENERATION_ERROR
    assert result.error.stage == Stage.GENERATION
    assert result.metadata.flows_extracted == 2
    assert len(result.flows) == 2
    assert result.diagram == b""
    assert result.accuracy == 0.0
    assert calls(pipeline) == (1, 3, 0)


@pytest.mark.asyncio
async def test_small_diagram_is_retried(build_pipeline, fakes):
    pipeline = build_pipeline(generation=[b"\x89PNG tiny", fakes.diagram])
    result = await pipeline.run(fakes.pdf)
    assert result.success is True
    assert calls(pipeline) == (1, 2, 1)


@pytest.mark.asyncio
async def test_verification_unavailable(build_pipeline, fakes):
    """Transport failures re-verify the same diagram; the last one is fatal"""
    pipeline = build_pipeline(verification=[CapabilityError("Gemini request failed: timeout")])

    result = await pipeline.run(fakes.pdf)

    assert result.success is False
    assert result.error.code == ErrorCode.VERIFICATION_ERROR
    assert result.error.stage == Stage.VERIFICATION
    assert result.error.recoverable is True
    assert result.metadata.retries == 2
    assert result.diagram == fakes.diagram
    assert calls(pipeline) == (1, 1, 3)


@pytest.mark.asyncio
async def test_verification_recovers_after_outage(build_pipeline, fakes):
    pipeline = build_pipeline(verification=[CapabilityError("HTTP 500"), fakes.passing()])
    result = await pipeline.run(fakes.pdf)
    assert result.success is True
    assert result.metadata.retries == 1
    assert calls(pipeline) == (1, 1, 2)


@pytest.mark.asyncio
async def test_regeneration_failure(build_pipeline, fakes):
    """A rejected diagram whose regeneration fails ends the run as a generation error"""
    pipeline = build_pipeline(
        generation=[fakes.diagram, CapabilityError("quota exceeded")],
        verification=[fakes.failing()],
    )

    result = await pipeline.run(fakes.pdf)

    assert result.success is False
    assert result.error.code == ErrorCode.GENERATION_ERROR
    assert result.metadata.retries == 1
    assert result.diagram == fakes.diagram
    assert result.verification_report is not None
    assert len(result.flows) == 2
    assert calls(pipeline) == (1, 4, 1)


@pytest.mark.asyncio
async def test_accuracy_threshold_option(build_pipeline, fakes):
    """A 12.5% error is within a 20% tolerance"""
    pipeline = build_pipeline(verification=[fakes.failing()])

    result = await pipeline.run(fakes.pdf, PipelineOptions(accuracy_threshold=0.2))

    assert result.success is True
    assert result.verification_report.discrepancies == []
    assert pipeline.verification.capability.calls[0].request.threshold == 0.2


@pytest.mark.asyncio
async def test_flow_insert_failure(build_pipeline, fakes):
    pipeline = build_pipeline(records=fakes.Records(fail_on={"insert_flows"}))

    result = await pipeline.run(fakes.pdf)

    assert result.error.code == ErrorCode.EXTRACTION_ERROR
    assert result.error.stage == Stage.EXTRACTION
    assert calls(pipeline) == (1, 0, 0)


@pytest.mark.asyncio
async def test_diagram_upload_failure(build_pipeline, fakes):
    pipeline = build_pipeline(blobs=fakes.Blobs(fail_buckets={"diagrams"}))

    result = await pipeline.run(fakes.pdf)

    assert result.error.code == ErrorCode.GENERATION_ERROR
    assert result.metadata.flows_extracted == 2
    assert calls(pipeline) == (1, 1, 0)


@pytest.mark.asyncio
async def test_run_creation_failure_is_unknown(build_pipeline, fakes):
    pipeline = build_pipeline(records=fakes.Records(fail_on={"create_run"}))

    result = await pipeline.run(fakes.pdf)

    assert result.error.code == ErrorCode.UNKNOWN_ERROR
    assert result.error.stage == Stage.PARSING
    assert result.error.recoverable is False


@pytest.mark.asyncio
async def test_status_update_failure_does_not_mask_error(build_pipeline, fakes):
    records = fakes.Records(fail_on={"update_run_status"})
    pipeline = build_pipeline(extraction=[CapabilityError("HTTP 429")], records=records)

    result = await pipeline.run(fakes.pdf)

    assert result.error.code == ErrorCode.EXTRACTION_ERROR
    assert records.runs[result.run_id].status == RunStatus.PROCESSING


@pytest.mark.asyncio
async def test_verification_persist_failure(build_pipeline, fakes):
    pipeline = build_pipeline(records=fakes.Records(fail_on={"insert_verification"}))

    result = await pipeline.run(fakes.pdf)

    assert result.success is False
    assert result.error.code == ErrorCode.UNKNOWN_ERROR
    assert result.error.stage == Stage.VERIFICATION
    assert result.diagram == fakes.diagram


@pytest.mark.asyncio
async def test_scanned_document_sent_as_file(build_pipeline, fakes):
    pipeline = build_pipeline(parser=fakes.Parser(text=None, is_scanned=True))

    result = await pipeline.run(fakes.pdf)

    request = pipeline.extraction.capability.calls[0].request
    assert result.success is True
    assert request.text is None
    assert request.is_scanned is True
    assert request.document == fakes.pdf


@pytest.mark.asyncio
async def test_concurrent_runs_are_independent(build_pipeline, fakes):
    records = fakes.Records()
    ok = build_pipeline(records=records)
    broken = build_pipeline(records=records, extraction=[CapabilityError("HTTP 500")])

    first, second = await asyncio.gather(ok.run(fakes.pdf), broken.run(fakes.pdf))

    assert first.success is True
    assert second.error.code == ErrorCode.EXTRACTION_ERROR
    assert first.run_id != second.run_id


@pytest.mark.asyncio
async def test_default_threshold_from_config(build_pipeline, fakes):
    pipeline = build_pipeline(config_override=Config(gemini_api_key="k", accuracy_threshold=0.2),
                              verification=[fakes.failing()])
    result = await pipeline.run(fakes.pdf)
    assert result.success is True


@pytest.mark.parametrize("threshold", [1.5, -0.01, float("nan")])
def test_threshold_out_of_range_is_refused_up_front(threshold):
    with pytest.raises(ValueError, match="accuracy_threshold"):
        PipelineOptions(accuracy_threshold=threshold)
    with pytest.raises(ValueError, match="accuracy_threshold"):
        Config(accuracy_threshold=threshold)


def test_negative_extraction_retries_refused():
    with pytest.raises(ValueError, match="max_retries"):
        PipelineOptions(max_retries=-1)


@pytest.mark.asyncio
async def test_refused_verification_input_is_not_retried(build_pipeline, fakes):
    """An input the verifier rejects without calling the service ends the cycle at once"""
    pipeline = build_pipeline()
    refusal = Err(StageFailure(label="Verification", message="Diagram image is required for verification",
                               attempts=0))
    pipeline.verification.run = AsyncMock(return_value=refusal)

    result = await pipeline.run(fakes.pdf)

    assert result.success is False
    assert result.error.code == ErrorCode.UNKNOWN_ERROR
    assert result.error.stage == Stage.VERIFICATION
    assert result.metadata.retries == 0
    assert pipeline.verification.run.await_count == 1
    assert len(pipeline.generation.capability.calls) == 1


@pytest.mark.asyncio
async def test_pending_run_is_processed_in_place(build_pipeline, fakes, config):
    """A run created at upload is moved to processing and reused, not duplicated"""
    records, blobs = fakes.Records(), fakes.Blobs()
    pending = await records.create_run("acme.pdf", RunStatus.PENDING)
    await blobs.put_object(fakes.pdf, input_key(pending.id, "acme.pdf"), config.pdf_bucket, "application/pdf")
    pipeline = build_pipeline(records=records, blobs=blobs)

    result = await pipeline.run(fakes.pdf, PipelineOptions(filename="acme.pdf", run_id=pending.id))

    assert result.success is True
    assert result.run_id == pending.id
    assert list(records.runs) == [pending.id]
    assert records.status_history == [(pending.id, RunStatus.PROCESSING), (pending.id, RunStatus.COMPLETED)]
    assert blobs.puts == [(config.pdf_bucket, input_key(pending.id, "acme.pdf")),
                          (config.diagram_bucket, diagram_key(pending.id))]


@pytest.mark.asyncio
async def test_pending_run_with_bad_document_fails(build_pipeline, fakes):
    records = fakes.Records()
    pending = await records.create_run("notes.pdf", RunStatus.PENDING)
    pipeline = build_pipeline(records=records)

    result = await pipeline.run(b"plain text, not a statement" * 10,
                                PipelineOptions(filename="notes.pdf", run_id=pending.id))

    assert result.error.code == ErrorCode.PDF_ERROR
    assert result.run_id == pending.id
    assert records.runs[pending.id].status == RunStatus.FAILED
