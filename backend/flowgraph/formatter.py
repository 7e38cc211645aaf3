"""
Response Formatter - Maps pipeline results to the external response shape.

camelCase keys throughout; the diagram travels as base64 PNG.
"""
import base64
from typing import Any, Dict, List, Optional

from .errors import ErrorCode, PipelineError
from .schema import Flow, PipelineResult, PipelineRun, StatementMetadata, VerificationReport


def format_processing_time(ms: int) -> str:
    """Human readable duration: 850ms, 12.3s, 2m 5s."""
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    minutes = ms // 60000
    seconds = (ms % 60000) // 1000
    return f"{minutes}m {seconds}s"


def _flow_dict(flow: Flow) -> Dict[str, Any]:
    return flow.to_json_dict()


def _error_dict(error: Dict[str, Any]) -> Dict[str, Any]:
    code = error.get("code", ErrorCode.UNKNOWN_ERROR.value)
    if isinstance(code, ErrorCode):
        code = code.value
    stage = error.get("stage")
    if stage is not None and not isinstance(stage, str):
        stage = stage.value
    return {
        "code": code,
        "message": error.get("message", ""),
        "stage": stage,
        "recoverable": code != ErrorCode.UNKNOWN_ERROR.value,
    }


def _metadata_block(statement_metadata: Optional[StatementMetadata], processing: Dict[str, Any]) -> Dict[str, Any]:
    block: Dict[str, Any] = {}
    if statement_metadata is not None:
        period = statement_metadata.period
        block = {
            "company": statement_metadata.company,
            "period": {
                "start": period.start.isoformat(),
                "end": period.end.isoformat(),
                "quarter": period.quarter,
                "year": period.year,
            },
            "currency": statement_metadata.currency,
            "statementType": list(statement_metadata.statement_type),
        }
    block["processing"] = processing
    return block


def format_response(result: PipelineResult, run_id: Optional[str] = None,
                    statement_metadata: Optional[StatementMetadata] = None,
                    verification_report: Optional[VerificationReport] = None,
                    include_diagram: bool = True) -> Dict[str, Any]:
    run_id = run_id or result.run_id
    statement_metadata = statement_metadata or result.statement_metadata
    report = verification_report or result.verification_report
    flows_extracted = result.metadata.flows_extracted

    verification: Dict[str, Any] = {
        "verified": result.success,
        "accuracy": result.accuracy,
        "confidenceScore": report.confidence_score if report else (0.95 if result.success else 0.0),
        "reasoning": result.reasoning,
        "flowsVerified": report.flows_verified if report else 0,
        # Best known extracted count, whichever way the run ended
        "flowsTotal": flows_extracted,
        "discrepancies": [d.to_json_dict() for d in report.discrepancies] if report else [],
    }
    if report and report.value_comparisons is not None:
        verification["valueComparisons"] = [c.to_json_dict() for c in report.value_comparisons]

    processing = {
        "time": result.metadata.processing_time_ms,
        "timeFormatted": format_processing_time(result.metadata.processing_time_ms),
        "retries": result.metadata.retries,
        "flowsExtracted": flows_extracted,
    }

    response: Dict[str, Any] = {"success": result.success}
    if run_id:
        response["runId"] = run_id
    if include_diagram and result.diagram:
        response["diagram"] = {
            "image": base64.b64encode(result.diagram).decode("ascii"),
            "format": "image/png",
        }
    response["verification"] = verification
    response["metadata"] = _metadata_block(statement_metadata, processing)
    if result.error is not None:
        response["error"] = result.error.to_dict()

    if not result.success and flows_extracted > 0:
        partial: Dict[str, Any] = {"flowsCount": flows_extracted}
        if result.flows:
            partial["flows"] = [_flow_dict(f) for f in result.flows]
        response["partialResults"] = partial

    return response


def format_success_response(result: PipelineResult, run_id: str,
                            statement_metadata: Optional[StatementMetadata] = None,
                            verification_report: Optional[VerificationReport] = None) -> Dict[str, Any]:
    return format_response(result, run_id, statement_metadata, verification_report, include_diagram=True)


def format_error_response(error, partial_results: Optional[Dict[str, Any]] = None,
                          run_id: Optional[str] = None) -> Dict[str, Any]:
    """
    Error-only response for when no PipelineResult exists (e.g. a failed run lookup).

    `error` is a PipelineError or a dict with code / message / stage.
    `partial_results` may carry `flows` (Flow objects) and / or `flowsCount`.
    """
    if isinstance(error, PipelineError):
        error = error.to_dict()
    error_block = _error_dict(error)

    flows: Optional[List[Flow]] = None
    count = 0
    if partial_results:
        flows = partial_results.get("flows")
        count = partial_results.get("flowsCount")
        if count is None:
            count = len(flows) if flows else 0

    response: Dict[str, Any] = {"success": False}
    if run_id:
        response["runId"] = run_id
    response["verification"] = {
        "verified": False,
        "accuracy": 0,
        "confidenceScore": 0,
        "reasoning": error_block["message"],
        "flowsVerified": 0,
        "flowsTotal": count,
        "discrepancies": [],
    }
    response["metadata"] = {
        "processing": {
            "time": 0,
            "timeFormatted": format_processing_time(0),
            "retries": 0,
            "flowsExtracted": count,
        }
    }
    response["error"] = error_block
    if partial_results:
        partial: Dict[str, Any] = {"flowsCount": count}
        if flows:
            partial["flows"] = [_flow_dict(f) for f in flows]
        response["partialResults"] = partial
    return response


def format_stored_run(run: PipelineRun, flows: List[Flow], report: Optional[VerificationReport],
                      urls: Dict[str, Optional[str]]) -> Dict[str, Any]:
    """View of a persisted run: record, flows, latest verification and signed URLs."""
    verification = None
    if report is not None:
        verification = {
            "verified": report.passed,
            "accuracy": report.overall_accuracy,
            "confidenceScore": report.confidence_score,
            "reasoning": report.reasoning,
            "flowsVerified": report.flows_verified,
            "flowsTotal": report.flows_total,
            "discrepancies": [d.to_json_dict() for d in report.discrepancies],
            "createdAt": report.timestamp.isoformat(),
        }
        if report.value_comparisons is not None:
            verification["valueComparisons"] = [c.to_json_dict() for c in report.value_comparisons]

    return {
        "success": True,
        "run": {
            "id": run.id,
            "filename": run.filename,
            "status": run.status.value,
            "retries": run.retries,
            "createdAt": run.started_at.isoformat(),
            "updatedAt": run.updated_at.isoformat() if run.updated_at else None,
        },
        "flows": [_flow_dict(f) for f in flows],
        "verification": verification,
        "urls": {
            "diagram": urls.get("diagram"),
            "pdf": urls.get("pdf"),
        },
    }
