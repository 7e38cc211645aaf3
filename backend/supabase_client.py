"""
Supabase Persistence - Record store and blob store for pipeline runs.

Tables: pipeline_runs, flows, verifications (see supabase/migrations).
Buckets: pdf-uploads (input documents), diagrams (generated images).

The supabase client is synchronous; every call is pushed onto a worker thread
so a run awaiting storage never blocks other runs. Failures raise
StorageError, a missing record is None.
"""
import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from supabase import Client, create_client

from backend.flowgraph.config import Config
from backend.flowgraph.errors import StorageError
from backend.flowgraph.interfaces import BlobStore, RecordStore
from backend.flowgraph.schema import (
    Discrepancy,
    Flow,
    PipelineRun,
    RunStatus,
    ValueComparison,
    VerificationReport,
)

RUNS_TABLE = "pipeline_runs"
FLOWS_TABLE = "flows"
VERIFICATIONS_TABLE = "verifications"


def create_supabase_client(config: Config) -> Client:
    if not config.supabase_configured:
        raise StorageError(
            "Supabase is not configured. Please set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY."
        )
    client = create_client(config.supabase_url, config.supabase_key)
    logging.info("Supabase client initialized.")
    return client


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _run_from_row(row: Dict[str, Any]) -> PipelineRun:
    return PipelineRun(
        id=str(row["id"]),
        status=RunStatus(row["status"]),
        retries=int(row.get("retries") or 0),
        started_at=_parse_timestamp(row.get("created_at")) or datetime.now(timezone.utc),
        filename=row.get("filename") or "financial-statement.pdf",
        updated_at=_parse_timestamp(row.get("updated_at")),
    )


def _flow_row(run_id: str, flow: Flow) -> Dict[str, Any]:
    meta = flow.metadata
    return {
        "run_id": run_id,
        "source": flow.source,
        "target": flow.target,
        "amount": flow.amount,
        "category": flow.category.value,
        "line_item": meta.line_item if meta else None,
        "statement_section": meta.statement_section if meta else None,
    }


def _flow_from_row(row: Dict[str, Any]) -> Flow:
    metadata = None
    if row.get("line_item") or row.get("statement_section"):
        metadata = {"lineItem": row.get("line_item"), "statementSection": row.get("statement_section")}
    return Flow.model_validate({
        "source": row["source"],
        "target": row["target"],
        "amount": float(row["amount"]),
        "category": row["category"],
        "metadata": metadata,
    })


def _verification_row(run_id: str, report: VerificationReport) -> Dict[str, Any]:
    data = report.to_json_dict()
    return {
        "run_id": run_id,
        "accuracy": report.overall_accuracy,
        "verified": report.passed,
        "confidence_score": report.confidence_score,
        "reasoning": report.reasoning,
        "flows_verified": report.flows_verified,
        "flows_total": report.flows_total,
        "discrepancies": data.get("discrepancies", []),
        "value_comparisons": data.get("valueComparisons"),
    }


def _discrepancy_from_json(item: Dict[str, Any]) -> Discrepancy:
    # null marks an unmatchable (infinite) error
    if item.get("percentageError") is None:
        item = {**item, "percentageError": math.inf}
    return Discrepancy.model_validate(item)


def _report_from_row(row: Dict[str, Any]) -> VerificationReport:
    comparisons = row.get("value_comparisons")
    return VerificationReport(
        timestamp=_parse_timestamp(row.get("created_at")) or datetime.now(timezone.utc),
        overall_accuracy=float(row["accuracy"]),
        flows_verified=int(row.get("flows_verified") or 0),
        flows_total=int(row.get("flows_total") or 0),
        discrepancies=[_discrepancy_from_json(d) for d in row.get("discrepancies") or []],
        passed=bool(row["verified"]),
        confidence_score=float(row.get("confidence_score") or 0),
        reasoning=row.get("reasoning") or "Verification completed",
        value_comparisons=[ValueComparison.model_validate(c) for c in comparisons] if comparisons else None,
    )


class SupabaseRecordStore(RecordStore):
    """Run, flow and verification records."""

    def __init__(self, client: Client):
        self.client = client

    async def _execute(self, action: str, query):
        try:
            res = await asyncio.to_thread(query.execute)
        except Exception as e:
            logging.error(f"Supabase {action} failed: {e}")
            raise StorageError(f"Failed to {action}: {e}") from e
        return res.data or []

    async def create_run(self, filename: str, status: RunStatus = RunStatus.PROCESSING) -> PipelineRun:
        payload = {"filename": filename, "status": status.value, "retries": 0}
        rows = await self._execute("create run record", self.client.table(RUNS_TABLE).insert(payload))
        if not rows:
            raise StorageError("Failed to create run record: no row returned")
        run = _run_from_row(rows[0])
        logging.info(f"Run record {run.id} created ({status.value}).")
        return run

    async def update_run_status(self, run_id: str, status: RunStatus, retries: Optional[int] = None) -> None:
        data: Dict[str, Any] = {"status": status.value}
        if retries is not None:
            data["retries"] = retries
        await self._execute(
            "update run status",
            self.client.table(RUNS_TABLE).update(data).eq("id", run_id),
        )
        logging.info(f"Run {run_id} marked {status.value}.")

    async def insert_flows(self, run_id: str, flows: List[Flow]) -> None:
        if not flows:
            return
        rows = [_flow_row(run_id, f) for f in flows]
        await self._execute("insert flows", self.client.table(FLOWS_TABLE).insert(rows))
        logging.info(f"Stored {len(rows)} flows for run {run_id}.")

    async def insert_verification(self, run_id: str, report: VerificationReport) -> None:
        await self._execute(
            "insert verification",
            self.client.table(VERIFICATIONS_TABLE).insert(_verification_row(run_id, report)),
        )

    async def get_run(self, run_id: str) -> Optional[PipelineRun]:
        rows = await self._execute(
            "fetch run",
            self.client.table(RUNS_TABLE).select("*").eq("id", run_id).limit(1),
        )
        return _run_from_row(rows[0]) if rows else None

    async def get_flows(self, run_id: str) -> List[Flow]:
        rows = await self._execute(
            "fetch flows",
            self.client.table(FLOWS_TABLE).select("*").eq("run_id", run_id).order("created_at"),
        )
        return [_flow_from_row(r) for r in rows]

    async def get_verification(self, run_id: str) -> Optional[VerificationReport]:
        rows = await self._execute(
            "fetch verification",
            self.client.table(VERIFICATIONS_TABLE).select("*").eq("run_id", run_id)
            .order("created_at", desc=True).limit(1),
        )
        return _report_from_row(rows[0]) if rows else None

    async def delete_run(self, run_id: str) -> None:
        # flows and verifications cascade
        await self._execute("delete run", self.client.table(RUNS_TABLE).delete().eq("id", run_id))
        logging.info(f"Run {run_id} deleted.")


class SupabaseBlobStore(BlobStore):
    """Input documents and diagrams in Supabase Storage."""

    def __init__(self, client: Client, config: Config):
        self.client = client
        self.config = config

    async def put_object(self, data: bytes, key: str, bucket: str,
                         content_type: str = "application/octet-stream") -> str:
        def upload():
            return self.client.storage.from_(bucket).upload(
                path=key,
                file=data,
                file_options={"content-type": content_type, "upsert": "true"},
            )

        try:
            await asyncio.to_thread(upload)
        except Exception as e:
            logging.error(f"Upload of {bucket}/{key} failed: {e}")
            raise StorageError(f"Failed to upload {key}: {e}") from e
        logging.info(f"Uploaded {len(data)} bytes to {bucket}/{key}.")
        return key

    async def get_object(self, key: str, bucket: str) -> bytes:
        try:
            data = await asyncio.to_thread(self.client.storage.from_(bucket).download, key)
        except Exception as e:
            logging.error(f"Download of {bucket}/{key} failed: {e}")
            raise StorageError(f"Failed to download {key}: {e}") from e
        if not data:
            raise StorageError(f"Failed to download {key}: empty object")
        return data

    async def get_signed_url(self, path: str, bucket: str) -> str:
        def sign():
            return self.client.storage.from_(bucket).create_signed_url(path, self.config.signed_url_ttl)

        try:
            res = await asyncio.to_thread(sign)
        except Exception as e:
            raise StorageError(f"Failed to create signed URL for {path}: {e}") from e

        url = (res or {}).get("signedURL") or (res or {}).get("signedUrl")
        if not url:
            raise StorageError(f"Failed to create signed URL for {path}: empty response")
        return url

    async def delete_prefix(self, bucket: str, prefix: str) -> None:
        storage = self.client.storage.from_(bucket)

        def remove_all():
            entries = storage.list(prefix) or []
            paths = [f"{prefix}/{entry['name']}" for entry in entries if entry.get("name")]
            if paths:
                storage.remove(paths)
            return len(paths)

        try:
            removed = await asyncio.to_thread(remove_all)
        except Exception as e:
            logging.error(f"Cleanup of {bucket}/{prefix} failed: {e}")
            raise StorageError(f"Failed to delete {prefix}: {e}") from e
        logging.info(f"Removed {removed} objects from {bucket}/{prefix}.")
