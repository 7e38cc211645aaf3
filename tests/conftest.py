"""
Pytest configuration and fixtures

Scripted capability fakes and in-memory stores stand in for Gemini and
Supabase; every backoff sleep is recorded instead of awaited.
"""
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest

from backend.flowgraph.config import Config
from backend.flowgraph.document import BaseParser, ParsedDocument
from backend.flowgraph.errors import StorageError
from backend.flowgraph.interfaces import (
    BlobStore,
    ExtractionCapability,
    GenerationCapability,
    RecordStore,
    VerificationCapability,
)
from backend.flowgraph.pipeline import DiagramPipeline
from backend.flowgraph.schema import PipelineRun, RunStatus
from backend.flowgraph.stages import ExtractionStage, GenerationStage, VerificationStage

PDF_BYTES = b"%PDF-1.4\n" + b"1 0 obj << /Type /Catalog >> endobj\n" * 8
DIAGRAM_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 2048

STATEMENT_TEXT = (
    "Acme Corp Income Statement Q1 2024\n"
    "Total Revenue 1,000,000\nOperating Expenses 400,000\nNet Income 600,000\n"
) * 3


def analysis_payload(confidence=0.95, flows=None):
    return {
        "flows": flows if flows is not None else [
            {"source": "Revenue", "target": "Operating Expenses", "amount": 400000, "category": "expense",
             "metadata": {"lineItem": "Opex", "statementSection": "Income Statement"}},
            {"source": "Revenue", "target": "Net Income", "amount": 600000, "category": "revenue"},
        ],
        "metadata": {
            "company": "Acme Corp",
            "period": {"start": "2024-01-01", "end": "2024-03-31", "quarter": 1, "year": 2024},
            "currency": "usd",
            "statementType": ["Income Statement"],
        },
        "confidence": confidence,
    }


def passing_verification(accuracy=0.999):
    return {
        "overallAccuracy": accuracy,
        "discrepancies": [],
        "confidenceScore": 0.97,
        "reasoning": "All flow values match the source data",
    }


def failing_verification():
    return {
        "overallAccuracy": 0.9,
        "discrepancies": [
            {"flow": "Revenue -> Operating Expenses", "expected": 400000, "actual": 350000,
             "percentageError": 12.5},
        ],
        "reasoning": "Operating Expenses label reads 350,000",
    }


class Scripted:
    """Replays scripted responses in order; the last one repeats. Exceptions are raised."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    async def _next(self, request, prompt, attempt, api_key):
        self.calls.append(SimpleNamespace(request=request, prompt=prompt, attempt=attempt, api_key=api_key))
        item = self.responses[min(len(self.calls), len(self.responses)) - 1]
        if isinstance(item, BaseException):
            raise item
        return item


class ScriptedExtractor(Scripted, ExtractionCapability):
    async def extract(self, request, prompt, attempt, api_key=None):
        return await self._next(request, prompt, attempt, api_key)


class ScriptedGenerator(Scripted, GenerationCapability):
    async def generate(self, request, prompt, attempt, api_key=None):
        return await self._next(request, prompt, attempt, api_key)


class ScriptedVerifier(Scripted, VerificationCapability):
    async def verify(self, request, prompt, attempt, api_key=None):
        return await self._next(request, prompt, attempt, api_key)


class StubParser(BaseParser):
    def __init__(self, text=STATEMENT_TEXT, is_scanned=False, error=None):
        self.text = text
        self.is_scanned = is_scanned
        self.error = error

    def parse(self, data):
        if self.error is not None:
            raise self.error
        return ParsedDocument(
            text=self.text,
            is_scanned=self.is_scanned,
            page_count=1,
            document_hash=self.get_document_hash(data),
        )


class InMemoryRecordStore(RecordStore):
    def __init__(self, fail_on=()):
        self.fail_on = set(fail_on)
        self.runs = {}
        self.flows = {}
        self.verifications = {}
        self.status_history = []

    def _check(self, operation):
        if operation in self.fail_on:
            raise StorageError(f"Failed to {operation}: connection reset")

    async def create_run(self, filename, status=RunStatus.PROCESSING):
        self._check("create_run")
        run = PipelineRun(id=str(uuid.uuid4()), status=status, retries=0,
                          started_at=datetime.now(timezone.utc), filename=filename)
        self.runs[run.id] = run
        return run

    async def update_run_status(self, run_id, status, retries=None):
        self._check("update_run_status")
        run = self.runs[run_id]
        self.runs[run_id] = PipelineRun(
            id=run.id, status=status, retries=run.retries if retries is None else retries,
            started_at=run.started_at, filename=run.filename, updated_at=datetime.now(timezone.utc),
        )
        self.status_history.append((run_id, status))

    async def insert_flows(self, run_id, flows):
        self._check("insert_flows")
        self.flows.setdefault(run_id, []).extend(flows)

    async def insert_verification(self, run_id, report):
        self._check("insert_verification")
        self.verifications.setdefault(run_id, []).append(report)

    async def get_run(self, run_id):
        return self.runs.get(run_id)

    async def get_flows(self, run_id):
        return list(self.flows.get(run_id, []))

    async def get_verification(self, run_id):
        reports = self.verifications.get(run_id)
        return reports[-1] if reports else None

    async def delete_run(self, run_id):
        self.runs.pop(run_id, None)
        self.flows.pop(run_id, None)
        self.verifications.pop(run_id, None)


class InMemoryBlobStore(BlobStore):
    def __init__(self, fail_buckets=()):
        self.fail_buckets = set(fail_buckets)
        self.objects = {}
        self.puts = []

    async def put_object(self, data, key, bucket, content_type="application/octet-stream"):
        if bucket in self.fail_buckets:
            raise StorageError(f"Failed to upload {key}: bucket unavailable")
        self.objects[(bucket, key)] = (data, content_type)
        self.puts.append((bucket, key))
        return key

    async def get_object(self, key, bucket):
        if (bucket, key) not in self.objects:
            raise StorageError(f"Failed to download {key}: Object not found")
        return self.objects[(bucket, key)][0]

    async def get_signed_url(self, path, bucket):
        if (bucket, path) not in self.objects:
            raise StorageError(f"Failed to create signed URL for {path}: Object not found")
        return f"https://storage.test/{bucket}/{path}?token=signed"

    async def delete_prefix(self, bucket, prefix):
        for key in [k for k in self.objects if k[0] == bucket and k[1].startswith(prefix + "/")]:
            del self.objects[key]


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def config():
    return Config(gemini_api_key="test-key")


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def fakes():
    """Fake classes and payload builders for tests that assemble their own collaborators."""
    return SimpleNamespace(
        Extractor=ScriptedExtractor,
        Generator=ScriptedGenerator,
        Verifier=ScriptedVerifier,
        Parser=StubParser,
        Records=InMemoryRecordStore,
        Blobs=InMemoryBlobStore,
        analysis=analysis_payload,
        passing=passing_verification,
        failing=failing_verification,
        pdf=PDF_BYTES,
        diagram=DIAGRAM_BYTES,
        text=STATEMENT_TEXT,
    )


@pytest.fixture
def build_pipeline(config, sleep):
    """
    Pipeline over scripted services. Defaults describe a clean run:
    good extraction, a plausible diagram and a passing verification.
    """
    def _build(extraction=None, generation=None, verification=None,
               records=None, blobs=None, parser=None, config_override=None):
        cfg = config_override or config
        return DiagramPipeline(
            cfg,
            extraction=ExtractionStage(ScriptedExtractor(*(extraction or [analysis_payload()])), cfg, sleep),
            generation=GenerationStage(ScriptedGenerator(*(generation or [DIAGRAM_BYTES])), cfg, sleep),
            verification=VerificationStage(
                ScriptedVerifier(*(verification or [passing_verification()])), cfg, sleep
            ),
            records=records or InMemoryRecordStore(),
            blobs=blobs or InMemoryBlobStore(),
            parser=parser or StubParser(),
        )

    return _build
