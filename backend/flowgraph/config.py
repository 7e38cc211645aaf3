import os
from dataclasses import dataclass, field
from typing import FrozenSet, Mapping, Optional


def _int_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _float_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}")


def check_threshold(value: float) -> float:
    # Also rejects NaN
    if not 0 <= value <= 1:
        raise ValueError(f"accuracy_threshold must be within [0, 1], got {value}")
    return value


# Pipeline Configuration
@dataclass(frozen=True)
class Config:
    """
    Explicit configuration handed to the pipeline, its stage adapters, the
    Gemini clients and the Supabase stores at construction time.
    Created once per process; never mutated while a run is in flight.
    """
    supabase_url: Optional[str] = None
    supabase_key: Optional[str] = None

    gemini_api_key: Optional[str] = None
    gemini_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    extraction_model: str = "gemini-2.0-flash"
    generation_model: str = "gemini-2.5-flash-image"
    verification_model: str = "gemini-2.0-flash"
    request_timeout: float = 120.0

    extraction_max_retries: int = 2
    generation_max_retries: int = 2
    verification_max_retries: int = 1
    backoff_base_ms: int = 1000
    backoff_cap_ms: int = 10000
    accuracy_threshold: float = 0.001

    pdf_bucket: str = "pdf-uploads"
    diagram_bucket: str = "diagrams"
    signed_url_ttl: int = 3600

    max_upload_mb: int = 10
    allowed_extensions: FrozenSet[str] = field(default_factory=lambda: frozenset({"pdf"}))
    log_file: str = "server.log"

    def __post_init__(self):
        for name in ("extraction_max_retries", "generation_max_retries", "verification_max_retries"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        check_threshold(self.accuracy_threshold)

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            supabase_url=env.get("SUPABASE_URL"),
            supabase_key=env.get("SUPABASE_SERVICE_ROLE_KEY") or env.get("SUPABASE_KEY"),
            gemini_api_key=env.get("GEMINI_API_KEY") or env.get("GOOGLE_GENERATIVE_AI_API_KEY"),
            gemini_base_url=env.get("GEMINI_BASE_URL", defaults.gemini_base_url).rstrip("/"),
            extraction_model=env.get("EXTRACTION_MODEL", defaults.extraction_model),
            generation_model=env.get("GENERATION_MODEL", defaults.generation_model),
            verification_model=env.get("VERIFICATION_MODEL", defaults.verification_model),
            request_timeout=_float_env(env, "GEMINI_TIMEOUT", defaults.request_timeout),
            extraction_max_retries=_int_env(env, "EXTRACTION_MAX_RETRIES", defaults.extraction_max_retries),
            generation_max_retries=_int_env(env, "GENERATION_MAX_RETRIES", defaults.generation_max_retries),
            verification_max_retries=_int_env(env, "VERIFICATION_MAX_RETRIES", defaults.verification_max_retries),
            accuracy_threshold=_float_env(env, "ACCURACY_THRESHOLD", defaults.accuracy_threshold),
            pdf_bucket=env.get("PDF_BUCKET", defaults.pdf_bucket),
            diagram_bucket=env.get("DIAGRAM_BUCKET", defaults.diagram_bucket),
            signed_url_ttl=_int_env(env, "SIGNED_URL_TTL", defaults.signed_url_ttl),
            max_upload_mb=_int_env(env, "MAX_UPLOAD_MB", defaults.max_upload_mb),
            log_file=env.get("LOG_FILE", defaults.log_file),
        )


@dataclass(frozen=True)
class StageOptions:
    """Per-invocation knobs for a Stage Adapter."""
    max_retries: int
    api_key: Optional[str] = None

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
