"""
Configuration helpers for the asset processing pipeline.

Centralises environment variable loading/validation so the rest of the codebase
can depend on typed config objects instead of sprinkling os.getenv calls.

Connection settings (database, object storage, vision API) are exposed through
cached getters. Processing thresholds are collected into one frozen
``PipelineSettings`` value object that entry points build once and hand to the
orchestrator, stages, engine and watchdog.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()

OUTPUT_FORMAT_CHOICES = {"webp", "jpeg", "png"}
VECTOR_POLICY_CHOICES = {"skip", "complete"}
FIT_CHOICES = {"contain", "cover", "width", "height"}
DEFAULT_VISION_MODEL = "gpt-4o-mini"
DEFAULT_AI_METADATA_FIELDS = ("title", "description", "alt_text", "subject", "setting", "mood")


@dataclass(frozen=True)
class DBConfig:
    """Connection info for Postgres."""

    url: str


@dataclass(frozen=True)
class StorageConfig:
    """S3-compatible object storage credentials."""

    aws_access_key_id: Optional[str]
    aws_secret_access_key: Optional[str]
    default_bucket: Optional[str]
    region: str
    endpoint_url: Optional[str]


@dataclass(frozen=True)
class OpenAIConfig:
    """OpenAI-compatible API credentials and the vision model name."""

    api_key: str
    api_base: str
    vision_model_name: str


@dataclass(frozen=True)
class ThumbnailStyle:
    """One configured preview output size."""

    name: str
    width: int
    height: int
    quality: int = 85
    fit: str = "contain"
    blur: bool = False

    @property
    def area(self) -> int:
        return self.width * self.height


DEFAULT_THUMBNAIL_STYLES: Tuple[ThumbnailStyle, ...] = (
    ThumbnailStyle("preview", 48, 48, quality=50, blur=True),
    ThumbnailStyle("thumb", 320, 320),
    ThumbnailStyle("medium", 1024, 1024),
    ThumbnailStyle("large", 2048, 2048),
)


def _default_retry_attempts() -> Dict[str, int]:
    return {
        "transient": 3,
        "decode": 1,
        "missing_capability": 1,
        "oversized": 1,
        "unsupported": 1,
        "timeout": 1,
        "unknown": 1,
    }


@dataclass(frozen=True)
class PipelineSettings:
    """
    Processing thresholds for one process lifetime.

    Attributes:
        stage_timeout_seconds: Upper bound on a single stage job
        worker_timeout_seconds: Upper bound on a worker's hold on a claimed job
        watchdog_threshold_seconds: Age after which PROCESSING previews are reclaimed
        watchdog_interval_seconds: Sleep between watchdog sweeps
        max_pixel_area: Source area above which only the two smallest styles are produced
        hard_pixel_limit: Source area above which decoding is refused outright
        pdf_max_bytes: Largest PDF the document decoder will open
        output_format: Preferred thumbnail encoding
        fallback_format: Encoding used when the preferred encoder is unavailable
        vector_policy: "skip" marks vector previews SKIPPED, "complete" marks them COMPLETED
        retry_attempts: Attempt ceiling per failure category (local stage retries)
        retry_base_delay: First backoff delay, doubled per attempt
        gate_delay_seconds: Fixed delay before a gated stage checks readiness again
        gate_max_attempts: Attempt ceiling for a gated stage waiting on previews
        ai_metadata_fields: Metadata fields the vision model is asked to fill
        thumbnail_styles: Output sizes, in any order
    """

    stage_timeout_seconds: float = 600.0
    worker_timeout_seconds: float = 300.0
    watchdog_threshold_seconds: float = 900.0
    watchdog_interval_seconds: float = 60.0
    max_pixel_area: int = 40_000_000
    hard_pixel_limit: int = 150_000_000
    pdf_max_bytes: int = 150 * 1024 * 1024
    output_format: str = "webp"
    fallback_format: str = "jpeg"
    vector_policy: str = "skip"
    retry_attempts: Dict[str, int] = field(default_factory=_default_retry_attempts)
    retry_base_delay: float = 2.0
    gate_delay_seconds: int = 60
    gate_max_attempts: int = 30
    ai_enabled: bool = True
    ai_auto_apply_enabled: bool = False
    ai_auto_apply_threshold: float = 0.85
    ai_auto_apply_max_tags: int = 5
    ai_suggestion_threshold: float = 0.90
    ai_metadata_fields: Tuple[str, ...] = DEFAULT_AI_METADATA_FIELDS
    thumbnail_styles: Tuple[ThumbnailStyle, ...] = DEFAULT_THUMBNAIL_STYLES

    def __post_init__(self) -> None:
        if not (
            self.watchdog_threshold_seconds
            > self.stage_timeout_seconds
            > self.worker_timeout_seconds
        ):
            raise ValueError(
                "Timeout hierarchy violated: expected watchdog threshold "
                f"({self.watchdog_threshold_seconds}s) > stage timeout "
                f"({self.stage_timeout_seconds}s) > worker timeout "
                f"({self.worker_timeout_seconds}s)."
            )
        if self.output_format not in OUTPUT_FORMAT_CHOICES:
            raise ValueError(
                f"THUMBNAIL_OUTPUT_FORMAT must be one of {sorted(OUTPUT_FORMAT_CHOICES)}, "
                f"got '{self.output_format}'."
            )
        if self.fallback_format not in OUTPUT_FORMAT_CHOICES:
            raise ValueError(
                f"THUMBNAIL_FALLBACK_FORMAT must be one of {sorted(OUTPUT_FORMAT_CHOICES)}, "
                f"got '{self.fallback_format}'."
            )
        if self.vector_policy not in VECTOR_POLICY_CHOICES:
            raise ValueError(
                f"VECTOR_PREVIEW_POLICY must be one of {sorted(VECTOR_POLICY_CHOICES)}, "
                f"got '{self.vector_policy}'."
            )
        if self.hard_pixel_limit < self.max_pixel_area:
            raise ValueError("THUMBNAIL_HARD_PIXEL_LIMIT must not be below THUMBNAIL_MAX_PIXEL_AREA.")
        if len(self.thumbnail_styles) < 2:
            raise ValueError("At least two thumbnail styles are required.")
        for style in self.thumbnail_styles:
            if style.fit not in FIT_CHOICES:
                raise ValueError(f"Thumbnail style '{style.name}' has unknown fit '{style.fit}'.")

    def max_attempts_for(self, category: str) -> int:
        """Attempt ceiling for a failure category (at least one attempt)."""
        return max(1, self.retry_attempts.get(category, self.retry_attempts.get("unknown", 1)))

    def styles_by_size(self) -> Tuple[ThumbnailStyle, ...]:
        """Styles ordered smallest first."""
        return tuple(sorted(self.thumbnail_styles, key=lambda s: s.area))

    def degraded_styles(self) -> Tuple[ThumbnailStyle, ...]:
        """The two smallest styles, the only ones produced in degraded mode."""
        return self.styles_by_size()[:2]

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        """Create settings from environment variables."""
        retry_attempts = _default_retry_attempts()
        for category in retry_attempts:
            retry_attempts[category] = _get_int_env(
                f"RETRY_ATTEMPTS_{category.upper()}", retry_attempts[category]
            )
        return cls(
            stage_timeout_seconds=_get_float_env("STAGE_TIMEOUT_SECONDS", 600.0),
            worker_timeout_seconds=_get_float_env("WORKER_TIMEOUT_SECONDS", 300.0),
            watchdog_threshold_seconds=_get_float_env("WATCHDOG_THRESHOLD_SECONDS", 900.0),
            watchdog_interval_seconds=_get_float_env("WATCHDOG_INTERVAL_SECONDS", 60.0),
            max_pixel_area=_get_int_env("THUMBNAIL_MAX_PIXEL_AREA", 40_000_000),
            hard_pixel_limit=_get_int_env("THUMBNAIL_HARD_PIXEL_LIMIT", 150_000_000),
            pdf_max_bytes=_get_int_env("PDF_MAX_BYTES", 150 * 1024 * 1024),
            output_format=(_get_env("THUMBNAIL_OUTPUT_FORMAT") or "webp").lower(),
            fallback_format=(_get_env("THUMBNAIL_FALLBACK_FORMAT") or "jpeg").lower(),
            vector_policy=(_get_env("VECTOR_PREVIEW_POLICY") or "skip").lower(),
            retry_attempts=retry_attempts,
            retry_base_delay=_get_float_env("RETRY_BASE_DELAY", 2.0),
            gate_delay_seconds=_get_int_env("GATE_DELAY_SECONDS", 60),
            gate_max_attempts=_get_int_env("GATE_MAX_ATTEMPTS", 30),
            ai_enabled=_get_bool_env("AI_ENABLED", True),
            ai_auto_apply_enabled=_get_bool_env("AI_AUTO_APPLY_ENABLED", False),
            ai_auto_apply_threshold=_get_float_env("AI_AUTO_APPLY_THRESHOLD", 0.85),
            ai_auto_apply_max_tags=_get_int_env("AI_AUTO_APPLY_MAX_TAGS", 5),
            ai_suggestion_threshold=_get_float_env("AI_SUGGESTION_THRESHOLD", 0.90),
            ai_metadata_fields=_get_list_env("AI_METADATA_FIELDS", DEFAULT_AI_METADATA_FIELDS),
        )


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    """Wrapper around os.getenv that trims whitespace."""
    value = os.getenv(name, default)
    if value is None:
        return None
    trimmed = value.strip()
    return trimmed or default


def _require_env(name: str) -> str:
    """Fetch an environment variable or raise a helpful error."""
    value = _get_env(name)
    if not value:
        raise RuntimeError(f"Expected environment variable '{name}' to be set.")
    return value


def _get_float_env(name: str, default: float) -> float:
    raw = _get_env(name)
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a float, got '{raw}'.") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}.")
    return value


def _get_int_env(name: str, default: int) -> int:
    raw = _get_env(name)
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got '{raw}'.") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {value}.")
    return value


def _get_bool_env(name: str, default: bool) -> bool:
    raw = _get_env(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


def _get_list_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = _get_env(name)
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@lru_cache(maxsize=1)
def get_db_config() -> DBConfig:
    """Return Postgres connection info."""
    return DBConfig(url=_require_env("DATABASE_URL"))


@lru_cache(maxsize=1)
def get_storage_config() -> StorageConfig:
    """Return object storage credentials."""
    return StorageConfig(
        aws_access_key_id=_get_env("AWS_ACCESS_KEY_ID"),
        aws_secret_access_key=_get_env("AWS_SECRET_ACCESS_KEY"),
        default_bucket=_get_env("S3_BUCKET_NAME"),
        region=_get_env("S3_REGION") or _get_env("AWS_REGION") or "us-east-1",
        endpoint_url=_get_env("S3_ENDPOINT_URL"),
    )


@lru_cache(maxsize=1)
def get_openai_config() -> OpenAIConfig:
    """Return OpenAI-compatible API configuration for the vision collaborator."""
    return OpenAIConfig(
        api_key=_require_env("OPENAI_API_KEY"),
        api_base=_get_env("OPENAI_API_BASE") or "https://api.openai.com/v1",
        vision_model_name=_get_env("VISION_MODEL") or DEFAULT_VISION_MODEL,
    )


@lru_cache(maxsize=1)
def get_pipeline_settings() -> PipelineSettings:
    """Return the process-wide settings object (built once)."""
    return PipelineSettings.from_env()


__all__ = [
    "DBConfig",
    "StorageConfig",
    "OpenAIConfig",
    "ThumbnailStyle",
    "PipelineSettings",
    "DEFAULT_THUMBNAIL_STYLES",
    "get_db_config",
    "get_storage_config",
    "get_openai_config",
    "get_pipeline_settings",
]
