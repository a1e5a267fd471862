# hls_ingest/settings.py
# ------------------------------------------------------------------
# RUNTIME SETTINGS
# ------------------------------------------------------------------
# Built once at process start (defaults < YAML file < environment) and
# handed to every component. Nothing below the CLI reads os.environ.
from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from hls_ingest.errors import ConfigError

logger = logging.getLogger(__name__)

LAYOUTS = ("flat-identity", "hls-identity")
COMPLETION_MODES = ("flag", "move")
IDENTITY_MODES = ("sanitized", "hashed")

# Environment variable -> settings field
ENV_MAP = {
    "HLS_INGEST_BUCKET": "bucket",
    "HLS_INGEST_PUBLIC_BASE_URL": "public_base_url",
    "HLS_INGEST_KEY_PREFIX": "key_prefix",
    "HLS_INGEST_LAYOUT": "layout",
    "AWS_REGION": "aws_region",
    "AWS_PROFILE": "aws_profile",
    "HLS_INGEST_S3_ENDPOINT_URL": "s3_endpoint_url",
    "HLS_INGEST_DYNAMODB_ENDPOINT_URL": "dynamodb_endpoint_url",
    "HLS_INGEST_SOURCE_TABLE": "source_table",
    "HLS_INGEST_RECORDS_TABLE": "records_table",
    "HLS_INGEST_CLAIMS_TABLE": "claims_table",
    "HLS_INGEST_COMPLETION_MODE": "completion_mode",
    "HLS_INGEST_WORKSPACE_ROOT": "workspace_root",
    "HLS_INGEST_WORKSPACE_TIMESTAMP_SUFFIX": "workspace_timestamp_suffix",
    "HLS_INGEST_PLAYLIST_NAME": "playlist_name",
    "HLS_INGEST_LOG_DIR": "log_dir",
    "HLS_INGEST_LOG_LEVEL": "log_level",
    "HLS_INGEST_FFMPEG_PATH": "ffmpeg_path",
    "HLS_INGEST_SEGMENT_SECONDS": "segment_seconds",
    "HLS_INGEST_IDENTITY_MODE": "identity_mode",
    "HLS_INGEST_FETCH_TIMEOUT": "fetch_timeout",
    "HLS_INGEST_TRANSCODE_TIMEOUT": "transcode_timeout",
    "HLS_INGEST_UPLOAD_TIMEOUT": "upload_timeout",
    "HLS_INGEST_FETCH_ATTEMPTS": "fetch_attempts",
    "HLS_INGEST_FETCH_CHUNK_SIZE": "fetch_chunk_size",
    "HLS_INGEST_USER_AGENT": "user_agent",
    "HLS_INGEST_KEEP_METADATA": "keep_metadata",
    "HLS_INGEST_KEEP_OUTPUT": "keep_output",
    "HLS_INGEST_WORKERS": "workers",
    "HLS_INGEST_CLAIM_LEASE_SECONDS": "claim_lease_seconds",
    "HLS_INGEST_METRICS_ENABLED": "metrics_enabled",
    "HLS_INGEST_METRICS_NAMESPACE": "metrics_namespace",
    "HLS_INGEST_VERIFY_UPLOADS": "verify_uploads",
}

# Older deployments exported the CDN base URL under this name.
FALLBACK_ENV = {"CLOUDFRONT_URL": "public_base_url"}

_TRUE = ("1", "true", "t", "yes", "y", "on")


@dataclass(frozen=True)
class IngestSettings:
    bucket: str = ""
    public_base_url: str = ""
    key_prefix: str = ""
    layout: str = "flat-identity"

    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None
    s3_endpoint_url: Optional[str] = None
    dynamodb_endpoint_url: Optional[str] = None

    source_table: str = "hls-ingest-sources"
    records_table: str = "hls-ingest-records"
    claims_table: Optional[str] = None
    completion_mode: str = "flag"

    workspace_root: Path = Path("videos")
    workspace_timestamp_suffix: bool = True
    playlist_name: str = "output.m3u8"
    log_dir: Path = Path("logs")
    log_level: str = "INFO"

    ffmpeg_path: str = "ffmpeg"
    segment_seconds: int = 10
    identity_mode: str = "sanitized"

    fetch_timeout: float = 300.0
    transcode_timeout: float = 1800.0
    upload_timeout: float = 900.0
    fetch_attempts: int = 1
    fetch_chunk_size: int = 8192
    user_agent: str = "HlsIngest/1.0"

    keep_metadata: bool = True
    keep_output: bool = False

    workers: int = 1
    claim_lease_seconds: int = 3600

    metrics_enabled: bool = False
    metrics_namespace: str = "HlsIngest"
    verify_uploads: bool = False

    def validate(self) -> None:
        missing = [name for name in ("bucket", "public_base_url") if not getattr(self, name)]
        if missing:
            raise ConfigError(f"Missing required settings: {', '.join(missing)}")
        if self.layout not in LAYOUTS:
            raise ConfigError(f"Unsupported layout '{self.layout}'. Expected one of {LAYOUTS}")
        if self.completion_mode not in COMPLETION_MODES:
            raise ConfigError(f"Unsupported completion_mode '{self.completion_mode}'. Expected one of {COMPLETION_MODES}")
        if self.identity_mode not in IDENTITY_MODES:
            raise ConfigError(f"Unsupported identity_mode '{self.identity_mode}'. Expected one of {IDENTITY_MODES}")
        if not self.playlist_name.endswith(".m3u8") or "/" in self.playlist_name:
            raise ConfigError(f"playlist_name must be a bare file name ending in .m3u8, got '{self.playlist_name}'")
        if self.workers < 1:
            raise ConfigError("workers must be >= 1")
        if self.fetch_attempts < 1:
            raise ConfigError("fetch_attempts must be >= 1")
        if self.segment_seconds < 1:
            raise ConfigError("segment_seconds must be >= 1")
        for name in ("fetch_timeout", "transcode_timeout", "upload_timeout"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be > 0")


def _coerce(name: str, raw: Any) -> Any:
    """Convert a raw YAML/env value to the type declared on IngestSettings."""
    field_type = {f.name: f.type for f in dataclasses.fields(IngestSettings)}[name]
    if raw is None:
        return None
    try:
        if field_type == "bool":
            return raw if isinstance(raw, bool) else str(raw).strip().lower() in _TRUE
        if field_type == "int":
            return int(raw)
        if field_type == "float":
            return float(raw)
        if field_type == "Path":
            return Path(str(raw)).expanduser()
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid value for {name}: {raw!r} ({e})") from e
    return str(raw)


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        with config_path.open("r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise ConfigError(f"Config file not found: {config_path}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"YAML parse error in {config_path}: {e}") from e
    if cfg is None:
        logger.warning(f"Config file {config_path} is empty, using defaults")
        return {}
    if not isinstance(cfg, dict):
        raise ConfigError(f"Config file {config_path} must hold a mapping, got {type(cfg).__name__}")
    return cfg


def load_settings(config_path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None,
                  **overrides: Any) -> IngestSettings:
    """
    Build and validate the settings for one process.

    Args:
        config_path: optional YAML file whose keys are IngestSettings field names.
        env: environment mapping, defaults to os.environ.
        overrides: explicit values (e.g. CLI flags), highest precedence. None is ignored.
    """
    env = os.environ if env is None else env
    known = {f.name for f in dataclasses.fields(IngestSettings)}
    values: Dict[str, Any] = {}

    if config_path is not None:
        for key, raw in _load_yaml(Path(config_path)).items():
            if key not in known:
                raise ConfigError(f"Unknown setting '{key}' in {config_path}")
            values[key] = _coerce(key, raw)

    for env_name, key in FALLBACK_ENV.items():
        if env.get(env_name) and key not in values:
            values[key] = _coerce(key, env[env_name])
    for env_name, key in ENV_MAP.items():
        if env.get(env_name) not in (None, ""):
            values[key] = _coerce(key, env[env_name])

    for key, raw in overrides.items():
        if key not in known:
            raise ConfigError(f"Unknown setting override '{key}'")
        if raw is not None:
            values[key] = _coerce(key, raw)

    settings = IngestSettings(**values)
    settings.validate()
    return settings


def layout_fn(identity: str, settings: IngestSettings) -> str:
    """
    Object key prefix for one item's published artifacts. Ends with a slash.

    flat-identity: "<key_prefix>/<identity>/"
    hls-identity:  "<key_prefix>/hls/<identity>/"
    """
    if not identity:
        raise ValueError("identity is required for the object key layout")
    base = settings.key_prefix.strip("/")
    base = f"{base}/" if base else ""
    if settings.layout == "flat-identity":
        return f"{base}{identity}/"
    if settings.layout == "hls-identity":
        return f"{base}hls/{identity}/"
    raise ValueError(f"Unsupported layout: {settings.layout}")
