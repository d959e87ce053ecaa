"""Configuration loading and Pydantic models for rekey."""

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from rekey.errors import ConfigError

# S3 rejects upload_part_copy ranges smaller than 5 MiB (except the last part).
MIN_PART_SIZE = 5 * 1024 * 1024


class StoreConfig(BaseModel):
    """Object store connection and transfer configuration."""

    backend: Literal["s3", "memory"] = "s3"
    bucket: str = "delivery"
    region: str = "us-east-1"
    endpoint_url: str = ""
    use_path_style: bool = False
    access_key_id: str = ""
    secret_access_key: str = ""
    max_keys: int = Field(default=1000, ge=1, le=1000)
    max_part_size: int = Field(default=50 * 1024 * 1024, ge=MIN_PART_SIZE)
    multipart_threshold: int = Field(default=100 * 1024 * 1024, ge=1)
    skip_multipart: bool = False
    max_part_concurrency: int = Field(default=10, ge=0)
    connect_timeout: float = Field(default=60.0, gt=0)
    read_timeout: float = Field(default=60.0, gt=0)


class RemediationConfig(BaseModel):
    """Key mapping strategy and scheduling configuration."""

    strategy: Literal["reversed-id", "lookup"] = "reversed-id"
    parallelism: int = Field(default=12, ge=1)
    verify_only: bool = False
    guard_modified: bool = True
    shutdown_timeout: float = Field(default=15.0, gt=0)


class LookupConfig(BaseModel):
    """Lookup table input configuration (``lookup`` strategy only)."""

    path: str = "./external/dump.txt"
    pattern: str = r"^\d+ : (\d+) .*:(\d+)$"
    skip: int = Field(default=2, ge=0)


class LoggingConfig(BaseModel):
    """Process log and audit log configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["text", "json"] = "text"
    audit_path: str = ""


class ObservabilityConfig(BaseModel):
    """Prometheus metrics configuration."""

    metrics: bool = False
    metrics_port: int = Field(default=9108, ge=1, le=65535)


class RekeyConfig(BaseModel):
    """Top-level rekey configuration."""

    store: StoreConfig = Field(default_factory=StoreConfig)
    remediation: RemediationConfig = Field(default_factory=RemediationConfig)
    lookup: LookupConfig = Field(default_factory=LookupConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_store(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the store section from YAML data.

    Handles nested structure: store.multipart.threshold -> multipart_threshold, etc.
    """
    if data is None:
        return {}
    result = {
        k: v
        for k, v in data.items()
        if k not in ("multipart", "credentials", "timeouts")
    }

    multipart_section = data.get("multipart")
    if isinstance(multipart_section, dict):
        if "threshold" in multipart_section:
            result["multipart_threshold"] = multipart_section["threshold"]
        if "part_size" in multipart_section:
            result["max_part_size"] = multipart_section["part_size"]
        if "skip" in multipart_section:
            result["skip_multipart"] = multipart_section["skip"]
        if "concurrency" in multipart_section:
            result["max_part_concurrency"] = multipart_section["concurrency"]

    credentials_section = data.get("credentials")
    if isinstance(credentials_section, dict):
        result["access_key_id"] = credentials_section.get("access_key_id", "")
        result["secret_access_key"] = credentials_section.get("secret_access_key", "")

    timeouts_section = data.get("timeouts")
    if isinstance(timeouts_section, dict):
        if "connect" in timeouts_section:
            result["connect_timeout"] = timeouts_section["connect"]
        if "read" in timeouts_section:
            result["read_timeout"] = timeouts_section["read"]

    return result


def _parse_section(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse a flat section from YAML data."""
    if data is None:
        return {}
    return dict(data)


def load_config(path: Path) -> RekeyConfig:
    """Load a RekeyConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated RekeyConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ConfigError: If a value fails validation.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    try:
        return RekeyConfig(
            store=StoreConfig(**_parse_store(raw.get("store"))),
            remediation=RemediationConfig(**_parse_section(raw.get("remediation"))),
            lookup=LookupConfig(**_parse_section(raw.get("lookup"))),
            logging=LoggingConfig(**_parse_section(raw.get("logging"))),
            observability=ObservabilityConfig(**_parse_section(raw.get("observability"))),
        )
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {path}: {exc}") from exc


# Environment variable -> (section, field, parser)
_ENV_OVERRIDES: dict[str, tuple[str, str, str]] = {
    "PARALLELISM": ("remediation", "parallelism", "int"),
    "VERIFY_ONLY": ("remediation", "verify_only", "bool"),
    "INPUT_PATH": ("lookup", "path", "str"),
    "INPUT_PATTERN": ("lookup", "pattern", "str"),
    "INPUT_SKIP": ("lookup", "skip", "int"),
    "AWS_BUCKET_NAME": ("store", "bucket", "str"),
    "AWS_ENDPOINT_OVERRIDE": ("store", "endpoint_url", "str"),
    "AWS_MAX_KEYS": ("store", "max_keys", "int"),
    "AWS_MAX_PART_SIZE": ("store", "max_part_size", "int"),
    "AWS_MULTIPART_THRESHOLD": ("store", "multipart_threshold", "int"),
    "AWS_SKIP_MULTIPART": ("store", "skip_multipart", "bool"),
}


def _parse_env_value(name: str, value: str, kind: str) -> Any:
    if kind == "int":
        try:
            return int(value)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer, got {value!r}") from exc
    if kind == "bool":
        return value.strip().lower() in ("1", "true", "yes", "y")
    return value


def apply_overrides(config: RekeyConfig, overrides: Mapping[str, Mapping[str, Any]]) -> RekeyConfig:
    """Return a copy of config with per-section field overrides validated.

    Args:
        config: The base configuration.
        overrides: ``{section: {field: value}}``.

    Raises:
        ConfigError: If an overridden value fails validation.
    """
    sections: dict[str, Any] = {}
    for section, fields in overrides.items():
        if not fields:
            continue
        current: BaseModel = getattr(config, section)
        try:
            sections[section] = type(current)(**{**current.model_dump(), **fields})
        except ValidationError as exc:
            raise ConfigError(f"Invalid {section} override: {exc}") from exc
    return config.model_copy(update=sections)


def apply_env_overrides(
    config: RekeyConfig, environ: Mapping[str, str] | None = None
) -> RekeyConfig:
    """Apply the supported environment variables on top of config.

    Empty values are ignored.

    Args:
        config: The configuration loaded from YAML (or defaults).
        environ: Environment mapping. Defaults to os.environ.

    Returns:
        A new RekeyConfig with the overrides applied.
    """
    environ = os.environ if environ is None else environ
    overrides: dict[str, dict[str, Any]] = {}
    for name, (section, field, kind) in _ENV_OVERRIDES.items():
        value = environ.get(name)
        if value is None or value == "":
            continue
        overrides.setdefault(section, {})[field] = _parse_env_value(name, value, kind)
    return apply_overrides(config, overrides)
