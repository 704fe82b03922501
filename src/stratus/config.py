"""Configuration loading and Pydantic models for stratus."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from stratus.planner import PartConstraints


class EndpointConfig(BaseModel):
    """Where the S3-compatible service lives and how to address it."""

    url: str = "http://localhost:9000"
    region: str = "us-east-1"
    path_style: bool = True


class CredentialsConfig(BaseModel):
    """Static credentials used to sign requests."""

    access_key: str = ""
    secret_key: str = ""
    session_token: str = ""


class TransportConfig(BaseModel):
    """HTTP transport tuning."""

    timeout: float = 60.0
    max_connections: int = 64
    verify_tls: bool = True


class ComposeConfig(BaseModel):
    """Multipart limits used by compose planning."""

    constraints: PartConstraints = Field(default_factory=PartConstraints)


class LoggingConfig(BaseModel):
    """Log level and output format."""

    level: str = "INFO"
    format: str = "text"


class ObservabilityConfig(BaseModel):
    """Prometheus metrics toggle."""

    metrics: bool = False


class StratusConfig(BaseModel):
    """Top-level stratus configuration."""

    endpoint: EndpointConfig = Field(default_factory=EndpointConfig)
    credentials: CredentialsConfig = Field(default_factory=CredentialsConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    compose: ComposeConfig = Field(default_factory=ComposeConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _parse_endpoint(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the endpoint section from YAML data into a dict for Pydantic."""
    if data is None:
        return {}
    return {
        "url": data.get("url", "http://localhost:9000"),
        "region": data.get("region", "us-east-1"),
        "path_style": data.get("path_style", True),
    }


def _parse_credentials(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the credentials section from YAML data."""
    if data is None:
        return {}
    return {
        "access_key": data.get("access_key", ""),
        "secret_key": data.get("secret_key", ""),
        "session_token": data.get("session_token", ""),
    }


def _parse_transport(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the transport section from YAML data."""
    if data is None:
        return {}
    return {
        "timeout": data.get("timeout", 60.0),
        "max_connections": data.get("max_connections", 64),
        "verify_tls": data.get("verify_tls", True),
    }


def _parse_compose(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the compose section from YAML data.

    Handles nested structure: compose.limits.<name> -> constraints.<name>.
    Only the keys present in the file override the protocol defaults.
    """
    if data is None:
        return {}
    limits = data.get("limits")
    if not isinstance(limits, dict):
        return {}
    known = PartConstraints.model_fields.keys()
    return {"constraints": PartConstraints(**{k: v for k, v in limits.items() if k in known})}


def _parse_logging(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the logging section from YAML data."""
    if data is None:
        return {}
    return {
        "level": data.get("level", "INFO"),
        "format": data.get("format", "text"),
    }


def _parse_observability(data: dict[str, Any] | None) -> dict[str, Any]:
    """Parse the observability section from YAML data."""
    if data is None:
        return {}
    return {"metrics": data.get("metrics", False)}


def load_config(path: Path) -> StratusConfig:
    """Load a StratusConfig from a YAML file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A fully populated StratusConfig validated by Pydantic.

    Raises:
        FileNotFoundError: If the config file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, "r") as fh:
        raw: dict[str, Any] = yaml.safe_load(fh) or {}

    return StratusConfig(
        endpoint=EndpointConfig(**_parse_endpoint(raw.get("endpoint"))),
        credentials=CredentialsConfig(**_parse_credentials(raw.get("credentials"))),
        transport=TransportConfig(**_parse_transport(raw.get("transport"))),
        compose=ComposeConfig(**_parse_compose(raw.get("compose"))),
        logging=LoggingConfig(**_parse_logging(raw.get("logging"))),
        observability=ObservabilityConfig(**_parse_observability(raw.get("observability"))),
    )
