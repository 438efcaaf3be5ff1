"""
Configuration management for kube-bastion using Pydantic.

Every field can be set through an environment variable with the ``BASTION_``
prefix (``BASTION_PORT=9443``) or through a ``.env`` file in the working
directory.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Annotated, List, Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _default_parallelism() -> int:
    return os.cpu_count() or 2


class BastionSettings(BaseSettings):
    """Main configuration for the admission controller."""

    model_config = SettingsConfigDict(
        env_prefix="BASTION_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Server configuration
    bind_address: str = "0.0.0.0"
    port: int = Field(default=8443, ge=1, le=65535)
    server_workers: int = Field(default_factory=lambda: _default_parallelism() * 4, ge=1)
    max_request_bytes: int = Field(default=3 * 1024 * 1024, gt=0)

    # TLS configuration
    cert_dir: Path = Path("/var/run/kube-bastion/certs")
    ca_validity_days: int = Field(default=3650, gt=0)
    cert_validity_days: int = Field(default=365, gt=0)
    cert_renewal_margin_days: int = Field(default=30, ge=0)

    # Service identity, used for the certificate SANs and the webhook client config
    service_name: str = "kube-bastion"
    service_namespace: str = "kube-bastion"
    service_port: int = Field(default=443, ge=1, le=65535)

    # Webhook registration
    webhook_name: str = "kube-bastion"
    webhook_url: Optional[str] = None
    failure_policy: Literal["Fail", "Ignore"] = "Fail"
    webhook_timeout_seconds: int = Field(default=5, ge=1, le=30)
    registration_attempts: int = Field(default=5, ge=1)

    # Admission decisions
    request_deadline: float = Field(default=4.0, gt=0)
    evaluation_timeout: float = Field(default=2.0, gt=0)
    ignore_label: str = "bastion.dev/ignore"
    ignore_cluster_scoped: bool = False
    fail_open_namespaces: Annotated[List[str], NoDecode] = Field(default_factory=list)
    record_events: bool = True
    event_namespace: Optional[str] = None

    # Rule interpreters
    interpreter_pool_size: int = Field(default_factory=_default_parallelism, ge=1)
    interpreter_memory_limit_mb: int = Field(default=512, ge=0)
    interpreter_startup_timeout: float = Field(default=10.0, gt=0)
    interpreter_max_evaluations: int = Field(default=1000, ge=0)

    # Watches
    watch_timeout_seconds: int = Field(default=300, ge=1)
    watch_startup_attempts: int = Field(default=5, ge=1)
    backoff_max_seconds: float = Field(default=30.0, gt=0)

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    @field_validator("fail_open_namespaces", mode="before")
    @classmethod
    def parse_namespaces(cls, v):
        """Parse comma-separated namespace list from environment."""
        if isinstance(v, str):
            return [ns.strip() for ns in v.split(",") if ns.strip()]
        return v

    @field_validator("log_level", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.upper()
        return v

    @model_validator(mode="after")
    def check_deadlines(self) -> "BastionSettings":
        if self.evaluation_timeout > self.request_deadline:
            raise ValueError("evaluation_timeout must not exceed request_deadline")
        if self.request_deadline >= self.webhook_timeout_seconds:
            raise ValueError("request_deadline must be shorter than webhook_timeout_seconds")
        return self

    @property
    def events_namespace(self) -> str:
        return self.event_namespace or self.service_namespace

    def is_fail_open(self, namespace: Optional[str]) -> bool:
        """Check if internal errors in this namespace should admit the request."""
        return namespace is not None and namespace in self.fail_open_namespaces


def load_settings(**kwargs) -> BastionSettings:
    """Load settings from environment variables with optional overrides."""
    return BastionSettings(**kwargs)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
