"""
Configuration management for the admission webhook using Pydantic.
"""

from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerConfig(BaseSettings):
    """Settings shared by every web server."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    bind_address: str = Field(default="0.0.0.0")
    port: int = Field(default=9443, ge=1, le=65535, validation_alias=AliasChoices("port", "CATTLE_PORT"))
    uds_path: Optional[str] = Field(default=None)

    # TLS configuration
    tls_cert_path: Optional[Path] = Field(default=None)
    tls_key_path: Optional[Path] = Field(default=None)

    debug: bool = Field(default=False)

    @field_validator("tls_cert_path", "tls_key_path")
    @classmethod
    def validate_paths(cls, v):
        """Validate that paths exist if specified."""
        if v is not None and not Path(v).exists():
            raise ValueError(f"Path does not exist: {v}")
        return v

    def export_json(self) -> str:
        """Export configuration as JSON."""
        return self.model_dump_json(indent=2)


class WebhookConfig(ServerConfig):
    """Main configuration for the admission webhook."""

    # Routing
    validation_path: str = Field(default="/v1/webhook/validation")
    mutation_path: str = Field(default="/v1/webhook/mutation")

    # Generated webhook configuration
    namespace: str = Field(default="cattle-system")
    service_name: str = Field(default="rancher-webhook")
    client_port: int = Field(default=443, ge=1, le=65535)
    webhook_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("webhook_url", "CATTLE_WEBHOOK_URL")
    )
    ca_bundle: Optional[str] = Field(default=None)

    # Break-glass identity; both must match for the bypass to apply
    bypass_username: str = Field(default="system:serviceaccount:cattle-system:rancher-webhook-sudo")
    bypass_group: str = Field(default="system:masters")

    # Register the role/binding escalation handlers
    multi_cluster_management: bool = Field(default=True)

    # Kubernetes API access
    kube_api_url: str = Field(default="https://kubernetes.default.svc")
    kube_token_path: Path = Field(default=Path("/var/run/secrets/kubernetes.io/serviceaccount/token"))
    kube_ca_path: Optional[Path] = Field(default=Path("/var/run/secrets/kubernetes.io/serviceaccount/ca.crt"))
    sar_timeout: float = Field(default=10.0, gt=0)

    # Cache refresh
    cache_resync_seconds: int = Field(default=30, ge=1)

    @field_validator("validation_path", "mutation_path")
    @classmethod
    def validate_base_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError(f"Webhook path must be absolute: {v}")
        return v.rstrip("/") or "/"


def load_config(**kwargs) -> WebhookConfig:
    """Load configuration with environment variables and optional overrides."""
    return WebhookConfig(**kwargs)
