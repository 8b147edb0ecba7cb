from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: str = "") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_optional(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


@dataclass(frozen=True)
class Settings:
    kubeconfig: str | None = field(default_factory=lambda: _env_optional("KUBECONFIG"))
    kube_context: str | None = field(
        default_factory=lambda: _env_optional("KUBE_CONTEXT")
    )
    # None means every execution gets its own namespace named after it.
    namespace: str | None = field(
        default_factory=lambda: _env_optional("KUBE_NAMESPACE")
    )
    container_name: str = field(
        default_factory=lambda: os.getenv("KUBE_CONTAINER_NAME", "runner")
    )
    poll_interval: float = field(
        default_factory=lambda: float(os.getenv("KUBE_POLL_INTERVAL", "0.5"))
    )
    max_poll_interval: float = field(
        default_factory=lambda: float(os.getenv("KUBE_MAX_POLL_INTERVAL", "5"))
    )
    timeout_sec: float = field(
        default_factory=lambda: float(os.getenv("JOB_TIMEOUT_SEC", "600"))
    )
    delete_grace_sec: int = field(
        default_factory=lambda: int(os.getenv("KUBE_DELETE_GRACE_SEC", "0"))
    )
    # Upper bound on a single API request, in seconds.
    request_timeout: float = field(
        default_factory=lambda: float(os.getenv("KUBE_REQUEST_TIMEOUT", "30"))
    )
    use_fake_cluster: bool = field(default_factory=lambda: _env_bool("FAKE_CLUSTER"))
    redis_url: str = field(
        default_factory=lambda: os.getenv("REDIS_URL", "redis://localhost:6379/0")
    )
    use_fake_redis: bool = field(default_factory=lambda: _env_bool("FAKE_REDIS"))
    output_retention_sec: int = field(
        default_factory=lambda: int(os.getenv("OUTPUT_RETENTION_SEC", "86400"))
    )
    worker_concurrency: int = field(
        default_factory=lambda: int(os.getenv("WORKER_CONCURRENCY", "4"))
    )
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))

    @property
    def per_execution_namespace(self) -> bool:
        return self.namespace is None


def get_settings() -> Settings:
    return Settings()
