from __future__ import annotations

import re
from datetime import datetime, timezone

from kube_runner.errors import InvalidSpec

# DNS-1123 label, which covers both pod and namespace names.
MAX_NAME_LENGTH = 63

_INVALID_CHARS = re.compile(r"[^a-z0-9-]+")
_DASH_RUNS = re.compile(r"-{2,}")

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "kube-runner"
EXECUTION_ID_LABEL = "kube-runner/execution-id"


def sanitize_name(execution_id: str) -> str:
    """Turn an execution id into a legal resource name or raise InvalidSpec."""
    name = _INVALID_CHARS.sub("-", execution_id.strip().lower())
    name = _DASH_RUNS.sub("-", name).strip("-")
    name = name[:MAX_NAME_LENGTH].rstrip("-")
    if not name:
        raise InvalidSpec(
            f"execution id {execution_id!r} is not a valid resource name",
            execution_id=execution_id,
        )
    return name


def new_execution_id(prefix: str = "") -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S-%f")
    if prefix:
        return sanitize_name(f"{prefix}-{stamp}")
    return stamp


def managed_labels(name: str) -> dict[str, str]:
    return {MANAGED_BY_LABEL: MANAGED_BY_VALUE, EXECUTION_ID_LABEL: name}


def managed_selector() -> str:
    return f"{MANAGED_BY_LABEL}={MANAGED_BY_VALUE}"
