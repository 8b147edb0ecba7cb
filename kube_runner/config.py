from __future__ import annotations

import os
from pathlib import Path

from kube_runner.settings import Settings


def home_dir() -> Path:
    home = os.getenv("HOME") or os.getenv("USERPROFILE")  # USERPROFILE on windows
    return Path(home) if home else Path.home()


def kubeconfig_path(settings: Settings) -> Path:
    """Kubeconfig file to authenticate with, ``~/.kube/config`` by default."""
    if settings.kubeconfig:
        return Path(settings.kubeconfig).expanduser()
    return home_dir() / ".kube" / "config"
