from __future__ import annotations

import os
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .preprocess import preprocess_signature
from .training.model import ARCH

SERVICE_NAME: Final[str] = "sketch-learner"
_FALLBACK_VERSION: Final[str] = "0.0.0+unknown"


@dataclass(frozen=True)
class VersionInfo:
    """Service identity plus the model contract a saved artifact must match."""

    service: str
    version: str
    arch: str
    preprocess: str
    commit: str | None


def get_version() -> VersionInfo:
    return VersionInfo(
        service=SERVICE_NAME,
        version=_pkg_version(),
        arch=ARCH,
        preprocess=preprocess_signature(),
        commit=os.getenv("GIT_COMMIT"),
    )


def _pkg_version() -> str:
    try:
        return version(SERVICE_NAME)
    except PackageNotFoundError:
        from .logging import get_logger

        get_logger().warning("pkg_version_fallback service=%s", SERVICE_NAME)
        return _FALLBACK_VERSION
