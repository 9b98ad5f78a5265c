from __future__ import annotations

import os
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version

from .logging import get_logger

SERVICE_NAME = "vegetable-ai"


@dataclass(frozen=True)
class VersionInfo:
    service: str
    version: str
    build: str | None
    commit: str | None


def get_version() -> VersionInfo:
    return VersionInfo(
        service=SERVICE_NAME,
        version=_pkg_version(),
        build=os.getenv("BUILD_ID"),
        commit=os.getenv("GIT_COMMIT") or os.getenv("COMMIT_SHA"),
    )


def _pkg_version() -> str:
    try:
        return version(SERVICE_NAME)
    except PackageNotFoundError as exc:
        get_logger().warning("pkg_version_missing error=%s", exc)
        raise RuntimeError("package version not found") from exc
