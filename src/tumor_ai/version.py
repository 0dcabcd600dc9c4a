from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Final

_DIST_NAME: Final[str] = "tumor-ai"


@dataclass(frozen=True)
class VersionInfo:
    service: str
    version: str
    build: str | None
    commit: str | None


def get_version() -> VersionInfo:
    return VersionInfo(
        service=_DIST_NAME,
        version=_pkg_version(),
        build=os.getenv("BUILD_ID"),
        commit=os.getenv("GIT_COMMIT") or os.getenv("COMMIT_SHA"),
    )


def _pkg_version() -> str:
    from importlib.metadata import PackageNotFoundError, version

    try:
        return version(_DIST_NAME)
    except PackageNotFoundError as exc:
        from .logging import get_logger

        get_logger().warning("pkg_version_fallback error=%s", exc)
        raise RuntimeError("package version not found") from exc
