"""Runtime platform detection.

Providers declare the platforms they run on; the registry compares that
list against the value returned here.
"""

from __future__ import annotations

import sys

from typing import cast

from .types import Platform


KNOWN_PLATFORMS: tuple[Platform, ...] = ("desktop", "web", "ios", "android")


def detect_platform(override: str | None = None) -> Platform:
    """Detect the platform the process is running on.

    Parameters
    ----------
    override : str, optional
        Forced platform name (e.g. from the ``platform`` setting).

    Returns
    -------
    Platform
        One of ``"desktop"``, ``"web"``, ``"ios"`` or ``"android"``.
    """
    if override:
        value = override.lower()
        if value not in KNOWN_PLATFORMS:
            msg = f"Unknown platform: {override}"
            raise ValueError(msg)
        return cast("Platform", value)

    name = sys.platform
    if name == "ios":
        return "ios"
    if name == "android":
        return "android"
    if name in ("emscripten", "wasi"):
        return "web"
    return "desktop"
