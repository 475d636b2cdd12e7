"""Identity providers for authmanager.

Exports the provider base class and the OAuth authorization-code engine.
Concrete providers live in their own modules and are imported on demand
by the registry.
"""

from __future__ import annotations

from .base import AuthProvider
from .oauth import OAuthEndpoints, OAuthFlowEngine


__all__ = [
    "AuthProvider",
    "OAuthEndpoints",
    "OAuthFlowEngine",
]
