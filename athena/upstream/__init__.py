"""
Async clients for the upstream Ory services.

Only the calls the analytics and layout persistence need are wrapped.
"""

from __future__ import annotations

from .base import UpstreamError
from .hydra import HydraClient
from .kratos import KratosClient

__all__ = ["UpstreamError", "KratosClient", "HydraClient"]
