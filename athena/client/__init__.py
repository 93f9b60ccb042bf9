"""
Python SDK for the Athena dashboard service.
"""

from __future__ import annotations

from .layout_client import HttpLayoutChannel, open_layout_store

__all__ = ["HttpLayoutChannel", "open_layout_store"]
