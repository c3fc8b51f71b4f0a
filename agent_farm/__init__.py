"""Agent Farm main module."""

from __future__ import annotations

from agent_farm.config import settings
from agent_farm.server import app, main

__version__ = "0.1.0"
__all__ = ["app", "main", "settings"]
