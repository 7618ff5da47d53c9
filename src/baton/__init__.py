"""Graceful-restart HTTP server with listener hand-off."""

from __future__ import annotations

__version__ = "0.3.0"
