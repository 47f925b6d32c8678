"""
Entitymesh CLI - inspect servers and run queries from the shell.
"""

from __future__ import annotations

from .main import app, main

__all__ = ["main", "app"]
