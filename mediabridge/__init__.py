"""Importable alias for the aggregation service's FastAPI application."""

from __future__ import annotations

from app.main import app, create_app, get_orchestrator

__all__ = ["app", "create_app", "get_orchestrator"]
