"""FastAPI server adapter for crm-lifecycle.

This module exposes a REST API over the lifecycle engine.

Design intent:
- Keep state machine logic in `crm_lifecycle.statemachine.*`
- Keep server-specific concerns (routing, CORS, error mapping) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from crm_lifecycle.server.app import create_app
