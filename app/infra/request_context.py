from __future__ import annotations

from contextvars import ContextVar
from typing import Any

# Holds a mutable dict so dependencies running in worker threads can fill it in.
audit_context_ctx: ContextVar[dict[str, Any] | None] = ContextVar("audit_context", default=None)


def get_audit_context() -> dict[str, Any] | None:
    return audit_context_ctx.get()
