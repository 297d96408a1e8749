from __future__ import annotations

from contextvars import ContextVar

caller_id_ctx: ContextVar[str | None] = ContextVar("caller_id", default=None)


def set_request_context(caller_id: str | None) -> None:
    caller_id_ctx.set(caller_id)


def get_caller_id() -> str | None:
    return caller_id_ctx.get()
