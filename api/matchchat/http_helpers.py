from typing import Any, Callable

from starlette.concurrency import run_in_threadpool

from . import database
from .services.errors import ChatError


def call_in_session(fn: Callable[..., Any], *args, **kwargs) -> Any:
    with database.SessionLocal() as db:
        return fn(db, *args, **kwargs)


async def in_session(fn: Callable[..., Any], *args, **kwargs) -> Any:
    """Run a blocking service call with its own session off the event loop."""
    return await run_in_threadpool(call_in_session, fn, *args, **kwargs)


def error_body(exc: ChatError) -> dict[str, str]:
    return {"detail": exc.message, "code": exc.code}


def message_error(event_name: str | None, code: str, detail: str) -> dict[str, Any]:
    return {"event_name": event_name, "code": code, "detail": detail}
