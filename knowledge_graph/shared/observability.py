"""
Langfuse tracing for indexing runs, embedding batches and searches.

Tracing is off until init_langfuse() finds a key pair (arguments or
LANGFUSE_PUBLIC_KEY / LANGFUSE_SECRET_KEY). Decorated functions check the
flag on every call, so the decorator can be applied at import time.
"""

import functools
import inspect
import logging
import os
from typing import Any, Callable, Optional

from dotenv import load_dotenv
from langfuse import Langfuse, get_client, observe

load_dotenv()

logger = logging.getLogger("knowledge-graph.observability")

LANGFUSE_DEFAULT_HOST = "https://cloud.langfuse.com"

_client: Optional[Langfuse] = None


def init_langfuse(
    public_key: Optional[str] = None,
    secret_key: Optional[str] = None,
    host: Optional[str] = None,
) -> Optional[Langfuse]:
    """Create the Langfuse client; returns None (tracing stays off) without keys."""
    global _client

    public_key = public_key or os.getenv("LANGFUSE_PUBLIC_KEY")
    secret_key = secret_key or os.getenv("LANGFUSE_SECRET_KEY")
    host = host or os.getenv("LANGFUSE_HOST", LANGFUSE_DEFAULT_HOST)
    if not public_key or not secret_key:
        logger.info("Langfuse keys not set, tracing disabled")
        return None

    try:
        _client = Langfuse(public_key=public_key, secret_key=secret_key, host=host)
    except Exception as e:
        # Tracing must never stop an indexing run
        logger.error("Langfuse initialisation failed, tracing disabled: %s", e)
        _client = None
        return None
    logger.info("Langfuse tracing enabled (%s)", host)
    return _client


def is_langfuse_enabled() -> bool:
    return _client is not None


def shutdown_langfuse() -> None:
    """Flush pending traces and disable tracing."""
    global _client
    if _client is None:
        return
    try:
        _client.flush()
    except Exception as e:
        logger.error("Flushing Langfuse traces failed: %s", e)
    finally:
        _client = None


def trace_function(
    name: Optional[str] = None,
    capture_input: bool = False,
    capture_output: bool = False,
    as_type: str = "span",
):
    """
    Trace the decorated function (sync or async) as a Langfuse span.

    Inputs and outputs are not captured by default: node lists and
    embedding vectors are too large to ship with every span.

    Usage:
        @trace_function(name="hybrid_search")
        async def search(...) -> RankedResults:
            ...
    """
    def decorator(func: Callable) -> Callable:
        traced = observe(
            name=name or func.__name__,
            capture_input=capture_input,
            capture_output=capture_output,
            as_type=as_type,
        )(func)

        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                target = traced if is_langfuse_enabled() else func
                return await target(*args, **kwargs)

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            target = traced if is_langfuse_enabled() else func
            return target(*args, **kwargs)

        return wrapper

    return decorator


def record_event(name: str, metadata: Optional[dict] = None) -> None:
    """Attach ``metadata`` to the current span under ``name``."""
    if not is_langfuse_enabled():
        return
    try:
        get_client().update_current_span(name=name, metadata=metadata)
    except Exception as e:
        logger.error("Recording Langfuse event %s failed: %s", name, e)
