from collections.abc import Callable, Coroutine
from contextvars import ContextVar
from functools import wraps
import inspect
import json
import logging
import time
from typing import Any, ParamSpec, TypeVar

from audit.service import get_audit_service
from models.audit import EventSubtype, EventType

logger = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

# Explicit columns on AuditLog; everything else lands in context_data
AUDIT_SCOPE_FIELDS = {"rule_id", "scene_id", "device_id"}

# Each active scope pushes one dict onto the tuple
audit_context: ContextVar[tuple[dict[str, Any], ...]] = ContextVar(
    "audit_context", default=()
)


def get_current_context() -> dict[str, Any]:
    """Merges the dicts of all enclosing scopes, innermost wins."""
    merged: dict[str, Any] = {}
    for context_dict in audit_context.get():
        merged.update(context_dict)
    return merged


def _resolve(arguments: dict[str, Any], path: str) -> Any:
    """Looks up "arg" or "arg.attr" among the bound call arguments."""
    name, _, attr = path.partition(".")
    if name not in arguments:
        return None
    value = arguments[name]
    if attr:
        value = getattr(value, attr, None)
    return value


def audit_scope(
    *,
    event_type: EventType | None = None,
    start_event: EventSubtype | None = None,
    end_event: EventSubtype | None = None,
    error_event: EventSubtype | None = None,
    rule_id: str | None = None,
    scene_id: str | None = None,
    device_id: str | None = None,
    **additional_context,
) -> Callable[
    [Callable[P, Coroutine[Any, Any, T]]], Callable[P, Coroutine[Any, Any, T]]
]:
    """
    Opens an audit scope around an async function, optionally logging lifecycle events.

    Args:
        event_type: EventType used for the lifecycle events
        start_event: logged on entry
        end_event: logged on successful return, with the elapsed time
        error_event: logged when the function raises; the exception propagates
        rule_id: argument name (or "arg.attr") providing the rule id
        scene_id: argument name (or "arg.attr") providing the scene id
        device_id: argument name (or "arg.attr") providing the device id
        **additional_context: argument names or literal values stored in context_data
    """
    if any([start_event, end_event, error_event]) and event_type is None:
        raise ValueError("event_type is required when lifecycle events are specified")

    def decorator(
        func: Callable[P, Coroutine[Any, Any, T]],
    ) -> Callable[P, Coroutine[Any, Any, T]]:
        sig = inspect.signature(func)

        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            bound = sig.bind(*args, **kwargs)
            bound.apply_defaults()

            new_context: dict[str, Any] = {}
            for key, path in (
                ("rule_id", rule_id),
                ("scene_id", scene_id),
                ("device_id", device_id),
            ):
                if path:
                    value = _resolve(bound.arguments, path)
                    if value is not None:
                        new_context[key] = str(value)

            if additional_context:
                extra = {}
                for key, source in additional_context.items():
                    if isinstance(source, str) and source in bound.arguments:
                        extra[key] = bound.arguments[source]
                    else:
                        extra[key] = source
                new_context["context_data"] = json.dumps(extra, default=str)

            token = audit_context.set(audit_context.get() + (new_context,))
            try:
                try:
                    service = get_audit_service()
                except RuntimeError:
                    service = None

                started = time.time()
                if service and start_event and event_type:
                    await service.log_event(
                        event_type, start_event, **get_current_context()
                    )

                try:
                    result: T = await func(*args, **kwargs)
                except Exception as e:
                    if service and error_event and event_type:
                        await service.log_event(
                            event_type,
                            error_event,
                            execution_time_ms=(time.time() - started) * 1000,
                            error_message=str(e),
                            success=False,
                            **get_current_context(),
                        )
                    raise

                if service and end_event and event_type:
                    await service.log_event(
                        event_type,
                        end_event,
                        execution_time_ms=(time.time() - started) * 1000,
                        success=True,
                        **get_current_context(),
                    )
                return result
            finally:
                audit_context.reset(token)

        return async_wrapper

    return decorator


async def log_audit_event(
    event_type: EventType, event_subtype: EventSubtype, **context
) -> None:
    """
    Logs a single audit event, inheriting whatever scope is currently open.

    Scope columns go to their own fields; the rest is folded into context_data.
    """
    try:
        service = get_audit_service()
    except RuntimeError:
        return

    merged = {**get_current_context(), **context}
    explicit = {}
    extra: dict[str, Any] = {}
    for key, value in merged.items():
        if key in AUDIT_SCOPE_FIELDS:
            explicit[key] = None if value is None else str(value)
        elif key in ("success", "error_message", "execution_time_ms"):
            explicit[key] = value
        elif key != "context_data":
            extra[key] = value

    if "context_data" in merged:
        try:
            inherited = json.loads(merged["context_data"])
        except (json.JSONDecodeError, TypeError):
            inherited = None
        if isinstance(inherited, dict):
            extra = {**inherited, **extra}

    try:
        await service.log_event(
            event_type,
            event_subtype,
            context_data=json.dumps(extra, default=str) if extra else None,
            **explicit,
        )
    except Exception:
        logger.exception("Audit logging failed")
