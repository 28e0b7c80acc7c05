"""Lifecycle callbacks for external integrations."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

logger = logging.getLogger(__name__)

HOOK_EVENTS = frozenset({"detection_found", "resume_sent", "resume_verified", "resume_failed"})

HookCallback = Callable[[Mapping[str, Any]], Any]


class HookRegistrationError(RuntimeError):
    """Raised when a callback is registered for an unknown event or is not callable."""


@dataclass(slots=True, frozen=True)
class _Registration:
    name: str
    callback: HookCallback


class HookRegistry:
    """Named callbacks per lifecycle event.

    Each invocation runs under a timeout and inside its own error boundary, so a slow
    or failing registrant never affects the others or the resume cycle.
    """

    def __init__(self, *, timeout: float = 5.0) -> None:
        self._timeout = timeout
        self._hooks: dict[str, list[_Registration]] = {event: [] for event in HOOK_EVENTS}

    def register(self, event: str, callback: HookCallback, *, name: str | None = None) -> None:
        if event not in HOOK_EVENTS:
            known = ", ".join(sorted(HOOK_EVENTS))
            raise HookRegistrationError(f"Unknown hook event '{event}'. Known events: {known}")
        if not callable(callback):
            raise HookRegistrationError(f"Hook for '{event}' must be callable")
        label = name or getattr(callback, "__qualname__", repr(callback))
        self._hooks[event].append(_Registration(name=label, callback=callback))

    def registered(self, event: str) -> list[str]:
        return [registration.name for registration in self._hooks.get(event, [])]

    async def _invoke(self, registration: _Registration, payload: Mapping[str, Any]) -> None:
        callback = registration.callback
        if inspect.iscoroutinefunction(callback):
            await asyncio.wait_for(callback(payload), self._timeout)
            return
        result = await asyncio.wait_for(asyncio.to_thread(callback, payload), self._timeout)
        if inspect.isawaitable(result):
            await asyncio.wait_for(result, self._timeout)

    async def emit(self, event: str, payload: Mapping[str, Any] | None = None) -> int:
        """Run every callback for ``event``; return how many completed successfully."""

        if event not in HOOK_EVENTS:
            raise HookRegistrationError(f"Unknown hook event '{event}'")

        data = dict(payload or {})
        data.setdefault("event", event)
        completed = 0
        for registration in list(self._hooks[event]):
            try:
                await self._invoke(registration, data)
            except asyncio.TimeoutError:
                logger.warning(
                    "Hook timed out", extra={"hook": registration.name, "event": event}
                )
            except Exception:  # isolate registrant failures
                logger.exception(
                    "Hook raised", extra={"hook": registration.name, "event": event}
                )
            else:
                completed += 1
        return completed


__all__ = ["HOOK_EVENTS", "HookCallback", "HookRegistrationError", "HookRegistry"]
