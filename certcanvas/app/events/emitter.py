from __future__ import annotations

import logging
from typing import Protocol

from certcanvas.app.events.models import PipelineEvent


class PipelineEventEmitter(Protocol):
    """
    Interface for broadcasting pipeline observations.

    Implementations must be:
    - non-blocking (or minimally blocking)
    - fail-safe (emission failures must not break save/verify/export)
    - observational only
    """

    async def emit(self, event: PipelineEvent) -> None:
        ...


class NullEventEmitter:
    """
    A safe no-op emitter.

    Used when no observer is wired, and by tests that do not care
    about events.
    """

    async def emit(self, event: PipelineEvent) -> None:
        return


class LoggingEventEmitter:
    """Writes every event to the service log as a structured record."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("certcanvas.events")

    async def emit(self, event: PipelineEvent) -> None:
        level = (
            logging.WARNING
            if event.event_type.value.endswith("_rejected")
            else logging.INFO
        )
        try:
            self._logger.log(
                level,
                event.event_type.value,
                extra={
                    "event_id": str(event.event_id),
                    "session_id": event.session_id,
                    "details": event.details or {},
                },
            )
        except Exception:
            # Fail-safe: never let observability break the pipeline
            return
