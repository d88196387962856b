"""
Idempotent webhook event dispatch.

Routes each verified event to the handler registered for its kind, at most
once per event id:
- Already recorded -> return the cached outcome, handler not invoked
- Handler succeeds -> record (INSERT OR IGNORE, first writer wins)
- Handler fails -> HandlerFailure, nothing recorded, provider redelivers
"""

import logging
from collections.abc import Awaitable, Callable

from pydantic import BaseModel

from minuteledger.models.events import (
    EventKind,
    EventOutcome,
    ProcessedEventRecord,
    WebhookEvent,
)
from minuteledger.observability.metrics import track_webhook_event
from minuteledger.storage.database import LedgerDatabase

logger = logging.getLogger(__name__)

# Handlers return a short detail string (applied, stale, skipped, linked)
EventHandler = Callable[[WebhookEvent], Awaitable[str]]


class HandlerFailure(Exception):
    """Handler could not apply an event; it stays unprocessed for redelivery."""

    pass


class DispatchResult(BaseModel):
    """Outcome of dispatching one event."""

    event_id: str
    kind: EventKind
    outcome: EventOutcome
    detail: str = ""
    duplicate: bool = False


class EventDispatcher:
    """
    Static kind -> handler registry with a dedup log.

    Built once at startup; holds no per-event state.
    """

    def __init__(self, db: LedgerDatabase, handlers: dict[EventKind, EventHandler]):
        """
        Initialize dispatcher.

        Args:
            db: Ledger database (processed-event log)
            handlers: Handler per event kind (UNKNOWN is never registered)
        """
        self.db = db
        self._handlers = dict(handlers)

    @property
    def registered_kinds(self) -> set[EventKind]:
        return set(self._handlers)

    async def dispatch(self, event: WebhookEvent) -> DispatchResult:
        """
        Dispatch a verified event exactly once per event id.

        Args:
            event: Verified, decoded event

        Returns:
            DispatchResult: Outcome (cached for redeliveries)

        Raises:
            HandlerFailure: If the handler or the dedup log write fails
        """
        try:
            existing = await self.db.get_processed_event(event.event_id)
        except Exception as e:
            track_webhook_event(event.kind.value, "failure")
            raise HandlerFailure(f"Failed to read processed event log: {e}") from e

        if existing is not None:
            logger.info(
                "Duplicate webhook event, returning cached outcome",
                extra={
                    "event_id": event.event_id,
                    "event_type": event.provider_type,
                    "outcome": existing.outcome.value,
                },
            )
            track_webhook_event(event.kind.value, "duplicate")
            return DispatchResult(
                event_id=existing.event_id,
                kind=existing.kind,
                outcome=existing.outcome,
                detail=existing.detail,
                duplicate=True,
            )

        handler = self._handlers.get(event.kind)
        if handler is None:
            logger.warning(
                "Unhandled webhook event type",
                extra={"event_id": event.event_id, "event_type": event.provider_type},
            )
            outcome = EventOutcome.IGNORED
            detail = f"Unhandled event: {event.provider_type}"
        else:
            logger.info(
                "Processing webhook event",
                extra={"event_id": event.event_id, "event_type": event.provider_type},
            )
            try:
                detail = await handler(event)
            except HandlerFailure:
                track_webhook_event(event.kind.value, "failure")
                raise
            except Exception as e:
                logger.error(
                    "Webhook event processing failed",
                    extra={
                        "event_id": event.event_id,
                        "event_type": event.provider_type,
                        "error": str(e),
                    },
                )
                track_webhook_event(event.kind.value, "failure")
                raise HandlerFailure(f"Event processing failed: {e}") from e
            outcome = EventOutcome.SUCCESS

        record = ProcessedEventRecord(
            event_id=event.event_id,
            kind=event.kind,
            outcome=outcome,
            detail=detail,
        )
        try:
            written = await self.db.record_processed_event(record)
        except Exception as e:
            track_webhook_event(event.kind.value, "failure")
            raise HandlerFailure(f"Failed to record processed event: {e}") from e

        if not written:
            # A concurrent delivery of the same event recorded first
            logger.info(
                "Processed event already recorded by concurrent delivery",
                extra={"event_id": event.event_id},
            )

        track_webhook_event(event.kind.value, outcome.value)
        logger.info(
            "Webhook event processed",
            extra={
                "event_id": event.event_id,
                "event_type": event.provider_type,
                "outcome": outcome.value,
                "detail": detail,
            },
        )

        return DispatchResult(
            event_id=event.event_id,
            kind=event.kind,
            outcome=outcome,
            detail=detail,
        )
