"""ActivityLog: one call per user-visible event.

Each ``record`` emits a structlog event, writes an ``execution_logs`` row,
and optionally notifies the owner.  Audit and notification failures are
logged and never propagate, so a broken side channel cannot stop an
order from being tracked.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import structlog

from orderloop.models import EventKind, ExecutionLogEntry, LogLevel
from orderloop.notify import notify_safely

if TYPE_CHECKING:
    from orderloop.notify import Notifier
    from orderloop.store.sqlite_store import TradingStore

logger = structlog.get_logger(__name__)

_LOG_METHODS = {
    LogLevel.INFO: "info",
    LogLevel.WARN: "warning",
    LogLevel.ERROR: "error",
}


def strategy_link(strategy_id: str | None) -> str | None:
    return f"/strategies/{strategy_id}" if strategy_id else None


class ActivityLog:
    """Audit trail plus owner notification.

    Args:
        store: Repository receiving the audit rows.
        notifier: Notification channel; None disables notifications.
    """

    def __init__(self, store: TradingStore, notifier: Notifier | None = None) -> None:
        self._store = store
        self._notifier = notifier

    async def record(
        self,
        owner_id: str,
        message: str,
        event_kind: EventKind | None = None,
        level: LogLevel = LogLevel.INFO,
        strategy_id: str | None = None,
        notify_title: str | None = None,
        notify_body: str | None = None,
        **metadata: Any,
    ) -> None:
        """Log, audit, and (when ``notify_title`` is given) notify.

        Args:
            owner_id: Owner the event belongs to.
            message: Audit message.
            event_kind: Audit category.
            level: Audit level; also picks the log method.
            strategy_id: Strategy the event concerns, if any.
            notify_title: Notification title; no notification when None.
            notify_body: Notification body; defaults to ``message``.
            **metadata: Extra context for the log line and audit row.
        """
        event = (event_kind.value if event_kind else "activity").lower()
        getattr(logger, _LOG_METHODS[LogLevel(level)])(
            event,
            owner_id=owner_id,
            strategy_id=strategy_id,
            message=message,
            **metadata,
        )

        try:
            self._store.log_event(
                ExecutionLogEntry(
                    owner_id=owner_id,
                    strategy_id=strategy_id,
                    level=LogLevel(level),
                    message=message,
                    event_kind=event_kind,
                    metadata=metadata,
                )
            )
        except Exception as exc:
            logger.error("audit_write_failed", owner_id=owner_id, error=str(exc))

        if notify_title is not None:
            await notify_safely(
                self._notifier,
                owner_id,
                notify_title,
                notify_body or message,
                strategy_link(strategy_id),
            )
