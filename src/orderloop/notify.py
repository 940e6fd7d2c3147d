"""Owner notifications.

Delivery is fire-and-forget: ``notify_safely`` logs any failure and never
lets it reach the engine.
"""

from __future__ import annotations

from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    async def notify(
        self, owner_id: str, title: str, body: str, link: str | None = None
    ) -> None:
        ...


class LogNotifier:
    """Notifier that only writes a log line.  Default when no push channel is wired."""

    async def notify(
        self, owner_id: str, title: str, body: str, link: str | None = None
    ) -> None:
        logger.info(
            "notification", owner_id=owner_id, title=title, body=body, link=link
        )


async def notify_safely(
    notifier: Notifier | None,
    owner_id: str,
    title: str,
    body: str,
    link: str | None = None,
) -> bool:
    """Send a notification, swallowing and logging any failure.

    Returns:
        True if the notifier returned without raising.
    """
    if notifier is None:
        return False
    try:
        await notifier.notify(owner_id, title, body, link)
        return True
    except Exception as exc:
        logger.warning(
            "notification_failed",
            owner_id=owner_id,
            title=title,
            error=str(exc),
        )
        return False
