"""Per-owner batching shared by the execution and reconciliation ticks.

Work is grouped by owner, owners are sorted and windowed with
``(offset, size)`` so several schedulers can shard the owner space, and
each owner runs in its own coroutine with its own gateway session.
Strategies or orders of one owner are handled sequentially inside that
coroutine.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar

import structlog

if TYPE_CHECKING:
    from orderloop.execution.broker import BrokerGateway

logger = structlog.get_logger(__name__)

T = TypeVar("T")

#: Builds a gateway session for one owner.  May raise (e.g. missing
#: credentials), in which case that owner is skipped for the tick.
GatewayFactory = Callable[[str], "BrokerGateway"]


def group_by_owner(items: Iterable[T]) -> dict[str, list[T]]:
    """Group strategies or orders by their ``owner_id``, keeping input order."""
    groups: dict[str, list[T]] = defaultdict(list)
    for item in items:
        groups[item.owner_id].append(item)  # type: ignore[attr-defined]
    return dict(groups)


def owner_window(
    owner_ids: Iterable[str], offset: int = 0, size: int | None = None
) -> list[str]:
    """Sorted owners in ``[offset, offset + size)``; all from ``offset`` when size is 0/None."""
    if offset < 0:
        raise ValueError(f"offset must be >= 0, got {offset}")
    owners = sorted(set(owner_ids))
    if not size or size <= 0:
        return owners[offset:]
    return owners[offset : offset + size]


@asynccontextmanager
async def owner_gateway(
    factory: GatewayFactory, owner_id: str
) -> AsyncIterator[BrokerGateway]:
    """One gateway session per owner, closed when the owner's batch ends."""
    gateway = factory(owner_id)
    try:
        yield gateway
    finally:
        try:
            await gateway.aclose()
        except Exception as exc:
            logger.warning("gateway_close_failed", owner_id=owner_id, error=str(exc))


async def run_per_owner(
    owners: list[str], work: Callable[[str], Awaitable[T]]
) -> dict[str, T | BaseException]:
    """Run ``work(owner)`` for every owner concurrently.

    An exception escaping one owner's coroutine is logged and returned in
    place of its result; the other owners are unaffected.
    """
    results = await asyncio.gather(
        *(work(owner) for owner in owners), return_exceptions=True
    )
    out: dict[str, T | BaseException] = {}
    for owner, result in zip(owners, results):
        if isinstance(result, BaseException):
            logger.error(
                "owner_batch_failed",
                owner_id=owner,
                error=str(result),
                error_type=type(result).__name__,
            )
        out[owner] = result
    return out
