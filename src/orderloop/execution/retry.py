"""Retry with exponential backoff for broker calls.

``with_retry`` runs an async operation up to ``1 + max_retries`` times,
sleeping ``min(initial * multiplier ** (attempt - 1), max)`` between
attempts, and reports a ``RetryOutcome``.  A predicate decides, per
error, whether another attempt is worthwhile; the default classifies by
error type, HTTP status, and known message patterns (the broker answers
in Korean, so both languages are listed).

``RetryingGateway`` puts every Broker Gateway call behind the policy.
Order submission is retried only when the broker never received it.
Retries are internal: they are logged but never audited or notified.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Generic, TypeVar, cast

import httpx
import structlog

from orderloop.errors import BrokerRejectionError, BrokerTransientError

if TYPE_CHECKING:
    from orderloop.execution.broker import (
        BrokerGateway,
        BrokerOpenOrder,
        BrokerOrderAck,
        BrokerOrderDetail,
        Holding,
        Quote,
    )
    from orderloop.models import Market, OrderType, Side

logger = structlog.get_logger(__name__)

T = TypeVar("T")

NON_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "invalid",
    "not found",
    "인증",
    "권한",
    "잘못된",
    "없습니다",
)

TRANSIENT_PATTERNS: tuple[str, ...] = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection reset",
    "socket",
    "server error",
    "temporary",
    "rate limit",
    "네트워크",
    "시간 초과",
    "연결",
    "서버",
    "일시적",
    "요청 제한",
)


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters.  Delays are in milliseconds."""

    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    multiplier: float = 2.0

    def delay_ms(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based) before the next one."""
        return min(
            self.initial_delay_ms * self.multiplier ** (attempt - 1),
            self.max_delay_ms,
        )


DEFAULT_RETRY_POLICY = RetryPolicy()
BROKER_RETRY_POLICY = RetryPolicy(
    max_retries=3, initial_delay_ms=2000, max_delay_ms=8000, multiplier=2.0
)


@dataclass
class RetryOutcome(Generic[T]):
    """Result of ``with_retry``.

    Attributes
    ----------
    success : bool
        True if some attempt returned.
    value : T | None
        Return value of the successful attempt.
    error : BaseException | None
        Last error when every attempt failed or retry was refused.
    attempts : int
        Number of attempts made.
    total_delay_ms : float
        Sum of backoff delays slept between attempts.
    """

    success: bool
    value: T | None = None
    error: BaseException | None = None
    attempts: int = 0
    total_delay_ms: float = 0.0


def _matches(message: str, patterns: tuple[str, ...]) -> bool:
    lowered = message.lower()
    return any(p in lowered for p in patterns)


def default_should_retry(error: BaseException, attempt: int) -> bool:
    """Built-in retry classification.

    Typed broker errors decide for themselves.  Otherwise a 4xx or a
    message matching a non-transient pattern is never retried, while a
    5xx, a transport failure, or a message matching a transient pattern
    is.
    """
    if isinstance(error, BrokerRejectionError):
        return False
    if isinstance(error, BrokerTransientError):
        return True
    status_code = getattr(error, "status_code", None)
    if status_code is not None and 400 <= status_code < 500:
        return False
    message = str(error)
    if _matches(message, NON_TRANSIENT_PATTERNS):
        return False
    if _matches(message, TRANSIENT_PATTERNS):
        return True
    if status_code is not None and status_code >= 500:
        return True
    return isinstance(
        error, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)
    )


def submit_should_retry(error: BaseException, attempt: int) -> bool:
    """Retry an order submission only if the broker never received it.

    A timeout or dropped connection after the request went out may have
    placed the order; repeating it could double the position.  Such
    errors surface, and the next tick's duplicate check decides.
    """
    return isinstance(error, BrokerTransientError) and not error.request_sent


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    should_retry: Callable[[BaseException, int], bool] = default_should_retry,
    on_retry: Callable[[BaseException, int, float], None] | None = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> RetryOutcome[T]:
    """Run ``operation`` with exponential backoff.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Backoff parameters.
        should_retry: ``(error, attempt) -> bool``; False stops immediately.
        on_retry: Called with ``(error, attempt, delay_ms)`` before each sleep.
        sleep: Coroutine used to wait, in seconds.

    Returns:
        RetryOutcome with the value or the last error, and the attempt count.
    """
    total_delay_ms = 0.0
    last_error: BaseException | None = None
    max_attempts = policy.max_retries + 1

    for attempt in range(1, max_attempts + 1):
        try:
            value = await operation()
            return RetryOutcome(
                success=True,
                value=value,
                attempts=attempt,
                total_delay_ms=total_delay_ms,
            )
        except Exception as exc:
            last_error = exc
            if attempt >= max_attempts or not should_retry(exc, attempt):
                return RetryOutcome(
                    success=False,
                    error=exc,
                    attempts=attempt,
                    total_delay_ms=total_delay_ms,
                )
            delay_ms = policy.delay_ms(attempt)
            if on_retry is not None:
                on_retry(exc, attempt, delay_ms)
            await sleep(delay_ms / 1000)
            total_delay_ms += delay_ms

    return RetryOutcome(
        success=False,
        error=last_error,
        attempts=max_attempts,
        total_delay_ms=total_delay_ms,
    )


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    name: str,
    policy: RetryPolicy = BROKER_RETRY_POLICY,
    should_retry: Callable[[BaseException, int], bool] = default_should_retry,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Like ``with_retry`` but returns the value or raises the last error.

    Raises:
        Exception: The last error once retries are exhausted or refused.
    """

    def _log_retry(error: BaseException, attempt: int, delay_ms: float) -> None:
        logger.warning(
            "broker_call_retry",
            operation=name,
            attempt=attempt,
            max_attempts=policy.max_retries + 1,
            delay_ms=delay_ms,
            error=str(error),
        )

    outcome = await with_retry(
        operation,
        policy=policy,
        should_retry=should_retry,
        on_retry=_log_retry,
        sleep=sleep,
    )
    if outcome.success:
        if outcome.attempts > 1:
            logger.info(
                "broker_call_recovered", operation=name, attempts=outcome.attempts
            )
        return outcome.value  # type: ignore[return-value]

    event = (
        "broker_call_exhausted"
        if outcome.attempts > policy.max_retries
        else "broker_call_failed"
    )
    logger.error(
        event,
        operation=name,
        attempts=outcome.attempts,
        error=str(outcome.error),
        error_type=type(outcome.error).__name__,
    )
    raise cast(BaseException, outcome.error)


class RetryingGateway:
    """Broker Gateway decorator applying ``call_with_retry`` to every call.

    Args:
        gateway: The gateway doing the actual I/O.
        policy: Backoff policy for every call.
        sleep: Injected for tests.
    """

    def __init__(
        self,
        gateway: BrokerGateway,
        policy: RetryPolicy = BROKER_RETRY_POLICY,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._gateway = gateway
        self._policy = policy
        self._sleep = sleep

    @property
    def inner(self) -> BrokerGateway:
        return self._gateway

    async def _call(
        self,
        name: str,
        operation: Callable[[], Awaitable[T]],
        should_retry: Callable[[BaseException, int], bool] = default_should_retry,
    ) -> T:
        return await call_with_retry(
            operation,
            name,
            policy=self._policy,
            should_retry=should_retry,
            sleep=self._sleep,
        )

    async def submit_order(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: int,
        price: float | None,
        market: Market,
        exchange_code: str | None = None,
        daytime: bool = False,
    ) -> BrokerOrderAck:
        return await self._call(
            "submit_order",
            lambda: self._gateway.submit_order(
                symbol,
                side,
                order_type,
                quantity,
                price,
                market,
                exchange_code=exchange_code,
                daytime=daytime,
            ),
            should_retry=submit_should_retry,
        )

    async def cancel_order(
        self,
        broker_order_id: str,
        symbol: str,
        quantity: int,
        market: Market,
        exchange_code: str | None = None,
        daytime: bool = False,
    ) -> bool:
        return await self._call(
            "cancel_order",
            lambda: self._gateway.cancel_order(
                broker_order_id,
                symbol,
                quantity,
                market,
                exchange_code=exchange_code,
                daytime=daytime,
            ),
        )

    async def get_order_detail(
        self,
        broker_order_id: str,
        symbol: str,
        market: Market,
        exchange_code: str | None = None,
    ) -> BrokerOrderDetail:
        return await self._call(
            "get_order_detail",
            lambda: self._gateway.get_order_detail(
                broker_order_id, symbol, market, exchange_code=exchange_code
            ),
        )

    async def get_holdings(self) -> list[Holding]:
        return await self._call("get_holdings", self._gateway.get_holdings)

    async def get_quote(self, symbol: str, exchange_code: str | None = None) -> Quote:
        return await self._call(
            "get_quote", lambda: self._gateway.get_quote(symbol, exchange_code)
        )

    async def get_quotes(
        self, symbols: list[str], exchange_code: str | None = None
    ) -> dict[str, Quote]:
        return await self._call(
            "get_quotes", lambda: self._gateway.get_quotes(symbols, exchange_code)
        )

    async def get_open_orders(
        self, symbol: str | None = None, exchange_code: str | None = None
    ) -> list[BrokerOpenOrder]:
        return await self._call(
            "get_open_orders",
            lambda: self._gateway.get_open_orders(symbol, exchange_code),
        )

    async def aclose(self) -> None:
        await self._gateway.aclose()
