"""Exception taxonomy for the order engine.

Broker "not found" is not an exception: the gateway reports it as
``BrokerOrderStatus.NOT_FOUND`` and the reconciler maps it to Cancelled.
"""

from __future__ import annotations


class OrderLoopError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(OrderLoopError):
    """Unsupported market, malformed parameters, or missing credentials.

    Never retried.  The scheduler force-ends or skips the strategy.
    """


class BrokerError(OrderLoopError):
    """A broker call failed.

    Parameters
    ----------
    message : str
        Human readable reason, usually the broker's own message.
    status_code : int | None
        HTTP status of the failed call, when there was one.
    code : str | None
        Broker message code (e.g. ``EGW00201``).
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class BrokerTransientError(BrokerError):
    """Network failure, 5xx, or rate limit.  Retried with backoff.

    ``request_sent`` is False only when the broker is known not to have
    acted on the request (connection refused, rate limited, token
    rejected).  Anything else may have reached the matching engine, so
    an order submission failing that way is never repeated.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        code: str | None = None,
        request_sent: bool = True,
    ) -> None:
        super().__init__(message, status_code=status_code, code=code)
        self.request_sent = request_sent


class BrokerRejectionError(BrokerError):
    """4xx or business rejection.  Surfaced and logged, not retried."""


class ReconciliationConflict(OrderLoopError):
    """Local and broker state disagree in a way that needs repair."""

    def __init__(self, order_id: str, local_status: str, broker_view: str) -> None:
        super().__init__(
            f"order {order_id}: local={local_status} broker={broker_view}"
        )
        self.order_id = order_id
        self.local_status = local_status
        self.broker_view = broker_view


class StatusTransitionError(OrderLoopError):
    """A write tried to move an order backwards through its lifecycle."""
