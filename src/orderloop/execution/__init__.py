"""Execution layer: broker contract, retry, order management, and reconciliation.

Public API:
    - BrokerGateway: Async broker session contract for one owner
    - BrokerOrderStatus: Broker-side order status, including the NOT_FOUND sentinel
    - RetryPolicy: Exponential backoff parameters
    - RetryingGateway: Gateway decorator routing every call through the retry engine
    - with_retry: Retry an async operation and report the attempt count
    - OrderManager: Applies submit/cancel intents, persists, audits, notifies
    - OrderReconciler: Converges local order rows to the broker's view
    - ReconcileSummary: Aggregate counts of one reconciliation tick

``StrategyRunner`` lives in ``orderloop.execution.runner``; it is not
re-exported here because it pulls in the concrete broker client.
"""

from orderloop.execution.broker import BrokerGateway, BrokerOrderStatus
from orderloop.execution.order_manager import OrderManager
from orderloop.execution.reconciler import OrderReconciler, ReconcileSummary
from orderloop.execution.retry import RetryingGateway, RetryPolicy, with_retry

__all__ = [
    "BrokerGateway",
    "BrokerOrderStatus",
    "OrderManager",
    "OrderReconciler",
    "ReconcileSummary",
    "RetryPolicy",
    "RetryingGateway",
    "with_retry",
]
