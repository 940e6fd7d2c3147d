"""Strategy executors and their parameter variants.

Public API:
    - LooLocExecutor: Opening-auction buy plus closing-auction buy/sell
    - SplitOrderExecutor: Single-day buy ladder with one standing target sell
    - LooLocParams / SplitOrderParams: Parameter variants
    - parse_parameters: Validate stored parameters into the matching variant
"""

from orderloop.strategies.loo_loc import LooLocExecutor
from orderloop.strategies.params import LooLocParams, SplitOrderParams, parse_parameters
from orderloop.strategies.split_order import SplitOrderExecutor

__all__ = [
    "LooLocExecutor",
    "LooLocParams",
    "SplitOrderExecutor",
    "SplitOrderParams",
    "parse_parameters",
]
