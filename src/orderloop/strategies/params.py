"""Strategy parameter variants, validated at the storage boundary.

Parameters are stored as loosely-typed JSON (camelCase keys, as written
by the dashboard).  ``parse_parameters`` turns the stored dict into the
variant matching the strategy type or raises ConfigurationError; nothing
downstream reads the raw dict.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from orderloop.errors import ConfigurationError
from orderloop.models import Distribution, Side, StepUnit, StrategyType
from orderloop.pricing import weighted_average_cost

ExchangeCode = Literal["NASD", "NYSE", "AMEX", "KRX"]


class PositionParams(BaseModel):
    """Running position fields shared by both variants."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )

    target_return_rate: float = Field(default=10.0, gt=0)
    current_avg_cost: float = Field(default=0.0, ge=0)
    current_qty: int = Field(default=0, ge=0)
    exchange_code: ExchangeCode = "NASD"
    processed_order_ids: list[str] = Field(default_factory=list)

    def fold_fill(self, order_id: str, fill_price: float, fill_qty: int):
        """Return a copy with the fill folded into (avg cost, qty).

        A fill whose order id was already processed is ignored.
        """
        if order_id in self.processed_order_ids:
            return self
        cost, qty = weighted_average_cost(
            self.current_avg_cost, self.current_qty, fill_price, fill_qty
        )
        return self.model_copy(
            update={
                "current_avg_cost": cost,
                "current_qty": qty,
                "processed_order_ids": [*self.processed_order_ids, order_id],
            }
        )

    def fold_sell(self, order_id: str, fill_qty: int):
        """Return a copy with a filled sell taken off the position.

        The average cost is kept while shares remain and reset once the
        position is flat.  An already processed order id is ignored.
        """
        if order_id in self.processed_order_ids:
            return self
        qty = max(self.current_qty - fill_qty, 0)
        return self.model_copy(
            update={
                "current_avg_cost": self.current_avg_cost if qty else 0.0,
                "current_qty": qty,
                "processed_order_ids": [*self.processed_order_ids, order_id],
            }
        )

    def apply_fill(self, order_id: str, side: Side, fill_price: float, fill_qty: int):
        if side == Side.SELL:
            return self.fold_sell(order_id, fill_qty)
        return self.fold_fill(order_id, fill_price, fill_qty)

    def to_storage(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class LooLocParams(PositionParams):
    """Opening-auction buy plus closing-auction buy/sell."""

    kind: Literal["LOO_LOC"] = "LOO_LOC"
    loo_enabled: bool = True
    loo_qty: int = Field(default=1, ge=0)
    loc_buy_enabled: bool = True
    loc_buy_qty: int = Field(default=1, ge=0)


class SplitOrderParams(PositionParams):
    """Single-day buy ladder with one standing target sell."""

    kind: Literal["SPLIT_ORDER"] = "SPLIT_ORDER"
    base_price: float = Field(gt=0)
    decline_value: float = Field(ge=0)
    decline_unit: StepUnit = StepUnit.USD
    split_count: int = Field(ge=1, le=100)
    distribution_type: Distribution = Distribution.EQUAL
    total_amount: int = Field(gt=0, description="Total shares across the ladder")
    side: Side = Side.BUY
    is_daytime: bool = False


StrategyParams = LooLocParams | SplitOrderParams

_VARIANTS: dict[StrategyType, type[PositionParams]] = {
    StrategyType.LOO_LOC: LooLocParams,
    StrategyType.SPLIT_ORDER: SplitOrderParams,
}


def parse_parameters(strategy_type: StrategyType | str, raw: dict) -> StrategyParams:
    """Validate stored parameters into the variant for ``strategy_type``.

    Raises:
        ConfigurationError: Unknown type, or parameters that do not match it.
    """
    try:
        variant = _VARIANTS[StrategyType(strategy_type)]
    except (KeyError, ValueError) as exc:
        raise ConfigurationError(f"unknown strategy type {strategy_type!r}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError("strategy parameters must be a JSON object")
    payload = {k: v for k, v in raw.items() if k != "kind"}
    try:
        return variant.model_validate(payload)
    except ValidationError as exc:
        fields = ", ".join(
            ".".join(str(p) for p in err["loc"]) for err in exc.errors()
        )
        raise ConfigurationError(
            f"invalid {StrategyType(strategy_type).value} parameters: {fields}"
        ) from exc
