from __future__ import annotations

from decimal import Decimal

from matteflow.core.errors import ValidationError
from matteflow.services.ledger import to_amount


class TaskPricing:
    """Flat per-model price list with a default for models that are not listed."""

    def __init__(self, default_price: Decimal, model_prices: dict[str, Decimal] | None = None) -> None:
        self.default_price = to_amount(default_price)
        self._prices: dict[str, Decimal] = {}
        for model_name, price in (model_prices or {}).items():
            key = model_name.strip().lower()
            if not key:
                raise ValidationError("model price entries need a model name")
            self._prices[key] = to_amount(price)

    def price_for(self, model_name: str | None) -> Decimal:
        if not model_name:
            return self.default_price
        return self._prices.get(model_name.strip().lower(), self.default_price)

    def price_list(self) -> dict[str, Decimal]:
        return dict(self._prices)
