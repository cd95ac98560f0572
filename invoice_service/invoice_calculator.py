from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, List, Optional, Sequence, Tuple

from .errors import InvoiceValidationError

DEFAULT_TAX_RATE = Decimal("19.00")
_CENT = Decimal("0.01")


@dataclass(frozen=True)
class LineAmounts:
    tax_rate: Decimal
    tax_amount: Decimal
    total_amount: Decimal


@dataclass(frozen=True)
class InvoiceTotals:
    items: Tuple[LineAmounts, ...]
    total_amount: Decimal


class InvoiceCalculator:
    """Derives line item and invoice totals - tax and post-tax amounts.

    Pure and deterministic: nothing here touches the database, so the store
    calls it explicitly on every write instead of trusting caller totals.
    """

    def __init__(self, default_tax_rate: Decimal = DEFAULT_TAX_RATE):
        self.default_tax_rate = Decimal(str(default_tax_rate))

    def calculate_totals(self, items: Sequence[Any]) -> InvoiceTotals:
        """Calculate per-item amounts in order plus the invoice total"""
        if not items:
            raise InvoiceValidationError("At least one item is required")

        lines: List[LineAmounts] = []
        total = Decimal("0.00")
        for index, item in enumerate(items):
            try:
                line = self.calculate_line(item.unit_price, item.quantity, getattr(item, "tax_rate", None))
            except InvoiceValidationError as exc:
                raise InvoiceValidationError(exc.message, {"item_index": index}) from exc
            lines.append(line)
            total += line.total_amount

        return InvoiceTotals(items=tuple(lines), total_amount=self.round_currency(total))

    def calculate_line(self, unit_price: Any, quantity: Any, tax_rate: Optional[Any] = None) -> LineAmounts:
        """Calculate tax and post-tax total for a single line item"""
        if quantity is None or int(quantity) != quantity or int(quantity) < 1:
            raise InvoiceValidationError("Item quantity must be an integer of at least 1")
        if unit_price is None or Decimal(str(unit_price)) < 0:
            raise InvoiceValidationError("Item unit price must be at least 0")

        rate = self.default_tax_rate if tax_rate is None else Decimal(str(tax_rate))
        if rate < 0 or rate > 100:
            raise InvoiceValidationError("Item tax rate must be between 0 and 100")

        subtotal = Decimal(str(unit_price)) * int(quantity)
        tax_amount = self.round_currency(subtotal * rate / 100)

        return LineAmounts(
            tax_rate=rate.quantize(_CENT, rounding=ROUND_HALF_UP),
            tax_amount=tax_amount,
            total_amount=self.round_currency(subtotal + tax_amount),
        )

    def round_currency(self, amount: Decimal) -> Decimal:
        """Round to 2 decimal places for currency"""
        return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def calculate_totals(items: Sequence[Any], default_tax_rate: Decimal = DEFAULT_TAX_RATE) -> InvoiceTotals:
    return InvoiceCalculator(default_tax_rate).calculate_totals(items)
