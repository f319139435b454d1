"""Price and total checks applied to every incoming order submission.

Clients cannot self-report prices: the declared total has to match the line
items, and every line item has to match the menu price stored server side.
All money comparisons happen on ``Decimal`` values rounded half-up to two
places, so binary float noise (``0.1 + 0.2``) never decides an outcome.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, List, Optional, Protocol, Sequence

from .schemas import OrderLineItem

logger = logging.getLogger(__name__)

_ITEM_ID = re.compile(r"^(?:m-)?([0-9]+)\Z")
_CENTS = Decimal("0.01")
# menu_items.id is a 32-bit INTEGER; larger ids cannot exist.
MAX_MENU_ID = 2**31 - 1


class MenuPriceSource(Protocol):
    def get_prices_by_ids(self, ids: Sequence[int]) -> Dict[int, Decimal]: ...


@dataclass(frozen=True)
class MenuValidationResult:
    valid: bool
    error: Optional[str] = None
    internal: bool = False


def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round2(value) -> Decimal:
    return to_decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP)


def format_amount(value: Decimal) -> str:
    # 199.00 -> "199", 12.50 -> "12.5"
    return f"{round2(value).normalize():f}"


def _same_amount(left, right) -> bool:
    try:
        return round2(left) == round2(right)
    except InvalidOperation:
        return False


def parse_item_id(raw: str) -> Optional[int]:
    match = _ITEM_ID.match(raw)
    if match is None:
        return None
    return int(match.group(1))


class OrderIntakeValidator:
    def __init__(self, menu: MenuPriceSource):
        self._menu = menu

    @staticmethod
    def items_sum(items: Sequence[OrderLineItem]) -> Decimal:
        return sum(
            (to_decimal(item.priceTHB) * item.quantity for item in items),
            Decimal("0"),
        )

    def validate_total(self, items: Sequence[OrderLineItem], declared_total) -> bool:
        try:
            expected = self.items_sum(items)
        except InvalidOperation:
            return False
        return _same_amount(declared_total, expected)

    def validate_against_menu(self, items: Sequence[OrderLineItem]) -> MenuValidationResult:
        parsed: List[int] = []
        for item in items:
            menu_id = parse_item_id(item.id)
            if menu_id is None:
                return MenuValidationResult(valid=False, error=f"Invalid item ID: {item.id}")
            parsed.append(menu_id)

        lookup = sorted({menu_id for menu_id in parsed if menu_id <= MAX_MENU_ID})
        try:
            prices = self._menu.get_prices_by_ids(lookup) if lookup else {}
        except Exception:
            logger.exception("Menu price lookup failed for ids=%s", lookup)
            return MenuValidationResult(valid=False, error="Menu validation failed", internal=True)

        for item, menu_id in zip(items, parsed):
            menu_price = prices.get(menu_id)
            if menu_price is None:
                return MenuValidationResult(valid=False, error=f"Item not found: {item.id}")
            if not _same_amount(item.priceTHB, menu_price):
                return MenuValidationResult(
                    valid=False,
                    error=f"Price mismatch for {item.id}: expected {format_amount(menu_price)}",
                )
        return MenuValidationResult(valid=True)
