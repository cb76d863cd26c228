from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

PCT_QUANTUM = Decimal("0.00000001")
LEDGER_QUANTUM = Decimal("0.0000001")
_HUNDRED = Decimal("100")
_ZERO = Decimal("0")


def round_pct(value: Decimal) -> Decimal:
    return value.quantize(PCT_QUANTUM, rounding=ROUND_HALF_UP)


def round_ledger(value: Decimal) -> Decimal:
    return value.quantize(LEDGER_QUANTUM, rounding=ROUND_HALF_UP)


def format_fixed(value: Decimal, places: int) -> str:
    quantum = Decimal(1).scaleb(-places)
    return str(value.quantize(quantum, rounding=ROUND_HALF_UP))


def percentage(part: Decimal, total: Decimal) -> Decimal:
    if total == _ZERO:
        return _ZERO
    return round_pct(part / total * _HUNDRED)


def drift(current_pct: Decimal, target_pct: Decimal) -> Decimal:
    return round_pct(abs(current_pct - target_pct))


def position_values(
    balances: Mapping[str, Decimal], prices: Mapping[str, Decimal]
) -> tuple[dict[str, Decimal], Decimal]:
    values: dict[str, Decimal] = {}
    total = _ZERO
    for symbol, quantity in balances.items():
        value = quantity * prices.get(symbol, _ZERO)
        values[symbol] = value
        total += value
    return values, total
