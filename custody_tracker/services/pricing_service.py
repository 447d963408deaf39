from __future__ import annotations

import math
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from models.entities import Tariff
from services.errors import InvalidAmount

CENT = Decimal("0.01")
ZERO = Decimal("0")

_DAYS_PER_UNIT = {
    Tariff.WEEK: 7,
    Tariff.MONTH: 30,
}


def to_money(value) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def round_money(value) -> Decimal:
    return to_money(value).quantize(CENT, rounding=ROUND_HALF_UP)


def check_amount(value, label: str) -> Decimal:
    amount = to_money(value)
    if amount < 0:
        raise InvalidAmount(f"{label} must not be negative (got {amount}).")
    return amount


def day_span(start: date, end: date) -> int:
    return max(1, (end - start).days + 1)


def prorated_units(tariff: Tariff, start: date, end: date) -> int:
    if tariff == Tariff.FLAT:
        return 1
    days = day_span(start, end)
    if tariff == Tariff.DAY:
        return days
    return max(1, math.ceil(days / _DAYS_PER_UNIT[tariff]))


def total_price(tariff: Tariff, unit_price, units: int) -> Decimal:
    price = to_money(unit_price)
    if tariff == Tariff.FLAT:
        return round_money(price)
    return round_money(price * units)


def real_to_date_end(start: date, returned_on: date | None, today: date) -> date:
    if returned_on is not None:
        return returned_on
    return max(start, today)


def contracted_total(terms) -> Decimal:
    """Price of the whole agreed period, start to due date."""
    if terms.tariff == Tariff.FLAT or terms.unit_price == 0:
        return round_money(terms.total_price)
    units = prorated_units(terms.tariff, terms.start_date, terms.due_date)
    return total_price(terms.tariff, terms.unit_price, units)


def real_to_date_total(terms, today: date) -> Decimal:
    """Price of the days actually elapsed, up to today or the return date.

    This is the figure payment prompts use, so nobody is asked to pay for
    days that have not happened yet.
    """
    if terms.tariff == Tariff.FLAT or terms.unit_price == 0:
        return round_money(terms.total_price)
    end = real_to_date_end(terms.start_date, terms.returned_on, today)
    units = prorated_units(terms.tariff, terms.start_date, end)
    return total_price(terms.tariff, terms.unit_price, units)


def settle_deposit(total, already_recovered, already_kept, recover_amount, keep_amount) -> tuple[Decimal, Decimal]:
    total = check_amount(total, "deposit")
    recovered = check_amount(already_recovered, "recovered deposit")
    kept = check_amount(already_kept, "kept deposit")
    recover = check_amount(recover_amount, "recover amount")
    keep = check_amount(keep_amount, "keep amount")

    remaining = max(ZERO, total - recovered - kept)
    applied_recover = min(recover, remaining)
    remaining -= applied_recover
    applied_keep = min(keep, remaining)
    return recovered + applied_recover, kept + applied_keep


def deposit_remaining(total, recovered, kept) -> Decimal:
    return max(ZERO, to_money(total) - to_money(recovered) - to_money(kept))


def is_deposit_settled(total, recovered, kept) -> bool:
    return to_money(recovered) + to_money(kept) >= to_money(total)


def is_partially_recovered(total, recovered) -> bool:
    total = to_money(total)
    recovered = to_money(recovered)
    if total <= 0:
        return False
    return ZERO < recovered < total
