"""Proration calculator: financial delta of a mid-cycle plan change.

Pure arithmetic, no database or gateway access. Money stays in integer
minor units throughout; only the elapsed fraction of the billing period
is a Fraction, and each amount derived from it is rounded half-up to the
nearest minor unit.
"""

import math
from dataclasses import dataclass
from datetime import timedelta
from fractions import Fraction
from typing import Optional

from billing_engine.errors import ProrationError
from billing_engine.timeutils import as_utc

MICROSECOND = timedelta(microseconds=1)


@dataclass(frozen=True)
class Plan:
    amount: int  # minor units per billing period
    currency: str = "usd"
    price_id: Optional[str] = None
    interval: Optional[str] = None


@dataclass(frozen=True)
class ProrationResult:
    elapsed_fraction: Fraction
    unused_credit: int
    new_charge: int
    immediate_charge: int
    credit_applied: int
    next_invoice_amount: int
    currency: str

    def to_dict(self):
        return {
            "elapsed_fraction": float(self.elapsed_fraction),
            "unused_credit": self.unused_credit,
            "new_charge": self.new_charge,
            "immediate_charge": self.immediate_charge,
            "credit_applied": self.credit_applied,
            "next_invoice_amount": self.next_invoice_amount,
            "currency": self.currency,
        }


def round_half_up(value):
    """Round a non-negative Fraction to the nearest integer, ties away from zero."""
    return math.floor(value + Fraction(1, 2))


def elapsed_fraction(period_start, period_end, now):
    """Share of the period already used, clamped to [0, 1]."""
    start, end, at = as_utc(period_start), as_utc(period_end), as_utc(now)
    total = Fraction((end - start) // MICROSECOND)
    if total <= 0:
        raise ProrationError("billing period has non-positive length")
    elapsed = Fraction((at - start) // MICROSECOND) / total
    return min(max(elapsed, Fraction(0)), Fraction(1))


def compute_proration(current_plan, new_plan, period_start, period_end, now):
    """Compute what switching from current_plan to new_plan at `now` costs.

    unused_credit is what remains of the current plan's period, new_charge
    is the new rate for the same remainder. Whichever is larger decides
    whether the customer pays now (immediate_charge) or carries a credit
    (credit_applied). The next invoice is always the new plan's full price.

    Raises ProrationError on mismatched currencies, negative amounts or a
    non-positive period.
    """
    if current_plan.currency.lower() != new_plan.currency.lower():
        raise ProrationError(
            f"currency mismatch: {current_plan.currency} vs {new_plan.currency}"
        )
    if current_plan.amount < 0 or new_plan.amount < 0:
        raise ProrationError("plan amounts must be non-negative")

    fraction = elapsed_fraction(period_start, period_end, now)
    remaining = 1 - fraction

    unused_credit = round_half_up(current_plan.amount * remaining)
    new_charge = round_half_up(new_plan.amount * remaining)

    return ProrationResult(
        elapsed_fraction=fraction,
        unused_credit=unused_credit,
        new_charge=new_charge,
        immediate_charge=max(0, new_charge - unused_credit),
        credit_applied=max(0, unused_credit - new_charge),
        next_invoice_amount=new_plan.amount,
        currency=new_plan.currency.lower(),
    )
