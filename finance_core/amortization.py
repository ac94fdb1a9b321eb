"""
Amortization Module

Pure functions for fixed-rate, fully amortizing loans: the annuity payment,
the interest-first split of a single payment, and schedule generation.
Nothing here holds state, so every function is safe to call from any thread.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .currency import Money, Numeric, to_decimal
from .dates import add_months
from .errors import InvalidInputError

MAX_TERM_MONTHS = 600

_HUNDRED = Decimal('100')
_TWELVE = Decimal('12')


@dataclass
class AmortizationEntry:
    """Single entry in amortization schedule"""
    payment_number: int
    payment_date: date
    total_payment: Money
    principal_payment: Money
    interest_payment: Money
    remaining_balance: Money
    is_paid: bool = False

    def __post_init__(self):
        calculated_payment = self.principal_payment + self.interest_payment
        if abs(calculated_payment.amount - self.total_payment.amount) > Decimal('0.01'):
            raise ValueError(f"Payment amount {self.total_payment.to_string()} does not equal "
                             f"principal {self.principal_payment.to_string()} + "
                             f"interest {self.interest_payment.to_string()}")


@dataclass(frozen=True)
class ScheduleTotals:
    total_paid: Money
    total_interest: Money
    total_principal: Money


def monthly_rate(annual_rate_percent: Numeric) -> Decimal:
    """Convert an annual percentage rate (8.5 for 8.5%) to a monthly fraction"""
    return to_decimal(annual_rate_percent) / _HUNDRED / _TWELVE


def _validate_terms(principal: Decimal, annual_rate: Decimal, term_months: int) -> None:
    if principal <= 0:
        raise InvalidInputError(f"Principal must be positive, got {principal}")
    if isinstance(term_months, bool) or not isinstance(term_months, int):
        raise InvalidInputError(f"Term must be a whole number of months, got {term_months!r}")
    if term_months <= 0:
        raise InvalidInputError(f"Term must be positive, got {term_months}")
    if term_months > MAX_TERM_MONTHS:
        raise InvalidInputError(f"Term cannot exceed {MAX_TERM_MONTHS} months, got {term_months}")
    if annual_rate < 0:
        raise InvalidInputError(f"Interest rate cannot be negative, got {annual_rate}")


def monthly_payment(principal: Numeric, annual_rate_percent: Numeric, term_months: int) -> Decimal:
    """
    Level monthly payment that retires ``principal`` in ``term_months``

    The result is not rounded; callers holding Money round it to the
    currency precision. A zero rate gives exactly ``principal / term_months``.

    Raises:
        InvalidInputError: If principal or term is not positive, the term
            exceeds 600 months or the rate is negative
    """
    principal = to_decimal(principal)
    annual_rate = to_decimal(annual_rate_percent)
    _validate_terms(principal, annual_rate, term_months)

    rate = monthly_rate(annual_rate)
    if rate == 0:
        return principal / Decimal(term_months)

    growth = (1 + rate) ** term_months
    return principal * (rate * growth) / (growth - 1)


def split_payment(
    remaining_balance: Money,
    annual_rate_percent: Numeric,
    payment_amount: Money
) -> Tuple[Money, Money]:
    """
    Split one payment into (principal, interest), interest first

    Interest is one month's interest on the remaining balance, capped at the
    payment. When the payment does not cover the interest the shortfall is
    dropped rather than added to the balance.
    """
    if remaining_balance.currency != payment_amount.currency:
        raise InvalidInputError(
            f"Balance is {remaining_balance.currency.code} but payment is {payment_amount.currency.code}"
        )

    interest = remaining_balance * monthly_rate(annual_rate_percent)
    if interest > payment_amount:
        interest = payment_amount
    if interest.is_negative():
        interest = Money.zero(payment_amount.currency)

    principal = payment_amount - interest
    if principal.is_negative():
        principal = Money.zero(payment_amount.currency)
    return principal, interest


def payoff_amount(balance: Money, annual_rate_percent: Numeric) -> Money:
    """Balance plus one period's interest: the largest payment a loan can absorb"""
    return balance + balance * monthly_rate(annual_rate_percent)


def build_schedule(
    principal: Money,
    annual_rate_percent: Numeric,
    term_months: int,
    start_date: date,
    payment_day: Optional[int] = None
) -> List[AmortizationEntry]:
    """
    Generate the amortization schedule from a loan's static parameters

    Entry k is dated ``k - 1`` calendar months after ``start_date``, on
    ``payment_day`` when given (clamped to short months). The payment is the
    level monthly payment rounded to the currency precision; the last entry
    absorbs the rounding drift so the balance ends at exactly zero and the
    principal column sums to exactly ``principal``. Generation stops early if
    the balance is retired before the term runs out.

    Raises:
        InvalidInputError: On invalid loan terms
    """
    currency = principal.currency
    payment = Money(monthly_payment(principal.amount, annual_rate_percent, term_months), currency)

    schedule = []
    balance = principal
    for payment_number in range(1, term_months + 1):
        principal_part, interest = split_payment(balance, annual_rate_percent, payment)
        total = payment

        if principal_part >= balance or payment_number == term_months:
            principal_part = balance
            total = principal_part + interest
            balance = Money.zero(currency)
        else:
            balance = balance - principal_part

        schedule.append(AmortizationEntry(
            payment_number=payment_number,
            payment_date=add_months(start_date, payment_number - 1, day=payment_day),
            total_payment=total,
            principal_payment=principal_part,
            interest_payment=interest,
            remaining_balance=balance
        ))

        if balance.is_zero():
            break

    return schedule


def schedule_totals(schedule: List[AmortizationEntry]) -> ScheduleTotals:
    """Sum the payment, interest and principal columns of a schedule"""
    if not schedule:
        raise InvalidInputError("Cannot total an empty schedule")

    currency = schedule[0].total_payment.currency
    total_paid = Money.zero(currency)
    total_interest = Money.zero(currency)
    total_principal = Money.zero(currency)
    for entry in schedule:
        total_paid = total_paid + entry.total_payment
        total_interest = total_interest + entry.interest_payment
        total_principal = total_principal + entry.principal_payment

    return ScheduleTotals(
        total_paid=total_paid,
        total_interest=total_interest,
        total_principal=total_principal
    )
