"""
Credit Card Module

Credit card and card transaction records. A purchase split into N
installments is stored as N transactions sharing a purchase group id, each
carrying the closing date of the cycle that bills it and its own due date.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date
from dataclasses import dataclass
from typing import Optional
from enum import Enum
import re

from .currency import Money, Currency, to_decimal
from .dates import add_months, first_day_after, first_day_on_or_after
from .errors import InvalidInputError
from .storage import StorageRecord


class CreditCardBrand(Enum):
    VISA = "visa"
    MASTERCARD = "mastercard"
    AMEX = "amex"
    ELO = "elo"
    HIPERCARD = "hipercard"
    DINERS = "diners"
    OTHER = "other"


class CreditCardStatus(Enum):
    """Derived card status"""
    INACTIVE = "inactive"
    DUE_SOON = "due_soon"        # Balance outstanding and due within 3 days
    BALANCE_DUE = "balance_due"  # Balance above the minimum payment
    CURRENT = "current"


DUE_SOON_STATUS_DAYS = 3


@dataclass
class CreditCard(StorageRecord):
    """
    Credit card account

    ``available_credit`` always equals ``credit_limit - current_balance``.
    """
    name: str
    last_four_digits: str
    brand: CreditCardBrand
    credit_limit: Money
    due_date_day: int
    closing_date_day: int
    minimum_payment: Money
    annual_fee: Money = None
    interest_rate_annual: Decimal = Decimal('0')
    current_balance: Money = None
    available_credit: Money = None
    is_active: bool = True
    user_id: Optional[str] = None

    def __post_init__(self):
        currency = self.credit_limit.currency
        zero = Money.zero(currency)
        self.interest_rate_annual = to_decimal(self.interest_rate_annual)

        if self.annual_fee is None:
            self.annual_fee = zero
        if self.current_balance is None:
            self.current_balance = zero
        if self.available_credit is None:
            self.available_credit = self.credit_limit - self.current_balance

        if not re.fullmatch(r"\d{4}", self.last_four_digits or ""):
            raise InvalidInputError(f"Last four digits must be 4 digits, got {self.last_four_digits!r}")
        for label, day in (("Due date day", self.due_date_day), ("Closing date day", self.closing_date_day)):
            if not 1 <= day <= 31:
                raise InvalidInputError(f"{label} must be between 1 and 31, got {day}")
        for label, amount in (("Minimum payment", self.minimum_payment), ("Annual fee", self.annual_fee),
                              ("Current balance", self.current_balance),
                              ("Available credit", self.available_credit)):
            if amount.currency != currency:
                raise InvalidInputError(f"{label} currency must match credit limit currency")
        if not self.credit_limit.is_positive():
            raise InvalidInputError(f"Credit limit must be positive, got {self.credit_limit.to_string()}")
        if self.minimum_payment.is_negative() or self.annual_fee.is_negative():
            raise InvalidInputError("Minimum payment and annual fee cannot be negative")
        if self.interest_rate_annual < 0:
            raise InvalidInputError(f"Interest rate cannot be negative, got {self.interest_rate_annual}")
        if self.current_balance.is_negative():
            raise InvalidInputError(f"Balance cannot be negative, got {self.current_balance.to_string()}")
        if self.available_credit != self.credit_limit - self.current_balance:
            raise InvalidInputError(
                f"Available credit {self.available_credit.to_string()} does not equal "
                f"limit {self.credit_limit.to_string()} - balance {self.current_balance.to_string()}"
            )

    @property
    def currency(self) -> Currency:
        return self.credit_limit.currency

    @property
    def used_credit(self) -> Money:
        return self.credit_limit - self.available_credit

    @property
    def utilization_percentage(self) -> Decimal:
        used = self.used_credit.amount / self.credit_limit.amount * 100
        return used.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    def closing_date_on_or_after(self, day: date) -> date:
        """Closing date of the billing cycle a purchase made on ``day`` falls in"""
        return first_day_on_or_after(day, self.closing_date_day)

    def due_date_for_closing(self, closing: date) -> date:
        """First due date strictly after a cycle's closing date"""
        return first_day_after(closing, self.due_date_day)

    def next_closing_date(self, as_of: Optional[date] = None) -> date:
        return self.closing_date_on_or_after(as_of or date.today())

    def next_due_date(self, as_of: Optional[date] = None) -> date:
        return first_day_on_or_after(as_of or date.today(), self.due_date_day)

    def installment_closing_date(self, purchase_date: date, installment_number: int) -> date:
        """Closing date of the cycle billing installment ``installment_number`` (1-based)"""
        first_closing = self.closing_date_on_or_after(purchase_date)
        return add_months(first_closing, installment_number - 1, day=self.closing_date_day)

    def book_charge(self, amount: Money) -> None:
        """Raise the balance and lower available credit by ``amount``"""
        self.current_balance = self.current_balance + amount
        self.available_credit = self.available_credit - amount

    def book_payment(self, amount: Money) -> None:
        """Lower the balance and restore available credit by ``amount``"""
        self.current_balance = self.current_balance - amount
        self.available_credit = self.available_credit + amount

    def status(self, as_of: Optional[date] = None) -> CreditCardStatus:
        as_of = as_of or date.today()
        if not self.is_active:
            return CreditCardStatus.INACTIVE
        days_until_due = (self.next_due_date(as_of) - as_of).days
        if days_until_due <= DUE_SOON_STATUS_DAYS and self.current_balance.is_positive():
            return CreditCardStatus.DUE_SOON
        if self.current_balance > self.minimum_payment:
            return CreditCardStatus.BALANCE_DUE
        return CreditCardStatus.CURRENT


@dataclass
class CreditCardTransaction(StorageRecord):
    """One charge on a card: a plain purchase or one installment of a split purchase"""
    credit_card_id: str
    amount: Money
    description: str
    purchase_date: date
    posting_date: Optional[date] = None   # Closing date of the cycle that bills this charge
    due_date: Optional[date] = None
    installments: int = 1
    current_installment: int = 1
    purchase_group_id: Optional[str] = None
    is_paid: bool = False
    payment_date: Optional[date] = None
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.installments < 1:
            raise InvalidInputError(f"Installments must be at least 1, got {self.installments}")
        if not 1 <= self.current_installment <= self.installments:
            raise InvalidInputError(
                f"Current installment {self.current_installment} outside 1..{self.installments}"
            )
        if not self.amount.is_positive():
            raise InvalidInputError(f"Transaction amount must be positive, got {self.amount.to_string()}")

    @property
    def is_installment(self) -> bool:
        return self.installments > 1

    @property
    def installment_text(self) -> str:
        if self.is_installment:
            return f"{self.current_installment}/{self.installments}"
        return ""

    @property
    def billing_date(self) -> date:
        """Date used for statement membership"""
        return self.posting_date or self.purchase_date

    def is_overdue(self, as_of: Optional[date] = None) -> bool:
        if self.is_paid or self.due_date is None:
            return False
        return (as_of or date.today()) > self.due_date

    def days_until_due(self, as_of: Optional[date] = None) -> Optional[int]:
        if self.due_date is None:
            return None
        return (self.due_date - (as_of or date.today())).days
