"""
Statement Module

Groups a card's transactions into billing cycles, totals them, and applies
payments against a statement and the card balance.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass, field, replace
from typing import Iterable, List, Optional, Tuple, Union
import uuid

from .credit_cards import CreditCard, CreditCardTransaction
from .currency import Money, Numeric
from .dates import add_months, with_day
from .errors import InvalidAmountError, InvalidInputError, OverpaymentError
from .storage import StorageRecord


@dataclass(frozen=True)
class StatementPeriod:
    """Billing cycle covering the half-open range (start_date, end_date]"""
    start_date: date
    end_date: date

    def __post_init__(self):
        if self.start_date >= self.end_date:
            raise InvalidInputError(f"Period start {self.start_date} must precede end {self.end_date}")

    def contains(self, day: date) -> bool:
        return self.start_date < day <= self.end_date


def billing_cycle(billing_date: date, closing_day: Optional[int] = None) -> StatementPeriod:
    """
    Cycle ending on ``billing_date`` and starting one calendar month earlier

    When ``billing_date`` falls on the card's closing day (clamped to the
    month's length), the previous closing date starts the cycle, which keeps
    consecutive cycles contiguous for cards that close on the 29th-31st.
    Any other billing date simply looks back one month.
    """
    if closing_day is not None and billing_date != with_day(billing_date, closing_day):
        closing_day = None
    return StatementPeriod(start_date=add_months(billing_date, -1, day=closing_day), end_date=billing_date)


@dataclass
class CreditCardStatement(StorageRecord):
    """Statement for one billing cycle of a card"""
    credit_card_id: str
    period: StatementPeriod
    total_amount: Money
    minimum_payment: Money
    due_date: date
    transaction_ids: List[str] = field(default_factory=list)
    is_paid: bool = False
    paid_amount: Money = None
    paid_date: Optional[date] = None
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.paid_amount is None:
            self.paid_amount = Money.zero(self.total_amount.currency)
        if self.paid_amount.is_negative() or self.paid_amount > self.total_amount:
            raise InvalidAmountError(
                f"Paid amount {self.paid_amount.to_string()} outside 0..{self.total_amount.to_string()}"
            )

    @property
    def remaining_balance(self) -> Money:
        return self.total_amount - self.paid_amount


class CreditCardStatementBuilder:
    """Builds statements and settles payments against them"""

    def select_transactions(
        self,
        card: CreditCard,
        transactions: Iterable[CreditCardTransaction],
        period: StatementPeriod
    ) -> List[CreditCardTransaction]:
        """The card's transactions billed inside ``period``"""
        selected = [
            t for t in transactions
            if t.credit_card_id == card.id and period.contains(t.billing_date)
        ]
        selected.sort(key=lambda t: (t.purchase_date, t.current_installment))
        return selected

    def build_statement(
        self,
        card: CreditCard,
        transactions: Iterable[CreditCardTransaction],
        billing_date: date
    ) -> CreditCardStatement:
        """
        Statement for the cycle ending on ``billing_date``

        The total is the sum of the selected transactions. The minimum
        payment comes from the card configuration, capped at the total. The
        due date is the card's first due day after the billing date.
        """
        period = billing_cycle(billing_date, card.closing_date_day)
        selected = self.select_transactions(card, transactions, period)

        total = Money.zero(card.currency)
        for transaction in selected:
            total = total + transaction.amount

        minimum = card.minimum_payment if card.minimum_payment < total else total

        now = datetime.now(timezone.utc)
        return CreditCardStatement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            credit_card_id=card.id,
            period=period,
            total_amount=total,
            minimum_payment=minimum,
            due_date=card.due_date_for_closing(billing_date),
            transaction_ids=[t.id for t in selected],
            is_paid=total.is_zero(),
            user_id=card.user_id
        )

    def apply_statement_payment(
        self,
        statement: CreditCardStatement,
        card: CreditCard,
        amount: Union[Money, Numeric],
        payment_date: Optional[date] = None
    ) -> Tuple[CreditCardStatement, CreditCard]:
        """
        Pay ``amount`` toward a statement

        Returns updated copies of the statement and card; the arguments are
        left untouched, so nothing changes when a payment is rejected.
        Partial payments accumulate in ``paid_amount``.

        Raises:
            InvalidAmountError: If the amount is not positive
            OverpaymentError: If the amount exceeds what is left on the
                statement or the card balance
        """
        if statement.credit_card_id != card.id:
            raise InvalidInputError(f"Statement {statement.id} does not belong to card {card.id}")

        payment = Money.coerce(amount, card.currency)

        if not payment.is_positive():
            raise InvalidAmountError(f"Payment amount must be positive, got {payment.to_string()}")
        if payment > statement.remaining_balance:
            raise OverpaymentError(
                f"Payment {payment.to_string()} exceeds statement balance "
                f"{statement.remaining_balance.to_string()}"
            )
        if payment > card.current_balance:
            raise OverpaymentError(
                f"Payment {payment.to_string()} exceeds card balance {card.current_balance.to_string()}"
            )

        now = datetime.now(timezone.utc)
        paid_on = payment_date or date.today()

        updated_card = replace(card, updated_at=now)
        updated_card.book_payment(payment)

        paid_amount = statement.paid_amount + payment
        updated_statement = replace(
            statement,
            updated_at=now,
            transaction_ids=list(statement.transaction_ids),
            paid_amount=paid_amount,
            is_paid=paid_amount == statement.total_amount,
            paid_date=paid_on
        )
        return updated_statement, updated_card
