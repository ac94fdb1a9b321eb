"""
Installment Module

Splits a credit card purchase into installments, one transaction per
installment, and tracks which installments have been paid.
"""

from decimal import Decimal, ROUND_DOWN
from datetime import datetime, timezone, date
from typing import Iterable, List, Optional, Union
import uuid

from .credit_cards import CreditCard, CreditCardTransaction
from .currency import Money, Numeric
from .errors import (
    CreditLimitExceededError, InvalidAmountError, InvalidInstallmentError
)

MAX_INSTALLMENTS = 36


def split_amount(total: Money, count: int) -> List[Money]:
    """
    Split ``total`` into ``count`` near-equal parts that sum to it exactly

    Every part is ``total / count`` truncated to the currency precision;
    the remainder is added to the last part.
    """
    base_amount = (total.amount / Decimal(count)).quantize(total.currency.quantum, rounding=ROUND_DOWN)
    base = Money(base_amount, total.currency)
    last = total - base * Decimal(count - 1)
    return [base] * (count - 1) + [last]


class CreditCardInstallmentTracker:
    """Creates installment transactions and answers paid/unpaid queries over them"""

    def __init__(self, max_installments: int = MAX_INSTALLMENTS):
        self.max_installments = max_installments

    def create_installment_purchase(
        self,
        card: CreditCard,
        total_amount: Union[Money, Numeric],
        installment_count: int,
        purchase_date: date,
        description: str = ""
    ) -> List[CreditCardTransaction]:
        """
        Book a purchase as ``installment_count`` transactions

        Installment k is billed by the k-th closing date on or after the
        purchase date and falls due on the card's first due day after that
        closing date. The whole purchase is charged to the card immediately:
        ``card`` is updated in place.

        Raises:
            InvalidInstallmentError: If the count is outside 1..max_installments
            InvalidInputError: If the amount is in another currency than the card
            InvalidAmountError: If the total is not positive or too small to split
            CreditLimitExceededError: If the total exceeds available credit
        """
        if isinstance(installment_count, bool) or not isinstance(installment_count, int):
            raise InvalidInstallmentError(f"Installment count must be an integer, got {installment_count!r}")
        if not 1 <= installment_count <= self.max_installments:
            raise InvalidInstallmentError(
                f"Installment count must be between 1 and {self.max_installments}, got {installment_count}"
            )

        total = Money.coerce(total_amount, card.currency)

        if not total.is_positive():
            raise InvalidAmountError(f"Purchase amount must be positive, got {total.to_string()}")
        if total.amount < card.currency.quantum * installment_count:
            raise InvalidAmountError(
                f"{total.to_string()} is too small to split into {installment_count} installments"
            )
        if total > card.available_credit:
            raise CreditLimitExceededError(
                f"Purchase {total.to_string()} exceeds available credit {card.available_credit.to_string()}"
            )

        now = datetime.now(timezone.utc)
        group_id = str(uuid.uuid4())
        transactions = []
        for number, amount in enumerate(split_amount(total, installment_count), start=1):
            closing = card.installment_closing_date(purchase_date, number)
            transactions.append(CreditCardTransaction(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                credit_card_id=card.id,
                amount=amount,
                description=description,
                purchase_date=purchase_date,
                posting_date=closing,
                due_date=card.due_date_for_closing(closing),
                installments=installment_count,
                current_installment=number,
                purchase_group_id=group_id,
                user_id=card.user_id
            ))

        for transaction in transactions:
            card.book_charge(transaction.amount)
        card.updated_at = now

        return transactions

    def mark_paid(
        self,
        transactions: Iterable[CreditCardTransaction],
        payment_date: Optional[date] = None
    ) -> List[CreditCardTransaction]:
        """Mark unpaid transactions as paid in place; returns the ones that changed"""
        payment_date = payment_date or date.today()
        now = datetime.now(timezone.utc)
        changed = []
        for transaction in transactions:
            if transaction.is_paid:
                continue
            transaction.is_paid = True
            transaction.payment_date = payment_date
            transaction.updated_at = now
            changed.append(transaction)
        return changed

    def unpaid(self, transactions: Iterable[CreditCardTransaction]) -> List[CreditCardTransaction]:
        return sorted(
            (t for t in transactions if not t.is_paid),
            key=lambda t: (t.due_date or t.purchase_date, t.current_installment)
        )

    def next_installments(
        self,
        transactions: Iterable[CreditCardTransaction],
        from_date: Optional[date] = None,
        limit: int = 5
    ) -> List[CreditCardTransaction]:
        """Unpaid installments due on or after ``from_date``, soonest first"""
        from_date = from_date or date.today()
        upcoming = [
            t for t in self.unpaid(transactions)
            if t.is_installment and t.due_date is not None and t.due_date >= from_date
        ]
        return upcoming[:limit]
