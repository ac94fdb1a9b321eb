"""
Credit Card Manager Module

Service object over stored cards, transactions and statements. Each
mutation runs under the card's lock inside one storage transaction.
"""

from datetime import datetime, timezone, date, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Tuple, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .config import FinanceCoreConfig, get_config
from .credit_cards import CreditCard, CreditCardBrand, CreditCardTransaction
from .currency import Money, Currency, Numeric, to_decimal
from .errors import CreditCardNotFoundError, FinanceCoreError, StatementNotFoundError
from .installments import CreditCardInstallmentTracker
from .locking import KeyedLock
from .logging_config import get_logger, log_action
from .repository import Repository
from .statements import CreditCardStatement, CreditCardStatementBuilder
from .storage import StorageInterface

CARDS_DUE_SOON_DAYS = 5


class CreditCardManager:
    """
    Manages credit cards, installment purchases and statements
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        config: Optional[FinanceCoreConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.tracker = CreditCardInstallmentTracker(self.config.max_installments)
        self.builder = CreditCardStatementBuilder()
        self.cards = Repository(storage, "credit_cards", CreditCard)
        self.transactions = Repository(storage, "credit_card_transactions", CreditCardTransaction)
        self.statements = Repository(storage, "credit_card_statements", CreditCardStatement)
        self._locks = KeyedLock()
        self.logger = get_logger("finance_core.credit_cards")

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               metadata: Dict, user_id: Optional[str]) -> None:
        if self.audit_trail and self.config.enable_audit_logging:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=user_id
            )

    @property
    def default_currency(self) -> Currency:
        return Currency[self.config.default_currency]

    def create_card(
        self,
        name: str,
        last_four_digits: str,
        credit_limit: Union[Money, Numeric],
        due_date_day: int,
        closing_date_day: int,
        brand: CreditCardBrand = CreditCardBrand.OTHER,
        minimum_payment: Union[Money, Numeric] = 0,
        annual_fee: Union[Money, Numeric] = 0,
        interest_rate_annual: Numeric = 0,
        user_id: Optional[str] = None
    ) -> CreditCard:
        """
        Create a card with no balance

        A plain-number limit is in the default currency; the minimum payment
        and annual fee take the limit's currency.

        Raises:
            InvalidInputError: On invalid limit, days or amounts
        """
        limit = credit_limit
        if not isinstance(limit, Money):
            limit = Money(to_decimal(credit_limit), self.default_currency)
        now = datetime.now(timezone.utc)
        card = CreditCard(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            last_four_digits=last_four_digits,
            brand=brand,
            credit_limit=limit,
            due_date_day=due_date_day,
            closing_date_day=closing_date_day,
            minimum_payment=Money.coerce(minimum_payment, limit.currency),
            annual_fee=Money.coerce(annual_fee, limit.currency),
            interest_rate_annual=to_decimal(interest_rate_annual),
            user_id=user_id
        )

        with self.storage.atomic():
            self.cards.append(card)
            self._audit(AuditEventType.CARD_CREATED, "credit_card", card.id, {
                "name": name,
                "brand": brand.value,
                "last_four_digits": last_four_digits,
                "credit_limit": limit.to_string(),
                "closing_date_day": closing_date_day,
                "due_date_day": due_date_day
            }, user_id)

        log_action(
            self.logger, "info", f"Credit card created: {name}",
            user_id=user_id, action="create_card", resource=f"credit_card:{card.id}",
            extra={"credit_limit": limit.to_string()}
        )
        return card

    def get_card(self, card_id: str) -> CreditCard:
        """
        Raises:
            CreditCardNotFoundError: If no card has this id
        """
        card = self.cards.get(card_id)
        if card is None:
            raise CreditCardNotFoundError(f"Credit card {card_id} not found")
        return card

    def list_cards(self, user_id: Optional[str] = None, active_only: bool = False) -> List[CreditCard]:
        cards = self.cards.find(user_id=user_id) if user_id else self.cards.list_all()
        if active_only:
            cards = [card for card in cards if card.is_active]
        cards.sort(key=lambda card: card.created_at)
        return cards

    def create_installment_purchase(
        self,
        card_id: str,
        amount: Union[Money, Numeric],
        installments: int,
        purchase_date: date,
        description: str = ""
    ) -> List[CreditCardTransaction]:
        """
        Book a purchase split into ``installments`` transactions

        Returns:
            The stored transactions, first installment first
        """
        with self._locks.hold(card_id):
            with self.storage.atomic():
                card = self.get_card(card_id)
                try:
                    transactions = self.tracker.create_installment_purchase(
                        card, amount, installments, purchase_date, description
                    )
                except FinanceCoreError as e:
                    log_action(
                        self.logger, "warning", f"Installment purchase rejected: {e}",
                        user_id=card.user_id, action="create_installment_purchase",
                        resource=f"credit_card:{card_id}", extra={"installments": installments}
                    )
                    raise

                for transaction in transactions:
                    self.transactions.append(transaction)
                self.cards.save(card)

                total = transactions[0].amount
                for transaction in transactions[1:]:
                    total = total + transaction.amount
                self._audit(AuditEventType.INSTALLMENT_PURCHASE_CREATED, "credit_card", card.id, {
                    "purchase_group_id": transactions[0].purchase_group_id,
                    "total_amount": total.to_string(),
                    "installments": installments,
                    "purchase_date": purchase_date.isoformat(),
                    "available_credit": card.available_credit.to_string()
                }, card.user_id)

        log_action(
            self.logger, "info", f"Installment purchase created: {installments}x",
            user_id=card.user_id, action="create_installment_purchase",
            resource=f"credit_card:{card_id}",
            extra={"total_amount": total.to_string(), "description": description}
        )
        return transactions

    def list_transactions(
        self,
        card_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None
    ) -> List[CreditCardTransaction]:
        """Card transactions purchased within [start, end], either bound optional"""
        transactions = self.transactions.filter(
            lambda t: (start is None or t.purchase_date >= start) and (end is None or t.purchase_date <= end),
            credit_card_id=card_id
        )
        transactions.sort(key=lambda t: (t.purchase_date, t.purchase_group_id or "", t.current_installment))
        return transactions

    def get_unpaid_transactions(self, card_id: str) -> List[CreditCardTransaction]:
        return self.tracker.unpaid(self.list_transactions(card_id))

    def get_next_installments(self, card_id: str, from_date: Optional[date] = None,
                              limit: int = 5) -> List[CreditCardTransaction]:
        return self.tracker.next_installments(self.list_transactions(card_id), from_date, limit)

    def build_statement(self, card_id: str, billing_date: date) -> CreditCardStatement:
        """Build and store the statement for the cycle ending on ``billing_date``"""
        with self._locks.hold(card_id):
            with self.storage.atomic():
                card = self.get_card(card_id)
                statement = self.builder.build_statement(card, self.list_transactions(card_id), billing_date)
                self.statements.append(statement)
                self._audit(AuditEventType.STATEMENT_GENERATED, "statement", statement.id, {
                    "credit_card_id": card_id,
                    "period_start": statement.period.start_date,
                    "period_end": statement.period.end_date,
                    "total_amount": statement.total_amount.to_string(),
                    "transaction_count": len(statement.transaction_ids)
                }, card.user_id)

        log_action(
            self.logger, "info", "Statement generated",
            user_id=card.user_id, action="build_statement", resource=f"statement:{statement.id}",
            extra={"credit_card_id": card_id, "total_amount": statement.total_amount.to_string()}
        )
        return statement

    def get_statement(self, statement_id: str) -> CreditCardStatement:
        """
        Raises:
            StatementNotFoundError: If no statement has this id
        """
        statement = self.statements.get(statement_id)
        if statement is None:
            raise StatementNotFoundError(f"Statement {statement_id} not found")
        return statement

    def get_statements(self, card_id: str) -> List[CreditCardStatement]:
        statements = self.statements.find(credit_card_id=card_id)
        statements.sort(key=lambda s: s.period.end_date)
        return statements

    def apply_statement_payment(
        self,
        statement_id: str,
        amount: Union[Money, Numeric],
        payment_date: Optional[date] = None
    ) -> Tuple[CreditCardStatement, CreditCard]:
        """
        Pay toward a stored statement

        Once the statement is fully paid its transactions are marked paid.

        Returns:
            Updated statement and card
        """
        card_id = self.get_statement(statement_id).credit_card_id
        with self._locks.hold(card_id):
            with self.storage.atomic():
                statement = self.get_statement(statement_id)
                card = self.get_card(card_id)
                try:
                    statement, card = self.builder.apply_statement_payment(
                        statement, card, amount, payment_date
                    )
                except FinanceCoreError as e:
                    log_action(
                        self.logger, "warning", f"Statement payment rejected: {e}",
                        user_id=card.user_id, action="apply_statement_payment",
                        resource=f"statement:{statement_id}"
                    )
                    raise

                self.statements.save(statement)
                self.cards.save(card)
                self._audit(AuditEventType.STATEMENT_PAYMENT_APPLIED, "statement", statement.id, {
                    "credit_card_id": card_id,
                    "paid_amount": statement.paid_amount.to_string(),
                    "remaining_balance": statement.remaining_balance.to_string(),
                    "is_paid": statement.is_paid
                }, card.user_id)

                if statement.is_paid:
                    self._mark_statement_transactions_paid(statement, card)

        log_action(
            self.logger, "info", "Statement payment applied",
            user_id=card.user_id, action="apply_statement_payment", resource=f"statement:{statement_id}",
            extra={
                "paid_amount": statement.paid_amount.to_string(),
                "card_balance": card.current_balance.to_string(),
                "is_paid": statement.is_paid
            }
        )
        return statement, card

    def _mark_statement_transactions_paid(self, statement: CreditCardStatement, card: CreditCard) -> None:
        transactions = [self.transactions.get(tid) for tid in statement.transaction_ids]
        changed = self.tracker.mark_paid([t for t in transactions if t is not None], statement.paid_date)
        for transaction in changed:
            self.transactions.save(transaction)
        if changed:
            self._audit(AuditEventType.TRANSACTIONS_MARKED_PAID, "credit_card", card.id, {
                "statement_id": statement.id,
                "transaction_ids": [t.id for t in changed]
            }, card.user_id)

    # Portfolio queries

    def _sum(self, amounts: List[Money], currency: Optional[Currency]) -> Money:
        currency = currency or self.default_currency
        total = Money.zero(currency)
        for amount in amounts:
            if amount.currency == currency:
                total = total + amount
        return total

    def get_total_credit_limit(self, user_id: Optional[str] = None,
                               currency: Optional[Currency] = None) -> Money:
        return self._sum([card.credit_limit for card in self.list_cards(user_id)], currency)

    def get_total_available_credit(self, user_id: Optional[str] = None,
                                   currency: Optional[Currency] = None) -> Money:
        return self._sum([card.available_credit for card in self.list_cards(user_id)], currency)

    def get_total_current_balance(self, user_id: Optional[str] = None,
                                  currency: Optional[Currency] = None) -> Money:
        return self._sum([card.current_balance for card in self.list_cards(user_id)], currency)

    def get_total_minimum_payment(self, user_id: Optional[str] = None,
                                  currency: Optional[Currency] = None) -> Money:
        return self._sum([card.minimum_payment for card in self.list_cards(user_id)], currency)

    def calculate_utilization(self, user_id: Optional[str] = None,
                              currency: Optional[Currency] = None) -> Decimal:
        """Used credit as a percentage of total limit across cards"""
        limit = self.get_total_credit_limit(user_id, currency)
        if limit.is_zero():
            return Decimal('0')
        used = self._sum([card.used_credit for card in self.list_cards(user_id)], currency)
        return (used.amount / limit.amount * 100).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    def get_cards_due_soon(self, as_of: Optional[date] = None, days: int = CARDS_DUE_SOON_DAYS,
                           user_id: Optional[str] = None) -> List[CreditCard]:
        """Cards with a balance whose next due date is within ``days`` of ``as_of``"""
        as_of = as_of or date.today()
        horizon = as_of + timedelta(days=days)
        return [
            card for card in self.list_cards(user_id, active_only=True)
            if card.current_balance.is_positive() and card.next_due_date(as_of) <= horizon
        ]
