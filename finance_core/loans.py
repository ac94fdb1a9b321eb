"""
Loan Module

Handles loan creation, payment intake (scheduled, extra principal, custom),
interest-first allocation, status derivation and the portfolio queries the
presentation layer needs.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass
from typing import Dict, List, Optional, Union
from enum import Enum
import uuid

from .amortization import (
    AmortizationEntry, build_schedule, monthly_payment, monthly_rate,
    payoff_amount, split_payment, MAX_TERM_MONTHS
)
from .audit import AuditTrail, AuditEventType
from .config import FinanceCoreConfig, get_config
from .currency import Money, Currency, Numeric, to_decimal
from .dates import add_months
from .errors import (
    FinanceCoreError, InvalidAmountError, InvalidInputError, InvalidStateError,
    LoanNotActiveError, LoanNotFoundError, OverpaymentError
)
from .locking import KeyedLock
from .logging_config import get_logger, log_action
from .repository import Repository
from .storage import StorageInterface, StorageRecord


class LoanType(Enum):
    PERSONAL = "personal"
    HOME = "home"
    AUTO = "auto"
    STUDENT = "student"
    BUSINESS = "business"
    CONSOLIDATION = "consolidation"
    OTHER = "other"


class LoanStatus(Enum):
    """Derived loan status"""
    ACTIVE = "active"        # Balance outstanding, payments up to date
    OVERDUE = "overdue"      # Next scheduled payment date has passed
    PAID_OFF = "paid_off"    # Balance is exactly zero
    INACTIVE = "inactive"    # Explicitly deactivated


class LoanPaymentType(Enum):
    SCHEDULED = "scheduled"
    EXTRA_PRINCIPAL = "extra_principal"
    CUSTOM = "custom"


@dataclass
class Loan(StorageRecord):
    """Fixed-rate, fully amortizing loan"""
    name: str
    loan_type: LoanType
    principal_amount: Money
    interest_rate_annual: Decimal       # Percent, e.g. 8.5 for 8.5%
    term_months: int
    start_date: date
    payment_day: int
    current_balance: Money = None
    bank_name: Optional[str] = None
    purpose: Optional[str] = None
    user_id: Optional[str] = None
    is_active: bool = True
    payments_made: int = 0
    last_payment_date: Optional[date] = None

    def __post_init__(self):
        self.interest_rate_annual = to_decimal(self.interest_rate_annual)

        if not self.principal_amount.is_positive():
            raise InvalidInputError(f"Principal must be positive, got {self.principal_amount.to_string()}")
        if self.interest_rate_annual < 0:
            raise InvalidInputError(f"Interest rate cannot be negative, got {self.interest_rate_annual}")
        if not 1 <= self.term_months <= MAX_TERM_MONTHS:
            raise InvalidInputError(f"Term must be between 1 and {MAX_TERM_MONTHS} months, got {self.term_months}")
        if not 1 <= self.payment_day <= 31:
            raise InvalidInputError(f"Payment day must be between 1 and 31, got {self.payment_day}")

        if self.current_balance is None:
            self.current_balance = self.principal_amount

        if self.current_balance.currency != self.principal_amount.currency:
            raise InvalidInputError("Balance currency must match principal currency")
        if self.current_balance.is_negative() or self.current_balance > self.principal_amount:
            raise InvalidInputError(
                f"Balance {self.current_balance.to_string()} outside 0..{self.principal_amount.to_string()}"
            )

    @property
    def currency(self) -> Currency:
        return self.principal_amount.currency

    @property
    def monthly_rate(self) -> Decimal:
        return monthly_rate(self.interest_rate_annual)

    @property
    def monthly_payment(self) -> Money:
        """Level monthly payment rounded to the currency precision"""
        return Money(
            monthly_payment(self.principal_amount.amount, self.interest_rate_annual, self.term_months),
            self.currency
        )

    @property
    def end_date(self) -> date:
        return add_months(self.start_date, self.term_months)

    @property
    def total_interest(self) -> Money:
        """Interest paid over the full term at the level payment"""
        return self.monthly_payment * Decimal(self.term_months) - self.principal_amount

    @property
    def progress_percentage(self) -> Decimal:
        paid = self.principal_amount.amount - self.current_balance.amount
        return (paid / self.principal_amount.amount * 100).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    @property
    def remaining_payments(self) -> int:
        return max(0, self.term_months - self.payments_made)

    @property
    def is_paid_off(self) -> bool:
        return self.current_balance.is_zero()

    @property
    def next_payment_date(self) -> Optional[date]:
        """Schedule date of the next unpaid installment, None once paid off"""
        if self.is_paid_off:
            return None
        return add_months(self.start_date, self.payments_made, day=self.payment_day)

    def status(self, as_of: Optional[date] = None) -> LoanStatus:
        if not self.is_active:
            return LoanStatus.INACTIVE
        if self.is_paid_off:
            return LoanStatus.PAID_OFF
        if (as_of or date.today()) > self.next_payment_date:
            return LoanStatus.OVERDUE
        return LoanStatus.ACTIVE


@dataclass
class LoanPayment(StorageRecord):
    """Record of a loan payment. Written once to the append-only payment ledger."""
    loan_id: str
    amount: Money
    principal_portion: Money
    interest_portion: Money
    payment_date: date
    method: str
    payment_type: LoanPaymentType
    notes: Optional[str] = None
    user_id: Optional[str] = None

    def __post_init__(self):
        if self.principal_portion.is_negative() or self.interest_portion.is_negative():
            raise InvalidAmountError("Payment portions cannot be negative")
        if self.principal_portion + self.interest_portion != self.amount:
            raise InvalidAmountError(
                f"Payment amount {self.amount.to_string()} does not equal "
                f"principal {self.principal_portion.to_string()} + "
                f"interest {self.interest_portion.to_string()}"
            )


class LoanPaymentProcessor:
    """
    Turns a payment request into a LoanPayment and applies it to the loan

    The processor mutates the loan it is given and performs no I/O; callers
    are responsible for serializing access to a loan and persisting both the
    loan and the returned payment.
    """

    def __init__(self, default_method: str = "bank_transfer"):
        self.default_method = default_method

    def resolve_amount(
        self,
        loan: Loan,
        payment_type: LoanPaymentType,
        amount: Optional[Union[Money, Numeric]] = None
    ) -> Money:
        """
        Work out the total being paid for a payment type

        Scheduled payments ignore ``amount`` and pay the monthly payment,
        capped so the final one retires the loan exactly. Extra principal
        payments add ``amount`` on top of the monthly payment. Custom
        payments pay ``amount`` as given.
        """
        payoff = payoff_amount(loan.current_balance, loan.interest_rate_annual)

        if payment_type == LoanPaymentType.SCHEDULED:
            total = loan.monthly_payment
            if total > payoff:
                total = payoff
        elif payment_type == LoanPaymentType.EXTRA_PRINCIPAL:
            if amount is None:
                raise InvalidAmountError("Extra principal payments require an extra amount")
            extra = Money.coerce(amount, loan.currency)
            if not extra.is_positive():
                raise InvalidAmountError(f"Extra amount must be positive, got {extra.to_string()}")
            total = loan.monthly_payment + extra
        elif payment_type == LoanPaymentType.CUSTOM:
            if amount is None:
                raise InvalidAmountError("Custom payments require an amount")
            total = Money.coerce(amount, loan.currency)
        else:
            raise InvalidInputError(f"Unsupported payment type: {payment_type}")

        if not total.is_positive():
            raise InvalidAmountError(f"Payment amount must be positive, got {total.to_string()}")
        if total > payoff:
            raise OverpaymentError(
                f"Payment {total.to_string()} exceeds payoff amount {payoff.to_string()}"
            )
        return total

    def apply_payment(
        self,
        loan: Loan,
        payment_type: LoanPaymentType,
        amount: Optional[Union[Money, Numeric]] = None,
        payment_date: Optional[date] = None,
        method: Optional[str] = None,
        notes: Optional[str] = None
    ) -> LoanPayment:
        """
        Apply one payment to a loan

        Raises:
            LoanNotActiveError: If the loan is deactivated or paid off
            InvalidAmountError: If the amount is missing or not positive
            OverpaymentError: If the amount exceeds the payoff amount
        """
        if not loan.is_active:
            raise LoanNotActiveError(f"Loan {loan.id} is inactive")
        if loan.is_paid_off:
            raise LoanNotActiveError(f"Loan {loan.id} is already paid off")

        total = self.resolve_amount(loan, payment_type, amount)
        principal, interest = split_payment(loan.current_balance, loan.interest_rate_annual, total)

        new_balance = loan.current_balance - principal
        if new_balance.is_negative():
            new_balance = Money.zero(loan.currency)

        now = datetime.now(timezone.utc)
        payment = LoanPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            amount=total,
            principal_portion=principal,
            interest_portion=interest,
            payment_date=payment_date or date.today(),
            method=method or self.default_method,
            payment_type=payment_type,
            notes=notes,
            user_id=loan.user_id
        )

        loan.current_balance = new_balance
        loan.payments_made += 1
        loan.last_payment_date = payment.payment_date
        loan.updated_at = now
        return payment


class LoanManager:
    """
    Manages loans from creation through payoff
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
        self.processor = LoanPaymentProcessor(self.config.default_payment_method)
        self.loans = Repository(storage, "loans", Loan)
        self.payments = Repository(storage, "loan_payments", LoanPayment)
        self._locks = KeyedLock()
        self.logger = get_logger("finance_core.loans")

    def _audit(self, event_type: AuditEventType, loan: Loan, metadata: Dict) -> None:
        if self.audit_trail and self.config.enable_audit_logging:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                metadata=metadata,
                user_id=loan.user_id
            )

    @property
    def default_currency(self) -> Currency:
        return Currency[self.config.default_currency]

    def create_loan(
        self,
        name: str,
        principal_amount: Union[Money, Numeric],
        interest_rate_annual: Numeric,
        term_months: int,
        start_date: date,
        payment_day: Optional[int] = None,
        loan_type: LoanType = LoanType.PERSONAL,
        bank_name: Optional[str] = None,
        purpose: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Create a new loan with its balance equal to the principal

        Args:
            name: Display name
            principal_amount: Money, or a number in the default currency
            interest_rate_annual: Annual rate in percent
            term_months: Number of monthly payments
            start_date: Date of the first scheduled payment
            payment_day: Day of month payments fall on, defaults to start_date's day
            loan_type: Kind of loan
            bank_name: Lender
            purpose: Free text
            user_id: Owner

        Returns:
            Created Loan object

        Raises:
            InvalidInputError: On invalid principal, rate, term or payment day
        """
        if isinstance(principal_amount, Money):
            principal = principal_amount
        else:
            principal = Money(to_decimal(principal_amount), self.default_currency)

        if isinstance(term_months, int) and term_months > self.config.max_term_months:
            raise InvalidInputError(
                f"Term cannot exceed {self.config.max_term_months} months, got {term_months}"
            )
        # Validates principal, rate and term the same way schedules do
        monthly_payment(principal.amount, interest_rate_annual, term_months)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            loan_type=loan_type,
            principal_amount=principal,
            interest_rate_annual=to_decimal(interest_rate_annual),
            term_months=term_months,
            start_date=start_date,
            payment_day=start_date.day if payment_day is None else payment_day,
            bank_name=bank_name,
            purpose=purpose,
            user_id=user_id
        )

        with self.storage.atomic():
            self.loans.append(loan)
            self._audit(AuditEventType.LOAN_CREATED, loan, {
                "name": name,
                "loan_type": loan_type.value,
                "principal_amount": principal.to_string(),
                "interest_rate_annual": str(loan.interest_rate_annual),
                "term_months": term_months,
                "start_date": start_date.isoformat(),
                "monthly_payment": loan.monthly_payment.to_string()
            })

        log_action(
            self.logger, "info", f"Loan created: {name}",
            user_id=user_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={"principal": principal.to_string(), "term_months": term_months}
        )
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        """
        Raises:
            LoanNotFoundError: If no loan has this id
        """
        loan = self.loans.get(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def list_loans(self, user_id: Optional[str] = None) -> List[Loan]:
        loans = self.loans.find(user_id=user_id) if user_id else self.loans.list_all()
        loans.sort(key=lambda loan: (loan.start_date, loan.created_at))
        return loans

    def apply_loan_payment(
        self,
        loan_id: str,
        payment_type: LoanPaymentType,
        amount: Optional[Union[Money, Numeric]] = None,
        payment_date: Optional[date] = None,
        method: Optional[str] = None,
        notes: Optional[str] = None
    ) -> LoanPayment:
        """
        Apply a payment to a stored loan and record it in the payment ledger

        Payments against the same loan are serialized; the loan update and
        the ledger entry are written in one storage transaction.

        Returns:
            The recorded LoanPayment
        """
        with self._locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.get_loan(loan_id)
                try:
                    payment = self.processor.apply_payment(
                        loan, payment_type, amount=amount, payment_date=payment_date,
                        method=method, notes=notes
                    )
                except FinanceCoreError as e:
                    log_action(
                        self.logger, "warning", f"Loan payment rejected: {e}",
                        user_id=loan.user_id, action="apply_loan_payment",
                        resource=f"loan:{loan_id}", extra={"payment_type": payment_type.value}
                    )
                    raise

                self.payments.append(payment)
                self.loans.save(loan)

                self._audit(AuditEventType.LOAN_PAYMENT_APPLIED, loan, {
                    "payment_id": payment.id,
                    "payment_type": payment_type.value,
                    "amount": payment.amount.to_string(),
                    "principal_portion": payment.principal_portion.to_string(),
                    "interest_portion": payment.interest_portion.to_string(),
                    "remaining_balance": loan.current_balance.to_string()
                })
                if loan.is_paid_off:
                    self._audit(AuditEventType.LOAN_PAID_OFF, loan, {
                        "payments_made": loan.payments_made,
                        "paid_off_date": payment.payment_date.isoformat()
                    })

        log_action(
            self.logger, "info", f"Loan payment applied: {payment_type.value}",
            user_id=loan.user_id, action="apply_loan_payment", resource=f"loan:{loan_id}",
            extra={
                "amount": payment.amount.to_string(),
                "remaining_balance": loan.current_balance.to_string(),
                "paid_off": loan.is_paid_off
            }
        )
        return payment

    def get_loan_payments(self, loan_id: str) -> List[LoanPayment]:
        payments = self.payments.find(loan_id=loan_id)
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    def get_amortization_schedule(self, loan_id: str) -> List[AmortizationEntry]:
        """
        Schedule computed from the loan's original terms

        Rows up to the number of payments made so far are flagged as paid.
        """
        loan = self.get_loan(loan_id)
        schedule = build_schedule(
            loan.principal_amount, loan.interest_rate_annual, loan.term_months,
            loan.start_date, loan.payment_day
        )
        for entry in schedule:
            entry.is_paid = entry.payment_number <= loan.payments_made
        return schedule

    def deactivate_loan(self, loan_id: str) -> Loan:
        """
        Raises:
            InvalidStateError: If the loan is already inactive
        """
        with self._locks.hold(loan_id):
            with self.storage.atomic():
                loan = self.get_loan(loan_id)
                if not loan.is_active:
                    raise InvalidStateError(f"Loan {loan_id} is already inactive")

                loan.is_active = False
                loan.updated_at = datetime.now(timezone.utc)
                self.loans.save(loan)
                self._audit(AuditEventType.LOAN_DEACTIVATED, loan, {
                    "remaining_balance": loan.current_balance.to_string(),
                    "payments_made": loan.payments_made
                })

        log_action(
            self.logger, "info", "Loan deactivated",
            user_id=loan.user_id, action="deactivate_loan", resource=f"loan:{loan_id}"
        )
        return loan

    # Portfolio queries

    def _sum(self, amounts: List[Money], currency: Optional[Currency]) -> Money:
        currency = currency or self.default_currency
        total = Money.zero(currency)
        for amount in amounts:
            if amount.currency == currency:
                total = total + amount
        return total

    def get_active_loans(self, user_id: Optional[str] = None) -> List[Loan]:
        return [loan for loan in self.list_loans(user_id) if loan.is_active]

    def get_inactive_loans(self, user_id: Optional[str] = None) -> List[Loan]:
        return [loan for loan in self.list_loans(user_id) if not loan.is_active]

    def get_total_loan_amount(self, user_id: Optional[str] = None,
                              currency: Optional[Currency] = None) -> Money:
        return self._sum([loan.principal_amount for loan in self.list_loans(user_id)], currency)

    def get_total_current_balance(self, user_id: Optional[str] = None,
                                  currency: Optional[Currency] = None) -> Money:
        return self._sum([loan.current_balance for loan in self.get_active_loans(user_id)], currency)

    def get_total_monthly_payments(self, user_id: Optional[str] = None,
                                   currency: Optional[Currency] = None) -> Money:
        return self._sum(
            [loan.monthly_payment for loan in self.get_active_loans(user_id) if not loan.is_paid_off],
            currency
        )

    def get_total_interest_paid(self, user_id: Optional[str] = None,
                                currency: Optional[Currency] = None) -> Money:
        interest = []
        for loan in self.list_loans(user_id):
            interest.extend(p.interest_portion for p in self.get_loan_payments(loan.id))
        return self._sum(interest, currency)

    def get_loans_due_soon(self, as_of: Optional[date] = None, days: Optional[int] = None,
                           user_id: Optional[str] = None) -> List[Loan]:
        """Active, unpaid loans whose next payment falls within ``days`` of ``as_of``"""
        as_of = as_of or date.today()
        horizon = as_of + timedelta(days=self.config.due_soon_days if days is None else days)
        return [
            loan for loan in self.get_active_loans(user_id)
            if not loan.is_paid_off and loan.next_payment_date <= horizon
        ]

    def get_loans_by_type(self, user_id: Optional[str] = None) -> Dict[LoanType, List[Loan]]:
        grouped: Dict[LoanType, List[Loan]] = {}
        for loan in self.get_active_loans(user_id):
            grouped.setdefault(loan.loan_type, []).append(loan)
        return grouped
