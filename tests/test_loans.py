"""
Test suite for loans module

Tests loan records, payment processing, status transitions, the loan
manager and its persistence. All financial math must be precise.
"""

import pytest
import tempfile
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from pathlib import Path

from finance_core.audit import AuditTrail, AuditEventType
from finance_core.config import FinanceCoreConfig
from finance_core.currency import Money, Currency
from finance_core.errors import (
    InvalidAmountError, InvalidInputError, InvalidStateError, LoanNotActiveError,
    LoanNotFoundError, OverpaymentError
)
from finance_core.loans import (
    Loan, LoanManager, LoanPayment, LoanPaymentProcessor, LoanPaymentType,
    LoanStatus, LoanType
)
from finance_core.storage import InMemoryStorage, SQLiteStorage


def usd(value):
    return Money(Decimal(value), Currency.USD)


def make_loan(principal='10000.00', rate='6', term=60, start=date(2024, 1, 15), **kwargs):
    now = datetime.now(timezone.utc)
    return Loan(
        id=kwargs.pop("id", "loan_001"),
        created_at=now,
        updated_at=now,
        name="Test loan",
        loan_type=kwargs.pop("loan_type", LoanType.PERSONAL),
        principal_amount=usd(principal),
        interest_rate_annual=Decimal(rate),
        term_months=term,
        start_date=start,
        payment_day=kwargs.pop("payment_day", start.day),
        **kwargs
    )


class TestLoan:
    """Test loan record validation and derived values"""

    def test_new_loan(self):
        loan = make_loan()

        assert loan.current_balance == usd('10000.00')
        assert loan.is_active
        assert loan.payments_made == 0
        assert loan.monthly_payment == usd('193.33')
        assert loan.monthly_rate == Decimal('0.005')
        assert loan.end_date == date(2029, 1, 15)
        assert loan.progress_percentage == Decimal('0.00')
        assert loan.total_interest == usd('1599.80')
        assert loan.remaining_payments == 60
        assert loan.next_payment_date == date(2024, 1, 15)

    @pytest.mark.parametrize("overrides", [
        {"principal": '0'},
        {"principal": '-10'},
        {"rate": '-0.1'},
        {"term": 0},
        {"term": 601},
        {"payment_day": 0},
        {"payment_day": 32},
    ])
    def test_invalid_loan(self, overrides):
        with pytest.raises(InvalidInputError):
            make_loan(**overrides)

    def test_balance_must_stay_within_principal(self):
        with pytest.raises(InvalidInputError):
            make_loan(current_balance=usd('10000.01'))
        with pytest.raises(InvalidInputError):
            make_loan(current_balance=usd('-1'))
        with pytest.raises(InvalidInputError):
            make_loan(current_balance=Money(Decimal('100'), Currency.EUR))

    def test_status_transitions_by_date(self):
        loan = make_loan()

        assert loan.status(date(2024, 1, 10)) == LoanStatus.ACTIVE
        assert loan.status(date(2024, 1, 15)) == LoanStatus.ACTIVE
        assert loan.status(date(2024, 1, 16)) == LoanStatus.OVERDUE

        loan.payments_made = 1
        assert loan.next_payment_date == date(2024, 2, 15)
        assert loan.status(date(2024, 1, 16)) == LoanStatus.ACTIVE

    def test_inactive_and_paid_off_status(self):
        paid = make_loan(current_balance=usd('0'))
        assert paid.is_paid_off
        assert paid.status(date(2030, 1, 1)) == LoanStatus.PAID_OFF
        assert paid.next_payment_date is None
        assert paid.progress_percentage == Decimal('100.00')

        paid.is_active = False
        assert paid.status(date(2030, 1, 1)) == LoanStatus.INACTIVE


class TestLoanPayment:

    def test_portions_must_sum_to_amount(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(InvalidAmountError, match="does not equal"):
            LoanPayment(
                id="pay_001", created_at=now, updated_at=now, loan_id="loan_001",
                amount=usd('100'), principal_portion=usd('60'), interest_portion=usd('30'),
                payment_date=date(2024, 1, 15), method="pix", payment_type=LoanPaymentType.CUSTOM
            )

    def test_portions_cannot_be_negative(self):
        now = datetime.now(timezone.utc)
        with pytest.raises(InvalidAmountError):
            LoanPayment(
                id="pay_001", created_at=now, updated_at=now, loan_id="loan_001",
                amount=usd('100'), principal_portion=usd('-10'), interest_portion=usd('110'),
                payment_date=date(2024, 1, 15), method="pix", payment_type=LoanPaymentType.CUSTOM
            )


class TestLoanPaymentProcessor:
    """Test payment intake and allocation"""

    def setup_method(self):
        self.processor = LoanPaymentProcessor()
        self.loan = make_loan()

    def test_scheduled_payment(self):
        payment = self.processor.apply_payment(
            self.loan, LoanPaymentType.SCHEDULED, payment_date=date(2024, 1, 15)
        )

        assert payment.amount == usd('193.33')
        assert payment.interest_portion == usd('50.00')
        assert payment.principal_portion == usd('143.33')
        assert payment.loan_id == self.loan.id
        assert payment.method == "bank_transfer"
        assert payment.payment_type == LoanPaymentType.SCHEDULED
        assert self.loan.current_balance == usd('9856.67')
        assert self.loan.payments_made == 1
        assert self.loan.last_payment_date == date(2024, 1, 15)

    def test_scheduled_payment_ignores_amount(self):
        payment = self.processor.apply_payment(self.loan, LoanPaymentType.SCHEDULED, amount=5)
        assert payment.amount == usd('193.33')

    def test_extra_principal_payment(self):
        payment = self.processor.apply_payment(self.loan, LoanPaymentType.EXTRA_PRINCIPAL, amount='100')

        assert payment.amount == usd('293.33')
        assert payment.interest_portion == usd('50.00')
        assert payment.principal_portion == usd('243.33')
        assert self.loan.current_balance == usd('9756.67')

    def test_custom_payment(self):
        payment = self.processor.apply_payment(
            self.loan, LoanPaymentType.CUSTOM, amount=usd('500'), method="pix", notes="bonus"
        )

        assert payment.principal_portion == usd('450.00')
        assert payment.method == "pix"
        assert payment.notes == "bonus"
        assert self.loan.current_balance == usd('9550.00')

    def test_custom_payment_below_interest(self):
        payment = self.processor.apply_payment(self.loan, LoanPaymentType.CUSTOM, amount='20')

        assert payment.interest_portion == usd('20.00')
        assert payment.principal_portion == usd('0.00')
        assert self.loan.current_balance == usd('10000.00')
        assert self.loan.payments_made == 1

    @pytest.mark.parametrize("payment_type, amount", [
        (LoanPaymentType.CUSTOM, 0),
        (LoanPaymentType.CUSTOM, '-5'),
        (LoanPaymentType.CUSTOM, None),
        (LoanPaymentType.EXTRA_PRINCIPAL, None),
        (LoanPaymentType.EXTRA_PRINCIPAL, 0),
        (LoanPaymentType.EXTRA_PRINCIPAL, '-1'),
    ])
    def test_invalid_amounts(self, payment_type, amount):
        with pytest.raises(InvalidAmountError):
            self.processor.apply_payment(self.loan, payment_type, amount=amount)

        assert self.loan.current_balance == usd('10000.00')
        assert self.loan.payments_made == 0

    def test_overpayment(self):
        with pytest.raises(OverpaymentError):
            self.processor.apply_payment(self.loan, LoanPaymentType.CUSTOM, amount='10050.01')

        assert self.loan.current_balance == usd('10000.00')

    def test_payoff_in_one_payment(self):
        payment = self.processor.apply_payment(self.loan, LoanPaymentType.CUSTOM, amount='10050.00')

        assert payment.principal_portion == usd('10000.00')
        assert payment.interest_portion == usd('50.00')
        assert self.loan.current_balance == usd('0')
        assert self.loan.status() == LoanStatus.PAID_OFF

    def test_currency_mismatch(self):
        with pytest.raises(InvalidInputError):
            self.processor.apply_payment(
                self.loan, LoanPaymentType.CUSTOM, amount=Money(Decimal('100'), Currency.EUR)
            )

    def test_paid_off_loan_rejects_payment(self):
        self.processor.apply_payment(self.loan, LoanPaymentType.CUSTOM, amount='10050.00')

        with pytest.raises(LoanNotActiveError):
            self.processor.apply_payment(self.loan, LoanPaymentType.SCHEDULED)

    def test_inactive_loan_rejects_payment(self):
        self.loan.is_active = False

        with pytest.raises(LoanNotActiveError):
            self.processor.apply_payment(self.loan, LoanPaymentType.SCHEDULED)
        with pytest.raises(InvalidStateError):
            self.processor.apply_payment(self.loan, LoanPaymentType.SCHEDULED)

    @pytest.mark.parametrize("principal, rate, term", [
        ('10000.00', '6', 60),
        ('250000.00', '8.5', 360),
        ('1000.00', '12', 12),
        ('1200.00', '0', 12),
        ('777.77', '19.99', 9),
    ])
    def test_scheduled_payments_retire_loan_exactly(self, principal, rate, term):
        loan = make_loan(principal=principal, rate=rate, term=term)
        payments = []

        while not loan.is_paid_off:
            payments.append(self.processor.apply_payment(loan, LoanPaymentType.SCHEDULED))
            assert len(payments) <= term + 1

        assert loan.current_balance == usd('0')
        assert loan.status() == LoanStatus.PAID_OFF
        principal_paid = sum((p.principal_portion.amount for p in payments), Decimal('0'))
        assert principal_paid == Decimal(principal)

    def test_zero_rate_scheduled_payments(self):
        loan = make_loan(principal='1200.00', rate='0', term=12)

        payments = [self.processor.apply_payment(loan, LoanPaymentType.SCHEDULED) for _ in range(12)]

        assert all(p.amount == usd('100.00') for p in payments)
        assert loan.is_paid_off


class TestLoanManager:
    """Test loan manager operations over storage"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.audit_trail = AuditTrail(self.storage)
        self.config = FinanceCoreConfig(default_currency="USD", enable_audit_logging=True)
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.config)

    def create_loan(self, **kwargs):
        params = dict(
            name="Car loan",
            principal_amount=Decimal('10000.00'),
            interest_rate_annual=Decimal('6'),
            term_months=60,
            start_date=date(2024, 1, 15),
            user_id="user_1"
        )
        params.update(kwargs)
        return self.loan_manager.create_loan(**params)

    def test_create_loan(self):
        loan = self.create_loan(loan_type=LoanType.AUTO, bank_name="Banco", purpose="Car")

        assert loan.principal_amount == usd('10000.00')
        assert loan.current_balance == usd('10000.00')
        assert loan.payment_day == 15
        assert loan.loan_type == LoanType.AUTO
        assert self.loan_manager.get_loan(loan.id) == loan

        events = self.audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [AuditEventType.LOAN_CREATED]

    def test_create_loan_with_money(self):
        loan = self.create_loan(principal_amount=Money(Decimal('5000'), Currency.BRL), payment_day=5)

        assert loan.currency == Currency.BRL
        assert loan.payment_day == 5

    def test_create_loan_validation(self):
        with pytest.raises(InvalidInputError):
            self.create_loan(principal_amount=0)
        with pytest.raises(InvalidInputError):
            self.create_loan(interest_rate_annual=-1)
        with pytest.raises(InvalidInputError):
            self.create_loan(term_months=0)
        with pytest.raises(InvalidInputError):
            self.create_loan(payment_day=0)

        assert self.loan_manager.list_loans() == []

    def test_configured_term_limit(self):
        manager = LoanManager(self.storage, self.audit_trail, FinanceCoreConfig(max_term_months=120))

        with pytest.raises(InvalidInputError):
            manager.create_loan("Home", Decimal('100000'), Decimal('5'), 121, date(2024, 1, 1))

    def test_get_missing_loan(self):
        with pytest.raises(LoanNotFoundError):
            self.loan_manager.get_loan("missing")
        with pytest.raises(LoanNotFoundError):
            self.loan_manager.apply_loan_payment("missing", LoanPaymentType.SCHEDULED)

    def test_apply_loan_payment_persists(self):
        loan = self.create_loan()

        payment = self.loan_manager.apply_loan_payment(
            loan.id, LoanPaymentType.SCHEDULED, payment_date=date(2024, 1, 15)
        )

        stored = self.loan_manager.get_loan(loan.id)
        assert stored.current_balance == usd('9856.67')
        assert stored.payments_made == 1
        assert self.loan_manager.get_loan_payments(loan.id) == [payment]

        events = self.audit_trail.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_CREATED, AuditEventType.LOAN_PAYMENT_APPLIED
        ]

    def test_rejected_payment_changes_nothing(self):
        loan = self.create_loan()

        with pytest.raises(OverpaymentError):
            self.loan_manager.apply_loan_payment(loan.id, LoanPaymentType.CUSTOM, amount='20000')

        assert self.loan_manager.get_loan(loan.id).current_balance == usd('10000.00')
        assert self.loan_manager.get_loan_payments(loan.id) == []
        assert self.audit_trail.count_events() == 1

    def test_payoff_is_audited(self):
        loan = self.create_loan(principal_amount=Decimal('1200'), interest_rate_annual=0, term_months=12)

        for _ in range(12):
            self.loan_manager.apply_loan_payment(loan.id, LoanPaymentType.SCHEDULED)

        stored = self.loan_manager.get_loan(loan.id)
        assert stored.is_paid_off
        assert stored.status() == LoanStatus.PAID_OFF
        paid_off = self.audit_trail.get_events_by_type(AuditEventType.LOAN_PAID_OFF)
        assert len(paid_off) == 1
        assert paid_off[0].entity_id == loan.id

        with pytest.raises(LoanNotActiveError):
            self.loan_manager.apply_loan_payment(loan.id, LoanPaymentType.SCHEDULED)

    def test_payments_sorted_by_date(self):
        loan = self.create_loan()
        self.loan_manager.apply_loan_payment(loan.id, LoanPaymentType.CUSTOM, amount=300,
                                             payment_date=date(2024, 3, 15))
        self.loan_manager.apply_loan_payment(loan.id, LoanPaymentType.CUSTOM, amount=300,
                                             payment_date=date(2024, 2, 15))

        dates = [p.payment_date for p in self.loan_manager.get_loan_payments(loan.id)]
        assert dates == [date(2024, 2, 15), date(2024, 3, 15)]

    def test_amortization_schedule_flags_paid_rows(self):
        loan = self.create_loan()
        self.loan_manager.apply_loan_payment(loan.id, LoanPaymentType.SCHEDULED)
        self.loan_manager.apply_loan_payment(loan.id, LoanPaymentType.SCHEDULED)

        schedule = self.loan_manager.get_amortization_schedule(loan.id)

        assert len(schedule) == 60
        assert [e.is_paid for e in schedule[:3]] == [True, True, False]
        # Static parameters only: extra payments do not reshape the schedule
        assert schedule[0].remaining_balance == usd('9856.67')

    def test_deactivate_loan(self):
        loan = self.create_loan()

        deactivated = self.loan_manager.deactivate_loan(loan.id)

        assert deactivated.status() == LoanStatus.INACTIVE
        assert self.loan_manager.get_loan(loan.id).status() == LoanStatus.INACTIVE
        with pytest.raises(LoanNotActiveError):
            self.loan_manager.apply_loan_payment(loan.id, LoanPaymentType.SCHEDULED)
        with pytest.raises(InvalidStateError):
            self.loan_manager.deactivate_loan(loan.id)

        events = self.audit_trail.get_events_for_entity("loan", loan.id)
        assert events[-1].event_type == AuditEventType.LOAN_DEACTIVATED

    def test_concurrent_payments_on_one_loan(self):
        loan = self.create_loan(principal_amount=Decimal('1000'), interest_rate_annual=0, term_months=10)

        def pay(_):
            return self.loan_manager.apply_loan_payment(loan.id, LoanPaymentType.CUSTOM, amount=100)

        with ThreadPoolExecutor(max_workers=10) as pool:
            payments = list(pool.map(pay, range(10)))

        stored = self.loan_manager.get_loan(loan.id)
        assert stored.current_balance == usd('0')
        assert stored.payments_made == 10
        assert all(p.principal_portion == usd('100') for p in payments)
        assert len(self.loan_manager.get_loan_payments(loan.id)) == 10
        assert self.audit_trail.verify_integrity()['valid']

    def test_list_loans_by_user(self):
        self.create_loan(user_id="alice")
        self.create_loan(user_id="bob")

        assert len(self.loan_manager.list_loans()) == 2
        assert [loan.user_id for loan in self.loan_manager.list_loans("alice")] == ["alice"]

    def test_audit_logging_can_be_disabled(self):
        manager = LoanManager(self.storage, self.audit_trail, FinanceCoreConfig(enable_audit_logging=False))
        manager.create_loan("Quiet", Decimal('1000'), Decimal('5'), 12, date(2024, 1, 1))

        assert self.audit_trail.count_events() == 0


class TestLoanPortfolio:
    """Test portfolio queries"""

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.loan_manager = LoanManager(
            self.storage, AuditTrail(self.storage), FinanceCoreConfig(default_currency="USD")
        )
        self.as_of = date(2024, 6, 1)
        self.car = self.loan_manager.create_loan(
            "Car", Decimal('10000'), Decimal('6'), 60, self.as_of + timedelta(days=3),
            loan_type=LoanType.AUTO
        )
        self.study = self.loan_manager.create_loan(
            "Course", Decimal('1200'), Decimal('0'), 12, self.as_of + timedelta(days=30),
            loan_type=LoanType.STUDENT
        )

    def test_totals(self):
        assert self.loan_manager.get_total_loan_amount() == usd('11200.00')
        assert self.loan_manager.get_total_current_balance() == usd('11200.00')
        assert self.loan_manager.get_total_monthly_payments() == usd('293.33')

    def test_totals_after_payment_and_deactivation(self):
        self.loan_manager.apply_loan_payment(self.car.id, LoanPaymentType.SCHEDULED)
        self.loan_manager.deactivate_loan(self.study.id)

        assert self.loan_manager.get_total_loan_amount() == usd('11200.00')
        assert self.loan_manager.get_total_current_balance() == usd('9856.67')
        assert self.loan_manager.get_total_monthly_payments() == usd('193.33')
        assert self.loan_manager.get_total_interest_paid() == usd('50.00')
        assert [loan.id for loan in self.loan_manager.get_inactive_loans()] == [self.study.id]

    def test_totals_filter_by_currency(self):
        self.loan_manager.create_loan("Euro", Money(Decimal('500'), Currency.EUR), 0, 5, self.as_of)

        assert self.loan_manager.get_total_loan_amount() == usd('11200.00')
        assert self.loan_manager.get_total_loan_amount(currency=Currency.EUR) == Money(Decimal('500'), Currency.EUR)

    def test_loans_due_soon(self):
        due = self.loan_manager.get_loans_due_soon(as_of=self.as_of)
        assert [loan.id for loan in due] == [self.car.id]

        due_later = self.loan_manager.get_loans_due_soon(as_of=self.as_of, days=30)
        assert {loan.id for loan in due_later} == {self.car.id, self.study.id}

    def test_loans_by_type(self):
        grouped = self.loan_manager.get_loans_by_type()

        assert [loan.id for loan in grouped[LoanType.AUTO]] == [self.car.id]
        assert [loan.id for loan in grouped[LoanType.STUDENT]] == [self.study.id]
        assert LoanType.HOME not in grouped


class TestLoanPersistence:
    """Test loan manager over SQLite"""

    def test_state_survives_reopen(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            db_path = Path(temp_dir) / "loans.db"
            config = FinanceCoreConfig(default_currency="USD")

            storage = SQLiteStorage(db_path)
            manager = LoanManager(storage, AuditTrail(storage), config)
            loan = manager.create_loan("Car", Decimal('10000'), Decimal('6'), 60, date(2024, 1, 15))
            manager.apply_loan_payment(loan.id, LoanPaymentType.SCHEDULED)
            storage.close()

            reopened = SQLiteStorage(db_path)
            manager = LoanManager(reopened, AuditTrail(reopened), config)
            stored = manager.get_loan(loan.id)
            assert stored.current_balance == usd('9856.67')
            assert len(manager.get_loan_payments(loan.id)) == 1
            assert manager.audit_trail.verify_integrity()['valid']
            reopened.close()

    def test_rejected_payment_rolls_back(self):
        storage = SQLiteStorage(":memory:")
        manager = LoanManager(storage, AuditTrail(storage), FinanceCoreConfig(default_currency="USD"))
        loan = manager.create_loan("Car", Decimal('10000'), Decimal('6'), 60, date(2024, 1, 15))

        with pytest.raises(OverpaymentError):
            manager.apply_loan_payment(loan.id, LoanPaymentType.CUSTOM, amount='99999')

        assert manager.get_loan(loan.id).payments_made == 0
        assert manager.get_loan_payments(loan.id) == []
        storage.close()
