"""
Test suite for installment scheduling
"""

import pytest
from decimal import Decimal
from datetime import date

from payroll_loans.audit import AuditTrail, AuditEventType
from payroll_loans.currency import Money
from payroll_loans.errors import (
    DuplicateSchedule, LoanNotFound, BusinessRuleViolation, TransactionFailed, StorageError
)
from payroll_loans.loans import LoanManager, InstallmentStatus, INSTALLMENTS_TABLE
from payroll_loans.payments import PaymentRecorder
from payroll_loans.scheduling import InstallmentScheduler
from payroll_loans.storage import InMemoryStorage


class FailingStorage(InMemoryStorage):
    """InMemoryStorage that fails after a number of installment writes"""

    def __init__(self, fail_after: int):
        super().__init__()
        self.fail_after = fail_after
        self.armed = False
        self.writes = 0

    def save(self, table, record_id, data):
        if self.armed and table == INSTALLMENTS_TABLE:
            self.writes += 1
            if self.writes > self.fail_after:
                raise StorageError("connection lost")
        super().save(table, record_id, data)


class TestInstallmentScheduler:
    """Test schedule generation for existing loans"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.manager = LoanManager(self.storage, self.audit)
        self.scheduler = InstallmentScheduler(self.storage, self.audit)
        self.loan = self.manager.create_loan(
            "emp_001", Money(Decimal('120000')), Decimal('12'), date(2024, 1, 15),
            duration_months=12, generate_schedule=False
        )

    def test_generate_schedule(self):
        """Test the amortized schedule is persisted in order"""
        installments = self.scheduler.generate_schedule(self.loan.id, actor="hr_officer")

        assert len(installments) == 12
        stored = self.manager.get_installments(self.loan.id)
        assert [i.id for i in stored] == [i.id for i in installments]
        assert stored[0].due_date == date(2024, 2, 15)
        assert stored[0].principal_amount == Money(Decimal('9461.85'))
        assert stored[0].interest_amount == Money(Decimal('1200.00'))
        assert stored[0].interest_tax == Money(Decimal('120.00'))
        assert self.manager.get_loan(self.loan.id).monthly_payment == Money(Decimal('10661.85'))

        events = self.audit.get_events_by_type(AuditEventType.SCHEDULE_GENERATED)
        assert events[-1].entity_id == self.loan.id
        assert events[-1].actor == "hr_officer"

    def test_duplicate_schedule(self):
        """Test a second schedule is refused"""
        self.scheduler.generate_schedule(self.loan.id)
        with pytest.raises(DuplicateSchedule):
            self.scheduler.generate_schedule(self.loan.id)
        with pytest.raises(DuplicateSchedule):
            self.scheduler.generate_flat_schedule(self.loan.id, Decimal('10000'), 12)
        assert self.storage.count(INSTALLMENTS_TABLE) == 12

    def test_unknown_loan(self):
        with pytest.raises(LoanNotFound):
            self.scheduler.generate_schedule("missing")

    def test_flat_schedule(self):
        """Test a flat schedule sets the loan's monthly payment"""
        installments = self.scheduler.generate_flat_schedule(self.loan.id, Decimal('10000'), 12)

        assert all(i.amount_due == Money(Decimal('10000')) for i in installments)
        assert all(i.interest_amount.is_zero() for i in installments)
        assert installments[0].remaining_principal == Money(Decimal('110000'))
        assert installments[-1].remaining_principal.is_zero()
        assert self.manager.get_loan(self.loan.id).monthly_payment == Money(Decimal('10000'))

    def test_custom_schedule(self):
        amounts = [Decimal('50000'), Decimal('40000'), Decimal('30000')]
        installments = self.scheduler.generate_custom_schedule(self.loan.id, amounts)

        assert [i.amount_due.amount for i in installments] == amounts
        assert [i.remaining_principal.amount for i in installments] == [
            Decimal('70000.00'), Decimal('30000.00'), Decimal('0.00')
        ]
        assert self.manager.get_loan(self.loan.id).monthly_payment == Money(Decimal('50000'))

    def test_cancelled_loan_cannot_be_scheduled(self):
        PaymentRecorder(self.storage, self.audit).cancel_loan(self.loan.id)
        with pytest.raises(BusinessRuleViolation):
            self.scheduler.generate_schedule(self.loan.id)

    def test_partial_schedule_is_never_visible(self):
        """Test a storage failure mid-batch leaves no installments behind"""
        storage = FailingStorage(fail_after=5)
        audit = AuditTrail(storage)
        loan = LoanManager(storage, audit).create_loan(
            "emp_001", Decimal('12000'), Decimal('6'), date(2024, 1, 1),
            duration_months=12, generate_schedule=False
        )
        storage.armed = True

        with pytest.raises(TransactionFailed):
            InstallmentScheduler(storage, audit).generate_schedule(loan.id)

        assert storage.count(INSTALLMENTS_TABLE) == 0
        assert storage.load("loans", loan.id)["version"] == loan.version
        assert audit.get_events_by_type(AuditEventType.SCHEDULE_GENERATED) == []

    def test_installment_status_starts_pending(self):
        installments = self.scheduler.generate_schedule(self.loan.id)
        assert {i.status for i in installments} == {InstallmentStatus.PENDING}
