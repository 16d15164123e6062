"""
Test suite for loans module

Tests loan origination, storage mapping and read access.
"""

import pytest
from decimal import Decimal
from datetime import date

from payroll_loans.audit import AuditTrail, AuditEventType
from payroll_loans.config import LoanEngineConfig
from payroll_loans.currency import Money, Currency
from payroll_loans.employees import InMemoryEmployeeDirectory
from payroll_loans.errors import (
    InvalidTerms, EmployeeNotFound, BusinessRuleViolation, LoanNotFound
)
from payroll_loans.loans import (
    LoanManager, LoanRepository, LoanStatus, LoanType, InstallmentStatus, amortized_entries
)
from payroll_loans.storage import InMemoryStorage, SQLiteStorage


class TestLoanCreation:
    """Test LoanManager.create_loan"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.audit = AuditTrail(self.storage)
        self.directory = InMemoryEmployeeDirectory(["emp_001", "emp_002"])
        self.config = LoanEngineConfig(database_url="memory://")
        self.manager = LoanManager(self.storage, self.audit, self.directory, self.config)

    def test_create_loan_with_schedule(self):
        """Test a new loan is ACTIVE with its amortized schedule"""
        loan = self.manager.create_loan(
            employee_id="emp_001",
            principal=Money(Decimal('120000')),
            annual_interest_rate=Decimal('12'),
            start_date=date(2024, 1, 15),
            duration_months=12,
            loan_type=LoanType.HOUSING,
            bank="Bank Al-Maghrib",
            actor="hr_officer"
        )

        assert loan.status == LoanStatus.ACTIVE
        assert loan.is_active
        assert loan.remaining_balance == loan.principal
        assert loan.amount_repaid.is_zero()
        assert loan.interest_paid.is_zero()
        assert loan.end_date == date(2025, 1, 15)
        assert loan.monthly_payment == Money(Decimal('10661.85'))
        assert loan.created_by == "hr_officer"
        assert loan.insurance_rate == Decimal('0.809')

        installments = self.manager.get_installments(loan.id)
        assert [i.installment_number for i in installments] == list(range(1, 13))
        assert all(i.status == InstallmentStatus.PENDING for i in installments)
        assert installments[0].amount_due == Money(Decimal('10862.75'))
        assert installments[-1].remaining_principal.is_zero()

    def test_create_loan_is_audited(self):
        loan = self.manager.create_loan("emp_001", Decimal('10000'), Decimal('5'), date(2024, 1, 1),
                                        duration_months=10, actor="hr_officer")
        events = self.audit.get_events_for_entity("loan", loan.id)
        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_CREATED, AuditEventType.SCHEDULE_GENERATED
        ]
        assert events[0].actor == "hr_officer"

    def test_default_actor(self):
        loan = self.manager.create_loan("emp_001", Decimal('10000'), Decimal('5'), date(2024, 1, 1),
                                        duration_months=10)
        assert loan.created_by == "system"

    def test_duration_in_years(self):
        loan = self.manager.create_loan("emp_001", Decimal('10000'), Decimal('5'), date(2024, 1, 1),
                                        duration_years=2, generate_schedule=False)
        assert loan.duration_months == 24
        assert loan.end_date == date(2026, 1, 1)

    def test_decimal_principal_uses_default_currency(self):
        loan = self.manager.create_loan("emp_001", Decimal('10000'), Decimal('5'), date(2024, 1, 1),
                                        duration_months=10, generate_schedule=False)
        assert loan.currency == Currency.MAD

    def test_without_schedule(self):
        loan = self.manager.create_loan("emp_001", Decimal('10000'), Decimal('5'), date(2024, 1, 1),
                                        duration_months=10, generate_schedule=False)
        assert self.manager.get_installments(loan.id) == []

    @pytest.mark.parametrize("kwargs", [
        {"principal": Decimal('0'), "duration_months": 12},
        {"principal": Decimal('1000'), "duration_months": 0},
        {"principal": Decimal('1000'), "duration_months": 12, "annual_interest_rate": Decimal('-1')},
        {"principal": Decimal('1000'), "duration_months": 12, "insurance_rate": Decimal('-1')},
        {"principal": Decimal('1000'), "duration_months": 12, "duration_years": 1},
        {"principal": Decimal('1000')},
        {"principal": Decimal('1000'), "duration_years": 51},
    ])
    def test_invalid_terms(self, kwargs):
        """Test malformed terms are rejected before anything is stored"""
        kwargs.setdefault("annual_interest_rate", Decimal('5'))
        with pytest.raises(InvalidTerms):
            self.manager.create_loan(employee_id="emp_001", start_date=date(2024, 1, 1), **kwargs)
        assert self.storage.count("loans") == 0

    def test_unknown_employee(self):
        with pytest.raises(EmployeeNotFound):
            self.manager.create_loan("ghost", Decimal('1000'), Decimal('5'), date(2024, 1, 1), duration_months=12)

    def test_ineligible_employee(self):
        self.directory.add_employee("emp_003", eligible=False)
        with pytest.raises(BusinessRuleViolation):
            self.manager.create_loan("emp_003", Decimal('1000'), Decimal('5'), date(2024, 1, 1), duration_months=12)


class TestLoanQueries:
    """Test read access"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.manager = LoanManager(self.storage, AuditTrail(self.storage))

    def test_get_employee_loans(self):
        first = self.manager.create_loan("emp_001", Decimal('1000'), Decimal('5'), date(2024, 1, 1),
                                         duration_months=12)
        second = self.manager.create_loan("emp_001", Decimal('2000'), Decimal('5'), date(2024, 2, 1),
                                          duration_months=12, loan_type=LoanType.OTHER)
        self.manager.create_loan("emp_002", Decimal('3000'), Decimal('5'), date(2024, 1, 1), duration_months=12)

        loans = self.manager.get_employee_loans("emp_001")
        assert [loan.id for loan in loans] == [first.id, second.id]
        assert self.manager.get_employee_loans("emp_001", LoanStatus.PAID_OFF) == []

    def test_get_missing(self):
        assert self.manager.get_loan("missing") is None
        assert self.manager.get_installment("missing") is None
        with pytest.raises(LoanNotFound):
            self.manager.get_installments("missing")

    def test_get_installment(self):
        loan = self.manager.create_loan("emp_001", Decimal('1000'), Decimal('5'), date(2024, 1, 1),
                                        duration_months=3)
        first = self.manager.get_installments(loan.id)[0]
        assert self.manager.get_installment(first.id) == first


class TestLoanRepository:
    """Test the storage mapping of loans and installments"""

    def test_sqlite_round_trip(self, tmp_path):
        storage = SQLiteStorage(tmp_path / "loans.db")
        manager = LoanManager(storage, AuditTrail(storage))
        loan = manager.create_loan("emp_001", Money(Decimal('5000'), Currency.EUR), Decimal('3.5'),
                                   date(2024, 5, 31), duration_months=6, notes="car repair")
        storage.close()

        reopened = SQLiteStorage(tmp_path / "loans.db")
        repository = LoanRepository(reopened)
        restored = repository.load_loan(loan.id)

        assert restored == loan
        assert restored.currency == Currency.EUR
        installments = repository.find_installments(loan.id)
        assert len(installments) == 6
        assert installments[0].due_date == date(2024, 6, 30)
        reopened.close()

    def test_write_schedule(self):
        """Test the repository writes a ledger and stamps the level payment"""
        storage = InMemoryStorage()
        manager = LoanManager(storage, AuditTrail(storage))
        loan = manager.create_loan("emp_001", Money(Decimal('120000')), Decimal('12'), date(2024, 1, 15),
                                   duration_months=12, generate_schedule=False)
        repository = LoanRepository(storage)

        with storage.atomic():
            installments = repository.write_schedule(loan, amortized_entries(loan, Decimal('0.10')))

        assert [i.installment_number for i in installments] == list(range(1, 13))
        assert all(i.status == InstallmentStatus.PENDING for i in installments)
        assert installments[0].amount_due == Money(Decimal('10862.75'))
        stored = repository.load_loan(loan.id)
        assert stored.monthly_payment == Money(Decimal('10661.85'))
        assert stored.version == loan.version
        assert repository.has_installments(loan.id)
