"""
Loan Module

Loan aggregate and installment ledger records, their storage mapping, and
loan origination. Payments and status changes live in ``payments``;
flat and custom schedules of existing loans live in ``scheduling``.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import logging
import uuid

from .amortization import (
    AmortizationEntry, add_months, calculate_monthly_payment, generate_amortization_schedule,
    validate_terms
)
from .audit import AuditTrail, AuditEventType
from .config import LoanEngineConfig, get_config
from .currency import Money, Currency
from .employees import EmployeeDirectory
from .errors import (
    InvalidTerms, LoanNotFound, InstallmentNotFound, EmployeeNotFound,
    BusinessRuleViolation
)
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord, transactional

logger = logging.getLogger("payroll_loans.loans")

LOANS_TABLE = "loans"
INSTALLMENTS_TABLE = "loan_installments"


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "ACTIVE"          # Being repaid
    PAID_OFF = "PAID_OFF"      # Remaining balance reached zero
    SUSPENDED = "SUSPENDED"    # Delinquent, or past end date while unpaid
    CANCELLED = "CANCELLED"    # Administrative; ledger frozen


class LoanType(Enum):
    """Loan products deducted from payroll"""
    HOUSING = "HOUSING"
    CONSUMER = "CONSUMER"
    OTHER = "OTHER"


class InstallmentStatus(Enum):
    """Installment states; LATE is only ever derived at read time"""
    PENDING = "PENDING"
    PAID = "PAID"
    LATE = "LATE"
    CANCELLED = "CANCELLED"


@dataclass
class Loan(StorageRecord):
    """Employee loan: terms plus the aggregate repayment counters"""
    employee_id: str
    principal: Money
    annual_interest_rate: Decimal       # Percent, e.g. 12 for 12%
    duration_months: int
    start_date: date
    insurance_rate: Decimal = Decimal('0')
    loan_type: LoanType = LoanType.CONSUMER
    status: LoanStatus = LoanStatus.ACTIVE

    end_date: Optional[date] = None
    monthly_payment: Optional[Money] = None
    amount_repaid: Optional[Money] = None
    remaining_balance: Optional[Money] = None
    interest_paid: Optional[Money] = None

    bank: Optional[str] = None
    account_number: Optional[str] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        zero = Money.zero(self.principal.currency)
        if self.end_date is None:
            self.end_date = add_months(self.start_date, self.duration_months)
        if self.monthly_payment is None:
            self.monthly_payment = zero
        if self.amount_repaid is None:
            self.amount_repaid = zero
        if self.remaining_balance is None:
            self.remaining_balance = self.principal
        if self.interest_paid is None:
            self.interest_paid = zero

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def total_installments(self) -> int:
        return self.duration_months

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def is_paid_off(self) -> bool:
        return self.remaining_balance.is_zero() or self.status == LoanStatus.PAID_OFF

    @property
    def is_cancelled(self) -> bool:
        return self.status == LoanStatus.CANCELLED


@dataclass
class Installment(StorageRecord):
    """One scheduled repayment of a loan"""
    loan_id: str
    installment_number: int
    due_date: date
    amount_due: Money
    principal_amount: Money
    interest_amount: Money       # Before tax
    interest_tax: Money
    insurance_amount: Money
    remaining_principal: Money   # Snapshot after this installment
    status: InstallmentStatus = InstallmentStatus.PENDING
    payment_date: Optional[date] = None
    amount_paid: Optional[Money] = None
    notes: Optional[str] = None

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    def is_overdue(self, as_of: date) -> bool:
        """Pending and its due date has passed"""
        return self.status == InstallmentStatus.PENDING and self.due_date < as_of

    def effective_status(self, as_of: date) -> InstallmentStatus:
        """Stored status, with overdue PENDING installments reported as LATE"""
        if self.is_overdue(as_of):
            return InstallmentStatus.LATE
        return self.status


def _money_fields(record: Any, names: List[str]) -> Dict[str, Optional[str]]:
    result = {}
    for name in names:
        value = getattr(record, name)
        result[name] = str(value.amount) if value is not None else None
    return result


def _get_date(data: Dict[str, Any], key: str) -> Optional[date]:
    if data.get(key):
        return date.fromisoformat(data[key])
    return None


LOAN_MONEY_FIELDS = ['principal', 'monthly_payment', 'amount_repaid', 'remaining_balance', 'interest_paid']
INSTALLMENT_MONEY_FIELDS = [
    'amount_due', 'principal_amount', 'interest_amount', 'interest_tax',
    'insurance_amount', 'remaining_principal', 'amount_paid'
]


def amortized_entries(loan: Loan, tax_rate: Decimal) -> List[AmortizationEntry]:
    """Level-payment schedule for a loan's stored terms"""
    return generate_amortization_schedule(
        loan.principal,
        loan.annual_interest_rate,
        loan.duration_months,
        loan.start_date,
        insurance_rate=loan.insurance_rate,
        tax_rate=tax_rate
    )


class LoanRepository:
    """Maps loans and installments to and from the storage backend"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

    def load_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(LOANS_TABLE, loan_id)
        if data:
            return self.loan_from_dict(data)
        return None

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.load_loan(loan_id)
        if loan is None:
            raise LoanNotFound("Loan not found", "loan_id", loan_id)
        return loan

    def save_loan(self, loan: Loan) -> None:
        self.storage.save(LOANS_TABLE, loan.id, self.loan_to_dict(loan))

    def find_loans(self, filters: Dict[str, Any]) -> List[Loan]:
        loans = [self.loan_from_dict(data) for data in self.storage.find(LOANS_TABLE, filters)]
        loans.sort(key=lambda x: x.created_at)
        return loans

    def load_installment(self, installment_id: str) -> Optional[Installment]:
        data = self.storage.load(INSTALLMENTS_TABLE, installment_id)
        if data:
            return self.installment_from_dict(data)
        return None

    def require_installment(self, installment_id: str) -> Installment:
        installment = self.load_installment(installment_id)
        if installment is None:
            raise InstallmentNotFound("Installment not found", "installment_id", installment_id)
        return installment

    def save_installment(self, installment: Installment) -> None:
        self.storage.save(INSTALLMENTS_TABLE, installment.id, self.installment_to_dict(installment))

    def find_installments(self, loan_id: str) -> List[Installment]:
        """Installments of a loan ordered by installment number"""
        rows = self.storage.find(INSTALLMENTS_TABLE, {"loan_id": loan_id})
        installments = [self.installment_from_dict(data) for data in rows]
        installments.sort(key=lambda x: x.installment_number)
        return installments

    def has_installments(self, loan_id: str) -> bool:
        return bool(self.storage.find(INSTALLMENTS_TABLE, {"loan_id": loan_id}))

    def write_schedule(self, loan: Loan, entries: List[AmortizationEntry]) -> List[Installment]:
        """
        Save ``entries`` as the PENDING installments of ``loan``

        The first entry's payment becomes ``loan.monthly_payment``. Runs in the
        caller's transaction, under the loan's record lock.
        """
        now = datetime.now(timezone.utc)
        installments = []
        for entry in entries:
            installment = Installment(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                installment_number=entry.installment_number,
                due_date=entry.due_date,
                amount_due=entry.total_due,
                principal_amount=entry.principal_amount,
                interest_amount=entry.interest_amount,
                interest_tax=entry.interest_tax,
                insurance_amount=entry.insurance_amount,
                remaining_principal=entry.remaining_principal,
                status=InstallmentStatus.PENDING
            )
            self.save_installment(installment)
            installments.append(installment)

        loan.monthly_payment = entries[0].payment_amount
        loan.updated_at = now
        loan.version += 1
        self.save_loan(loan)

        logger.debug(f"Wrote {len(installments)} installments for loan {loan.id}")
        return installments

    def loan_to_dict(self, loan: Loan) -> Dict[str, Any]:
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'employee_id': loan.employee_id,
            'currency': loan.currency.code,
            **_money_fields(loan, LOAN_MONEY_FIELDS),
            'annual_interest_rate': str(loan.annual_interest_rate),
            'insurance_rate': str(loan.insurance_rate),
            'duration_months': loan.duration_months,
            'start_date': loan.start_date.isoformat(),
            'end_date': loan.end_date.isoformat(),
            'loan_type': loan.loan_type.value,
            'status': loan.status.value,
            'bank': loan.bank,
            'account_number': loan.account_number,
            'notes': loan.notes,
            'created_by': loan.created_by,
            'version': loan.version
        }

    def loan_from_dict(self, data: Dict[str, Any]) -> Loan:
        currency = Currency[data['currency']]

        def get_money(key: str) -> Optional[Money]:
            if data.get(key) is None:
                return None
            return Money(Decimal(data[key]), currency)

        return Loan(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            employee_id=data['employee_id'],
            principal=get_money('principal'),
            annual_interest_rate=Decimal(data['annual_interest_rate']),
            duration_months=data['duration_months'],
            start_date=date.fromisoformat(data['start_date']),
            insurance_rate=Decimal(data['insurance_rate']),
            loan_type=LoanType(data['loan_type']),
            status=LoanStatus(data['status']),
            end_date=_get_date(data, 'end_date'),
            monthly_payment=get_money('monthly_payment'),
            amount_repaid=get_money('amount_repaid'),
            remaining_balance=get_money('remaining_balance'),
            interest_paid=get_money('interest_paid'),
            bank=data.get('bank'),
            account_number=data.get('account_number'),
            notes=data.get('notes'),
            created_by=data.get('created_by'),
            version=data.get('version', 0)
        )

    def installment_to_dict(self, installment: Installment) -> Dict[str, Any]:
        return {
            'id': installment.id,
            'created_at': installment.created_at.isoformat(),
            'updated_at': installment.updated_at.isoformat(),
            'loan_id': installment.loan_id,
            'installment_number': installment.installment_number,
            'due_date': installment.due_date.isoformat(),
            'currency': installment.amount_due.currency.code,
            **_money_fields(installment, INSTALLMENT_MONEY_FIELDS),
            'status': installment.status.value,
            'payment_date': installment.payment_date.isoformat() if installment.payment_date else None,
            'notes': installment.notes
        }

    def installment_from_dict(self, data: Dict[str, Any]) -> Installment:
        currency = Currency[data['currency']]

        def get_money(key: str) -> Optional[Money]:
            if data.get(key) is None:
                return None
            return Money(Decimal(data[key]), currency)

        return Installment(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=data['installment_number'],
            due_date=date.fromisoformat(data['due_date']),
            amount_due=get_money('amount_due'),
            principal_amount=get_money('principal_amount'),
            interest_amount=get_money('interest_amount'),
            interest_tax=get_money('interest_tax'),
            insurance_amount=get_money('insurance_amount'),
            remaining_principal=get_money('remaining_principal'),
            status=InstallmentStatus(data['status']),
            payment_date=_get_date(data, 'payment_date'),
            amount_paid=get_money('amount_paid'),
            notes=data.get('notes')
        )


class LoanManager:
    """
    Originates loans and serves read access to loans and their ledgers
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        employee_directory: Optional[EmployeeDirectory] = None,
        config: Optional[LoanEngineConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.employee_directory = employee_directory
        self.config = config or get_config()
        self.repository = LoanRepository(storage)

    def create_loan(
        self,
        employee_id: str,
        principal: Union[Money, Decimal],
        annual_interest_rate: Decimal,
        start_date: date,
        duration_months: Optional[int] = None,
        duration_years: Optional[int] = None,
        insurance_rate: Optional[Decimal] = None,
        loan_type: LoanType = LoanType.CONSUMER,
        bank: Optional[str] = None,
        account_number: Optional[str] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
        generate_schedule: bool = True
    ) -> Loan:
        """
        Create an ACTIVE loan and, by default, its amortized installment schedule

        Args:
            employee_id: Borrowing employee
            principal: Amount borrowed (Decimal means the configured currency)
            annual_interest_rate: Nominal annual rate in percent
            start_date: Loan start; installment k is due k months later
            duration_months: Term in months (or give duration_years)
            duration_years: Term in years
            insurance_rate: Annual insurance rate in percent (configured default if None)
            loan_type: HOUSING, CONSUMER or OTHER
            bank: Lending bank
            account_number: Repayment account
            notes: Free text
            actor: Who requested the loan
            generate_schedule: Write the amortized schedule in the same transaction

        Returns:
            The stored Loan

        Raises:
            InvalidTerms: Malformed terms
            EmployeeNotFound: Employee unknown to the directory
        """
        actor = actor or self.config.default_actor
        duration = self._resolve_duration(duration_months, duration_years)
        if insurance_rate is None:
            insurance_rate = self.config.default_insurance_rate
        if not isinstance(principal, Money):
            principal = Money(Decimal(str(principal)), Currency[self.config.default_currency])
        annual_interest_rate = Decimal(str(annual_interest_rate))
        insurance_rate = Decimal(str(insurance_rate))

        validate_terms(principal, annual_interest_rate, duration, insurance_rate)
        self._check_employee(employee_id)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            employee_id=employee_id,
            principal=principal,
            annual_interest_rate=annual_interest_rate,
            duration_months=duration,
            start_date=start_date,
            insurance_rate=insurance_rate,
            loan_type=loan_type,
            monthly_payment=calculate_monthly_payment(principal, annual_interest_rate, duration),
            bank=bank,
            account_number=account_number,
            notes=notes,
            created_by=actor
        )

        installments = []
        with self.storage.record_lock(LOANS_TABLE, loan.id):
            with transactional(self.storage, "create_loan"):
                self.repository.save_loan(loan)
                if generate_schedule:
                    installments = self.repository.write_schedule(
                        loan, amortized_entries(loan, self.config.interest_tax_rate)
                    )

        log_action(logger, "info", "loan created", user_id=actor, action="create_loan",
                   resource=f"loan:{loan.id}",
                   extra={"employee_id": employee_id, "principal": str(principal.amount),
                          "installments": len(installments)})

        if self.config.enable_audit_logging:
            self.audit_trail.log_committed_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                actor=actor,
                metadata={
                    "employee_id": employee_id,
                    "principal": principal.to_string(),
                    "annual_interest_rate": str(annual_interest_rate),
                    "duration_months": duration,
                    "loan_type": loan_type.value,
                    "start_date": start_date.isoformat()
                }
            )
            if installments:
                self.audit_trail.log_committed_event(
                    event_type=AuditEventType.SCHEDULE_GENERATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    actor=actor,
                    metadata={"installments": len(installments), "kind": "amortized"}
                )

        return self.repository.load_loan(loan.id)

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        return self.repository.load_loan(loan_id)

    def get_employee_loans(self, employee_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        """Get all loans for an employee, optionally filtered by status"""
        filters = {"employee_id": employee_id}
        if status is not None:
            filters["status"] = status.value
        return self.repository.find_loans(filters)

    def get_installments(self, loan_id: str) -> List[Installment]:
        """Installment ledger of a loan, ordered by installment number"""
        self.repository.require_loan(loan_id)
        return self.repository.find_installments(loan_id)

    def get_installment(self, installment_id: str) -> Optional[Installment]:
        return self.repository.load_installment(installment_id)

    def _resolve_duration(self, duration_months: Optional[int], duration_years: Optional[int]) -> int:
        if duration_months is not None and duration_years is not None:
            raise InvalidTerms("Give the duration in months or in years, not both",
                               "duration_years", duration_years)
        if duration_months is None and duration_years is None:
            raise InvalidTerms("Loan duration is required", "duration_months", None)
        if duration_years is not None:
            if not isinstance(duration_years, int) or duration_years <= 0:
                raise InvalidTerms("Duration must be a positive number of years", "duration_years", duration_years)
            duration_months = duration_years * 12
        if not isinstance(duration_months, int) or duration_months <= 0:
            raise InvalidTerms("Duration must be a positive number of months", "duration_months", duration_months)
        if duration_months > self.config.max_loan_duration_years * 12:
            raise InvalidTerms(
                f"Duration cannot exceed {self.config.max_loan_duration_years} years",
                "duration_months", duration_months
            )
        return duration_months

    def _check_employee(self, employee_id: str) -> None:
        if not employee_id:
            raise InvalidTerms("Employee is required", "employee_id", employee_id)
        if self.employee_directory is None:
            return
        if not self.employee_directory.employee_exists(employee_id):
            raise EmployeeNotFound("Employee not found", "employee_id", employee_id)
        if not self.employee_directory.is_eligible(employee_id):
            raise BusinessRuleViolation("Employee is not eligible for credit", "employee_id", employee_id)
