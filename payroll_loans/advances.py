"""
Salary Advance Module

Short salary advances repaid in equal installments through payroll. An
advance has no installment ledger: its remaining balance is a single
counter adjusted by repayments or administrative corrections.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import logging
import uuid

from .audit import AuditTrail, AuditEventType
from .config import LoanEngineConfig, get_config
from .currency import Money, Currency
from .employees import EmployeeDirectory
from .errors import (
    InvalidTerms, InvalidAmount, AdvanceNotFound, EmployeeNotFound, BusinessRuleViolation
)
from .logging_config import log_action
from .storage import StorageInterface, StorageRecord, transactional

logger = logging.getLogger("payroll_loans.advances")

ADVANCES_TABLE = "advances"
EMPLOYEE_ADVANCES_LOCK = "employee_advances"

ZERO = Decimal('0')


class AdvanceStatus(Enum):
    """Salary advance lifecycle states"""
    IN_PROGRESS = "IN_PROGRESS"
    REPAID = "REPAID"
    CANCELLED = "CANCELLED"


@dataclass
class Advance(StorageRecord):
    """Salary advance with equal fixed installments"""
    employee_id: str
    amount: Money
    advance_date: date
    number_of_installments: int
    installment_amount: Money
    reason: Optional[str] = None
    remaining_balance: Optional[Money] = None
    status: AdvanceStatus = AdvanceStatus.IN_PROGRESS
    full_repayment_date: Optional[date] = None
    notes: Optional[str] = None
    created_by: Optional[str] = None
    version: int = 0

    def __post_init__(self):
        if self.remaining_balance is None:
            self.remaining_balance = self.amount

    @property
    def amount_repaid(self) -> Money:
        return self.amount - self.remaining_balance

    @property
    def is_in_progress(self) -> bool:
        return self.status == AdvanceStatus.IN_PROGRESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'employee_id': self.employee_id,
            'currency': self.amount.currency.code,
            'amount': str(self.amount.amount),
            'advance_date': self.advance_date.isoformat(),
            'number_of_installments': self.number_of_installments,
            'installment_amount': str(self.installment_amount.amount),
            'reason': self.reason,
            'remaining_balance': str(self.remaining_balance.amount),
            'status': self.status.value,
            'full_repayment_date': self.full_repayment_date.isoformat() if self.full_repayment_date else None,
            'notes': self.notes,
            'created_by': self.created_by,
            'version': self.version
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Advance':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            employee_id=data['employee_id'],
            amount=Money(Decimal(data['amount']), currency),
            advance_date=date.fromisoformat(data['advance_date']),
            number_of_installments=data['number_of_installments'],
            installment_amount=Money(Decimal(data['installment_amount']), currency),
            reason=data.get('reason'),
            remaining_balance=Money(Decimal(data['remaining_balance']), currency),
            status=AdvanceStatus(data['status']),
            full_repayment_date=(
                date.fromisoformat(data['full_repayment_date']) if data.get('full_repayment_date') else None
            ),
            notes=data.get('notes'),
            created_by=data.get('created_by'),
            version=data.get('version', 0)
        )


def _as_decimal(value: Union[Money, Decimal, int, str]) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    return Decimal(str(value))


class AdvanceTracker:
    """
    Grants salary advances and tracks their repayment
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

    def grant_advance(
        self,
        employee_id: str,
        amount: Union[Money, Decimal],
        advance_date: Optional[date] = None,
        reason: Optional[str] = None,
        number_of_installments: int = 1,
        installment_amount: Optional[Union[Money, Decimal]] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Advance:
        """
        Grant a salary advance

        Args:
            employee_id: Employee receiving the advance
            amount: Amount advanced
            advance_date: Date granted (today if None)
            reason: Why the advance was requested
            number_of_installments: Monthly installments, 1 to the configured maximum
            installment_amount: Fixed installment (amount / installments if None)
            notes: Free text
            actor: Who granted the advance

        Returns:
            The stored Advance, IN_PROGRESS

        Raises:
            InvalidTerms: Malformed amount or installment count
            EmployeeNotFound: Employee unknown to the directory
            BusinessRuleViolation: Employee already has an advance IN_PROGRESS
        """
        actor = actor or self.config.default_actor
        advance_date = advance_date or date.today()
        currency = amount.currency if isinstance(amount, Money) else Currency[self.config.default_currency]

        if _as_decimal(amount) <= ZERO:
            raise InvalidTerms("Advance amount must be greater than 0", "amount", amount)
        max_installments = self.config.max_advance_installments
        if (not isinstance(number_of_installments, int) or isinstance(number_of_installments, bool)
                or not 1 <= number_of_installments <= max_installments):
            raise InvalidTerms(f"Number of installments must be between 1 and {max_installments}",
                               "number_of_installments", number_of_installments)

        principal = Money(_as_decimal(amount), currency)
        if installment_amount is None:
            installment = principal / Decimal(number_of_installments)
        else:
            installment = Money(_as_decimal(installment_amount), currency)
        if not installment.is_positive():
            raise InvalidTerms("Installment amount must be greater than 0", "installment_amount", installment_amount)
        if installment > principal:
            raise InvalidTerms("Installment amount cannot exceed the advance", "installment_amount", installment_amount)

        self._check_employee(employee_id)

        now = datetime.now(timezone.utc)
        advance = Advance(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            employee_id=employee_id,
            amount=principal,
            advance_date=advance_date,
            number_of_installments=number_of_installments,
            installment_amount=installment,
            reason=reason,
            notes=notes,
            created_by=actor
        )

        with self.storage.record_lock(EMPLOYEE_ADVANCES_LOCK, employee_id):
            with transactional(self.storage, "grant_advance"):
                active = self.storage.find(ADVANCES_TABLE, {
                    "employee_id": employee_id,
                    "status": AdvanceStatus.IN_PROGRESS.value
                })
                if active:
                    log_action(logger, "warning", "advance refused: one already in progress", user_id=actor,
                               action="grant_advance", resource=f"employee:{employee_id}",
                               extra={"advance_id": active[0]['id']})
                    raise BusinessRuleViolation(
                        "Employee already has an advance in progress", "employee_id", employee_id
                    )
                self.storage.save(ADVANCES_TABLE, advance.id, advance.to_dict())

        log_action(logger, "info", "advance granted", user_id=actor, action="grant_advance",
                   resource=f"advance:{advance.id}",
                   extra={"employee_id": employee_id, "amount": str(principal.amount),
                          "installments": number_of_installments})
        self._audit(AuditEventType.ADVANCE_GRANTED, advance.id, actor, {
            "employee_id": employee_id,
            "amount": principal.to_string(),
            "number_of_installments": number_of_installments,
            "installment_amount": installment.to_string(),
            "reason": reason
        })
        return advance

    def record_repayment(
        self,
        advance_id: str,
        amount: Optional[Union[Money, Decimal]] = None,
        as_of: Optional[date] = None,
        actor: Optional[str] = None
    ) -> Advance:
        """
        Deduct one repayment from an advance (the fixed installment if no amount)

        Raises:
            InvalidAmount: Amount is not positive
            AdvanceNotFound: Unknown advance
            BusinessRuleViolation: Advance not in progress, or overpayment rejected
        """
        actor = actor or self.config.default_actor
        as_of = as_of or date.today()
        if amount is not None and _as_decimal(amount) <= ZERO:
            raise InvalidAmount("Repayment amount must be greater than 0", "amount", amount)

        with self.storage.record_lock(ADVANCES_TABLE, advance_id):
            with transactional(self.storage, "record_repayment"):
                advance = self._require(advance_id)
                if not advance.is_in_progress:
                    raise BusinessRuleViolation(
                        f"Advance is {advance.status.value}, not in progress", "advance_id", advance_id
                    )

                payment = advance.installment_amount if amount is None else Money(_as_decimal(amount), advance.amount.currency)
                if not payment.is_positive():
                    raise InvalidAmount(
                        f"Repayment amount rounds to {payment.to_string()}", "amount", amount
                    )
                if payment > advance.remaining_balance:
                    if self.config.overpayment_policy == "reject":
                        raise BusinessRuleViolation(
                            f"Repayment exceeds remaining balance {advance.remaining_balance.to_string()}",
                            "amount", amount
                        )
                    payment = advance.remaining_balance

                advance.remaining_balance = advance.remaining_balance - payment
                if advance.remaining_balance.is_zero():
                    advance.status = AdvanceStatus.REPAID
                    advance.full_repayment_date = as_of
                self._touch(advance)

        log_action(logger, "info", "advance repayment recorded", user_id=actor, action="record_repayment",
                   resource=f"advance:{advance_id}",
                   extra={"amount": str(payment.amount), "remaining_balance": str(advance.remaining_balance.amount)})
        self._audit(AuditEventType.ADVANCE_REPAYMENT_RECORDED, advance_id, actor, {
            "amount": payment.to_string(),
            "remaining_balance": advance.remaining_balance.to_string()
        })
        if advance.status == AdvanceStatus.REPAID:
            self._audit(AuditEventType.ADVANCE_REPAID, advance_id, actor, {
                "full_repayment_date": advance.full_repayment_date
            })
        return advance

    def update_progress(
        self,
        advance_id: str,
        new_remaining_balance: Union[Money, Decimal],
        as_of: Optional[date] = None,
        actor: Optional[str] = None
    ) -> Advance:
        """
        Set an advance's remaining balance directly

        REPAID with ``full_repayment_date`` at zero; otherwise IN_PROGRESS
        with the repayment date cleared. A CANCELLED advance keeps its status.

        Raises:
            InvalidAmount: Balance outside ``[0, amount]``
            AdvanceNotFound: Unknown advance
        """
        actor = actor or self.config.default_actor
        as_of = as_of or date.today()
        value = _as_decimal(new_remaining_balance)
        if value < ZERO:
            raise InvalidAmount("Remaining balance cannot be negative", "new_remaining_balance", value)

        with self.storage.record_lock(ADVANCES_TABLE, advance_id):
            with transactional(self.storage, "update_advance_progress"):
                advance = self._require(advance_id)
                balance = Money(value, advance.amount.currency)
                if balance > advance.amount:
                    raise InvalidAmount(
                        f"Remaining balance cannot exceed the advance {advance.amount.to_string()}",
                        "new_remaining_balance", value
                    )

                previous_status = advance.status
                advance.remaining_balance = balance
                if advance.status != AdvanceStatus.CANCELLED:
                    if balance.is_zero():
                        advance.status = AdvanceStatus.REPAID
                        advance.full_repayment_date = as_of
                    else:
                        advance.status = AdvanceStatus.IN_PROGRESS
                        advance.full_repayment_date = None
                self._touch(advance)

        log_action(logger, "info", "advance progress updated", user_id=actor, action="update_progress",
                   resource=f"advance:{advance_id}",
                   extra={"remaining_balance": str(balance.amount), "status": advance.status.value})
        self._audit(AuditEventType.ADVANCE_PROGRESS_UPDATED, advance_id, actor, {
            "remaining_balance": balance.to_string(),
            "from": previous_status.value,
            "to": advance.status.value
        })
        if advance.status == AdvanceStatus.REPAID and previous_status != AdvanceStatus.REPAID:
            self._audit(AuditEventType.ADVANCE_REPAID, advance_id, actor, {
                "full_repayment_date": advance.full_repayment_date
            })
        return advance

    def cancel_advance(self, advance_id: str, reason: Optional[str] = None, actor: Optional[str] = None) -> Advance:
        """Cancel an advance that has not been fully repaid"""
        actor = actor or self.config.default_actor

        with self.storage.record_lock(ADVANCES_TABLE, advance_id):
            with transactional(self.storage, "cancel_advance"):
                advance = self._require(advance_id)
                if advance.status != AdvanceStatus.IN_PROGRESS:
                    raise BusinessRuleViolation(
                        f"Cannot cancel an advance that is {advance.status.value}", "advance_id", advance_id
                    )
                advance.status = AdvanceStatus.CANCELLED
                if reason:
                    advance.notes = f"{advance.notes}\n{reason}" if advance.notes else reason
                self._touch(advance)

        log_action(logger, "info", "advance cancelled", user_id=actor, action="cancel_advance",
                   resource=f"advance:{advance_id}")
        self._audit(AuditEventType.ADVANCE_CANCELLED, advance_id, actor, {"reason": reason})
        return advance

    def get_advance(self, advance_id: str) -> Optional[Advance]:
        """Get advance by ID"""
        data = self.storage.load(ADVANCES_TABLE, advance_id)
        if data:
            return Advance.from_dict(data)
        return None

    def get_employee_advances(self, employee_id: str, status: Optional[AdvanceStatus] = None) -> List[Advance]:
        """Get all advances for an employee, oldest first"""
        filters = {"employee_id": employee_id}
        if status is not None:
            filters["status"] = status.value
        advances = [Advance.from_dict(data) for data in self.storage.find(ADVANCES_TABLE, filters)]
        advances.sort(key=lambda x: x.created_at)
        return advances

    def _require(self, advance_id: str) -> Advance:
        advance = self.get_advance(advance_id)
        if advance is None:
            raise AdvanceNotFound("Advance not found", "advance_id", advance_id)
        return advance

    def _touch(self, advance: Advance) -> None:
        advance.updated_at = datetime.now(timezone.utc)
        advance.version += 1
        self.storage.save(ADVANCES_TABLE, advance.id, advance.to_dict())

    def _check_employee(self, employee_id: str) -> None:
        if not employee_id:
            raise InvalidTerms("Employee is required", "employee_id", employee_id)
        if self.employee_directory is None:
            return
        if not self.employee_directory.employee_exists(employee_id):
            raise EmployeeNotFound("Employee not found", "employee_id", employee_id)
        if not self.employee_directory.is_eligible(employee_id):
            raise BusinessRuleViolation("Employee is not eligible for an advance", "employee_id", employee_id)

    def _audit(self, event_type: AuditEventType, advance_id: str, actor: str, metadata: Dict[str, Any]) -> None:
        if self.config.enable_audit_logging:
            self.audit_trail.log_committed_event(
                event_type=event_type,
                entity_type="advance",
                entity_id=advance_id,
                actor=actor,
                metadata=metadata
            )
