"""
Payment Recording Module

The only write path for a loan's repayment counters and its installments'
payment state. Every operation locks the loan record and updates the loan
and its installments in one transaction, so the loan aggregate always
matches the sum of its PAID installments.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
import logging

from .audit import AuditTrail, AuditEventType
from .config import LoanEngineConfig, get_config
from .currency import Money, money_max
from .errors import InvalidAmount, AlreadyPaid, BusinessRuleViolation
from .loans import (
    Loan, LoanStatus, Installment, InstallmentStatus, LoanRepository, LOANS_TABLE
)
from .logging_config import log_action
from .progress import calculate_loan_progress, recommend_status
from .storage import StorageInterface, transactional

logger = logging.getLogger("payroll_loans.payments")

ZERO = Decimal('0')


@dataclass
class PaymentResult:
    """Outcome of a recorded installment payment"""
    installment: Installment
    loan: Loan
    amount_applied: Money
    capped: bool = False


def _as_decimal(value: Union[Money, Decimal, int, str]) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    return Decimal(str(value))


class PaymentRecorder:
    """
    Records installment payments and administrative balance changes
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        config: Optional[LoanEngineConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.repository = LoanRepository(storage)

    def pay_installment(
        self,
        installment_id: str,
        amount_paid: Union[Money, Decimal],
        payment_date: Optional[date] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None
    ) -> PaymentResult:
        """
        Mark an installment PAID and apply the payment to its loan

        Args:
            installment_id: Installment being paid
            amount_paid: Amount received (must be positive)
            payment_date: Date of payment (today if None)
            notes: Free text stored on the installment
            actor: Who recorded the payment

        Returns:
            PaymentResult with the updated installment and loan

        Raises:
            InvalidAmount: amount_paid is not positive
            InstallmentNotFound: Unknown installment
            AlreadyPaid: Installment is already PAID
            BusinessRuleViolation: Loan cancelled or paid off, or overpayment rejected
            TransactionFailed: Storage failed; re-read before retrying
        """
        actor = actor or self.config.default_actor
        value = _as_decimal(amount_paid)
        if value <= ZERO:
            raise InvalidAmount("Payment amount must be greater than 0", "amount_paid", amount_paid)

        loan_id = self.repository.require_installment(installment_id).loan_id
        payment_date = payment_date or date.today()

        with self.storage.record_lock(LOANS_TABLE, loan_id):
            with transactional(self.storage, "pay_installment"):
                installment = self.repository.require_installment(installment_id)
                if installment.status == InstallmentStatus.PAID:
                    raise AlreadyPaid("Installment is already paid", "installment_id", installment_id)

                loan = self.repository.require_loan(loan_id)
                if loan.is_cancelled or installment.status == InstallmentStatus.CANCELLED:
                    raise BusinessRuleViolation("Cannot pay against a cancelled loan", "loan_id", loan_id)
                if loan.status == LoanStatus.PAID_OFF or loan.remaining_balance.is_zero():
                    raise BusinessRuleViolation("Loan is already paid off", "loan_id", loan_id)

                applied = Money(value, loan.currency)
                if not applied.is_positive():
                    raise InvalidAmount(
                        f"Payment amount rounds to {applied.to_string()}", "amount_paid", amount_paid
                    )
                capped = False
                if applied > loan.remaining_balance:
                    if self.config.overpayment_policy == "reject":
                        raise BusinessRuleViolation(
                            f"Payment exceeds remaining balance {loan.remaining_balance.to_string()}",
                            "amount_paid", amount_paid
                        )
                    applied = loan.remaining_balance
                    capped = True

                now = datetime.now(timezone.utc)
                installment.status = InstallmentStatus.PAID
                installment.payment_date = payment_date
                installment.amount_paid = applied
                if notes is not None:
                    installment.notes = notes
                installment.updated_at = now

                previous_status = loan.status
                loan.amount_repaid = loan.amount_repaid + applied
                loan.remaining_balance = money_max(Money.zero(loan.currency), loan.principal - loan.amount_repaid)
                loan.interest_paid = loan.interest_paid + installment.interest_amount
                if loan.remaining_balance.is_zero():
                    loan.status = LoanStatus.PAID_OFF
                loan.updated_at = now
                loan.version += 1

                self.repository.save_installment(installment)
                self.repository.save_loan(loan)

        if capped:
            log_action(logger, "warning", "payment capped at remaining balance", user_id=actor,
                       action="pay_installment", resource=f"installment:{installment_id}",
                       extra={"requested": str(value), "applied": str(applied.amount)})
        log_action(logger, "info", "installment paid", user_id=actor, action="pay_installment",
                   resource=f"installment:{installment_id}",
                   extra={"loan_id": loan_id, "amount": str(applied.amount),
                          "remaining_balance": str(loan.remaining_balance.amount)})

        self._audit(AuditEventType.INSTALLMENT_PAID, loan_id, actor, {
            "installment_id": installment_id,
            "installment_number": installment.installment_number,
            "amount_paid": applied.to_string(),
            "payment_date": payment_date,
            "remaining_balance": loan.remaining_balance.to_string()
        })
        self._audit_status_change(loan, previous_status, actor)

        return PaymentResult(installment=installment, loan=loan, amount_applied=applied, capped=capped)

    def update_progress(
        self,
        loan_id: str,
        new_remaining_balance: Union[Money, Decimal],
        as_of: Optional[date] = None,
        actor: Optional[str] = None,
        reactivate: bool = False
    ) -> Loan:
        """
        Administrative correction of a loan's remaining balance

        The balance may only go down; ``amount_repaid`` becomes
        ``principal - new_remaining_balance``. Status is recomputed:
        PAID_OFF at zero, SUSPENDED past the end date with a balance left,
        ACTIVE otherwise. A CANCELLED loan stays CANCELLED unless
        ``reactivate`` is set, which also reopens its cancelled installments.

        Raises:
            InvalidAmount: Balance outside ``[0, principal]`` or above the current balance
            LoanNotFound: Unknown loan
        """
        actor = actor or self.config.default_actor
        value = _as_decimal(new_remaining_balance)
        as_of = as_of or date.today()
        if value < ZERO:
            raise InvalidAmount("Remaining balance cannot be negative", "new_remaining_balance", value)

        with self.storage.record_lock(LOANS_TABLE, loan_id):
            with transactional(self.storage, "update_progress"):
                loan = self.repository.require_loan(loan_id)
                balance = Money(value, loan.currency)
                if balance > loan.principal:
                    raise InvalidAmount(
                        f"Remaining balance cannot exceed principal {loan.principal.to_string()}",
                        "new_remaining_balance", value
                    )
                if balance > loan.remaining_balance:
                    raise InvalidAmount(
                        f"Remaining balance cannot increase above {loan.remaining_balance.to_string()}",
                        "new_remaining_balance", value
                    )

                previous_status = loan.status
                previous_balance = loan.remaining_balance
                now = datetime.now(timezone.utc)

                loan.remaining_balance = balance
                loan.amount_repaid = loan.principal - balance
                if loan.status != LoanStatus.CANCELLED or reactivate:
                    if balance.is_zero():
                        loan.status = LoanStatus.PAID_OFF
                    elif as_of > loan.end_date:
                        loan.status = LoanStatus.SUSPENDED
                    else:
                        loan.status = LoanStatus.ACTIVE
                loan.updated_at = now
                loan.version += 1
                self.repository.save_loan(loan)

                reopened = 0
                if reactivate and previous_status == LoanStatus.CANCELLED:
                    reopened = self._set_installment_status(
                        loan_id, InstallmentStatus.CANCELLED, InstallmentStatus.PENDING, now
                    )

        log_action(logger, "info", "loan progress updated", user_id=actor, action="update_progress",
                   resource=f"loan:{loan_id}",
                   extra={"remaining_balance": str(balance.amount), "status": loan.status.value})

        self._audit(AuditEventType.LOAN_PROGRESS_UPDATED, loan_id, actor, {
            "previous_remaining_balance": previous_balance.to_string(),
            "remaining_balance": balance.to_string(),
            "amount_repaid": loan.amount_repaid.to_string()
        })
        if previous_status == LoanStatus.CANCELLED and loan.status != LoanStatus.CANCELLED:
            self._audit(AuditEventType.LOAN_REACTIVATED, loan_id, actor, {
                "status": loan.status.value,
                "installments_reopened": reopened
            })
        else:
            self._audit_status_change(loan, previous_status, actor)

        return loan

    def refresh_status(
        self,
        loan_id: str,
        as_of: Optional[date] = None,
        actor: Optional[str] = None
    ) -> Loan:
        """Apply the recommended status (paid off, delinquent, overdue) to a loan"""
        actor = actor or self.config.default_actor
        as_of = as_of or date.today()

        with self.storage.record_lock(LOANS_TABLE, loan_id):
            with transactional(self.storage, "refresh_status"):
                loan = self.repository.require_loan(loan_id)
                previous_status = loan.status
                if loan.is_cancelled:
                    return loan

                report = calculate_loan_progress(loan, as_of)
                status = recommend_status(loan, report, as_of, self.config.suspension_late_months)
                if status == previous_status:
                    return loan

                loan.status = status
                loan.updated_at = datetime.now(timezone.utc)
                loan.version += 1
                self.repository.save_loan(loan)

        log_action(logger, "info", "loan status refreshed", user_id=actor, action="refresh_status",
                   resource=f"loan:{loan_id}",
                   extra={"from": previous_status.value, "to": status.value,
                          "months_late": report.months_late})
        self._audit_status_change(loan, previous_status, actor, {"months_late": report.months_late})
        return loan

    def cancel_loan(
        self,
        loan_id: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None
    ) -> Loan:
        """
        Cancel a loan and freeze its ledger

        PENDING installments become CANCELLED; PAID ones are kept.

        Raises:
            LoanNotFound: Unknown loan
            BusinessRuleViolation: Loan already cancelled or paid off
        """
        actor = actor or self.config.default_actor

        with self.storage.record_lock(LOANS_TABLE, loan_id):
            with transactional(self.storage, "cancel_loan"):
                loan = self.repository.require_loan(loan_id)
                if loan.is_cancelled:
                    raise BusinessRuleViolation("Loan is already cancelled", "loan_id", loan_id)
                if loan.status == LoanStatus.PAID_OFF:
                    raise BusinessRuleViolation("Cannot cancel a paid off loan", "loan_id", loan_id)

                now = datetime.now(timezone.utc)
                previous_status = loan.status
                loan.status = LoanStatus.CANCELLED
                if reason:
                    loan.notes = f"{loan.notes}\n{reason}" if loan.notes else reason
                loan.updated_at = now
                loan.version += 1
                self.repository.save_loan(loan)

                cancelled = self._set_installment_status(
                    loan_id, InstallmentStatus.PENDING, InstallmentStatus.CANCELLED, now
                )

        log_action(logger, "info", "loan cancelled", user_id=actor, action="cancel_loan",
                   resource=f"loan:{loan_id}", extra={"installments_cancelled": cancelled})
        self._audit(AuditEventType.LOAN_CANCELLED, loan_id, actor, {
            "previous_status": previous_status.value,
            "reason": reason,
            "installments_cancelled": cancelled
        })
        return loan

    def _set_installment_status(
        self,
        loan_id: str,
        from_status: InstallmentStatus,
        to_status: InstallmentStatus,
        now: datetime
    ) -> int:
        changed = 0
        for installment in self.repository.find_installments(loan_id):
            if installment.status == from_status:
                installment.status = to_status
                installment.updated_at = now
                self.repository.save_installment(installment)
                changed += 1
        return changed

    def _audit(self, event_type: AuditEventType, loan_id: str, actor: str, metadata: Dict[str, Any]) -> None:
        if self.config.enable_audit_logging:
            self.audit_trail.log_committed_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan_id,
                actor=actor,
                metadata=metadata
            )

    def _audit_status_change(
        self,
        loan: Loan,
        previous_status: LoanStatus,
        actor: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        if loan.status == previous_status:
            return
        event_type = AuditEventType.LOAN_STATUS_CHANGED
        if loan.status == LoanStatus.PAID_OFF:
            event_type = AuditEventType.LOAN_PAID_OFF
        self._audit(event_type, loan.id, actor, {
            "from": previous_status.value,
            "to": loan.status.value,
            **(metadata or {})
        })
