"""
Installment Scheduling Module

Turns amortization entries into the persisted installment ledger of a loan.
A loan gets exactly one schedule; it is written in a single transaction
while the loan record is locked, so payments never see a partial ledger.
"""

from decimal import Decimal
from typing import Callable, List, Optional, Sequence, Union
import logging

from .amortization import AmortizationEntry, generate_custom_schedule, generate_flat_schedule
from .audit import AuditTrail, AuditEventType
from .config import LoanEngineConfig, get_config
from .currency import Money
from .errors import DuplicateSchedule, BusinessRuleViolation
from .loans import Loan, Installment, LoanRepository, LOANS_TABLE, amortized_entries
from .logging_config import log_action
from .storage import StorageInterface, transactional

logger = logging.getLogger("payroll_loans.scheduling")


class InstallmentScheduler:
    """Materializes repayment schedules into installment records"""

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

    def generate_schedule(self, loan_id: str, actor: Optional[str] = None) -> List[Installment]:
        """
        Write the amortized (level payment) schedule of a loan

        Raises:
            LoanNotFound: Unknown loan
            DuplicateSchedule: The loan already has installments
        """
        return self._generate(
            loan_id, "amortized", lambda loan: amortized_entries(loan, self.config.interest_tax_rate), actor
        )

    def generate_flat_schedule(
        self,
        loan_id: str,
        monthly_amount: Union[Money, Decimal],
        number_of_installments: int,
        actor: Optional[str] = None
    ) -> List[Installment]:
        """Write a no-interest schedule repeating ``monthly_amount``"""
        def build(loan: Loan) -> List[AmortizationEntry]:
            return generate_flat_schedule(
                self._amount(loan, monthly_amount), number_of_installments, loan.start_date, loan.currency
            )
        return self._generate(loan_id, "flat", build, actor)

    def generate_custom_schedule(
        self,
        loan_id: str,
        amounts: Sequence[Union[Money, Decimal]],
        actor: Optional[str] = None
    ) -> List[Installment]:
        """Write a schedule with a chosen amount for every installment"""
        def build(loan: Loan) -> List[AmortizationEntry]:
            return generate_custom_schedule(
                [self._amount(loan, amount) for amount in amounts], loan.start_date, loan.currency
            )
        return self._generate(loan_id, "custom", build, actor)

    def _amount(self, loan: Loan, amount: Union[Money, Decimal]) -> Money:
        if isinstance(amount, Money):
            return amount
        return Money(Decimal(str(amount)), loan.currency)

    def _generate(
        self,
        loan_id: str,
        kind: str,
        build_entries: Callable[[Loan], List[AmortizationEntry]],
        actor: Optional[str]
    ) -> List[Installment]:
        actor = actor or self.config.default_actor

        with self.storage.record_lock(LOANS_TABLE, loan_id):
            with transactional(self.storage, "generate_schedule"):
                loan = self.repository.require_loan(loan_id)
                if loan.is_cancelled:
                    raise BusinessRuleViolation("Cannot schedule a cancelled loan", "loan_id", loan_id)
                self._check_no_schedule(loan)
                installments = self.repository.write_schedule(loan, build_entries(loan))

        log_action(logger, "info", "schedule generated", user_id=actor, action="generate_schedule",
                   resource=f"loan:{loan_id}",
                   extra={"kind": kind, "installments": len(installments)})

        if self.config.enable_audit_logging:
            self.audit_trail.log_committed_event(
                event_type=AuditEventType.SCHEDULE_GENERATED,
                entity_type="loan",
                entity_id=loan_id,
                actor=actor,
                metadata={
                    "installments": len(installments),
                    "kind": kind,
                    "monthly_payment": installments[0].amount_due.to_string()
                }
            )

        return installments

    def _check_no_schedule(self, loan: Loan) -> None:
        if self.repository.has_installments(loan.id):
            raise DuplicateSchedule("Loan already has an installment schedule", "loan_id", loan.id)

