"""
Payroll Deduction Module

Supplies payroll with the credit inputs of a payslip: the current
installment of each active loan, the interest it carries, and the monthly
installment of any advance in progress. Payroll taxes themselves are
computed by the payroll system.
"""

from datetime import date
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .advances import Advance, AdvanceStatus, ADVANCES_TABLE
from .config import LoanEngineConfig, get_config
from .currency import Money, Currency, money_min
from .errors import BusinessRuleViolation
from .loans import LoanRepository, LoanStatus, LoanType
from .progress import find_current_installment
from .storage import StorageInterface


def _check_currency(actual: Currency, payroll_currency: Currency, field: str, record_id: str) -> None:
    if actual != payroll_currency:
        raise BusinessRuleViolation(
            f"Deductions are computed in {payroll_currency.code}, record is in {actual.code}",
            field, record_id
        )


@dataclass
class LoanDeduction:
    loan_id: str
    loan_type: LoanType
    amount: Money
    interest: Money
    installment_id: Optional[str] = None
    installment_number: Optional[int] = None
    due_date: Optional[date] = None
    remaining_principal: Optional[Money] = None


@dataclass
class AdvanceDeduction:
    advance_id: str
    amount: Money
    remaining_balance: Money


@dataclass
class PayrollDeductions:
    """Credit and advance deductions of one employee for one pay period"""
    employee_id: str
    as_of: date
    loans: List[LoanDeduction] = field(default_factory=list)
    advances: List[AdvanceDeduction] = field(default_factory=list)
    totals_by_type: Dict[LoanType, Money] = field(default_factory=dict)
    loans_total: Optional[Money] = None
    total_interest: Optional[Money] = None
    advances_total: Optional[Money] = None

    @property
    def total(self) -> Money:
        return self.loans_total + self.advances_total


class PayrollDeductionService:
    """Reads loan and advance state into payroll deduction lines"""

    def __init__(self, storage: StorageInterface, config: Optional[LoanEngineConfig] = None):
        self.storage = storage
        self.config = config or get_config()
        self.repository = LoanRepository(storage)

    def monthly_deductions(self, employee_id: str, as_of: Optional[date] = None) -> PayrollDeductions:
        """
        Deductions owed by an employee for the pay period containing ``as_of``

        Each ACTIVE loan contributes its current installment (see
        ``find_current_installment``), or its monthly payment if it has no
        schedule. Each IN_PROGRESS advance contributes its fixed installment,
        capped at what is left to repay.

        Raises:
            BusinessRuleViolation: A loan or advance is not in the payroll currency
        """
        as_of = as_of or date.today()
        currency = Currency[self.config.default_currency]
        zero = Money.zero(currency)

        result = PayrollDeductions(employee_id=employee_id, as_of=as_of)
        result.totals_by_type = {loan_type: zero for loan_type in LoanType}
        loans_total = zero
        total_interest = zero

        loans = self.repository.find_loans({"employee_id": employee_id, "status": LoanStatus.ACTIVE.value})
        for loan in loans:
            _check_currency(loan.currency, currency, "loan_id", loan.id)
            installments = self.repository.find_installments(loan.id)
            current = find_current_installment(installments, as_of)
            if current is None:
                if installments:
                    continue
                deduction = LoanDeduction(
                    loan_id=loan.id,
                    loan_type=loan.loan_type,
                    amount=money_min(loan.monthly_payment, loan.remaining_balance),
                    interest=Money.zero(loan.currency)
                )
            else:
                deduction = LoanDeduction(
                    loan_id=loan.id,
                    loan_type=loan.loan_type,
                    amount=current.amount_due,
                    interest=current.interest_amount,
                    installment_id=current.id,
                    installment_number=current.installment_number,
                    due_date=current.due_date,
                    remaining_principal=current.remaining_principal
                )
            result.loans.append(deduction)
            result.totals_by_type[loan.loan_type] = result.totals_by_type[loan.loan_type] + deduction.amount
            loans_total = loans_total + deduction.amount
            total_interest = total_interest + deduction.interest

        advances_total = zero
        rows = self.storage.find(ADVANCES_TABLE, {
            "employee_id": employee_id,
            "status": AdvanceStatus.IN_PROGRESS.value
        })
        for advance in sorted((Advance.from_dict(row) for row in rows), key=lambda x: x.created_at):
            _check_currency(advance.amount.currency, currency, "advance_id", advance.id)
            amount = money_min(advance.installment_amount, advance.remaining_balance)
            result.advances.append(AdvanceDeduction(
                advance_id=advance.id,
                amount=amount,
                remaining_balance=advance.remaining_balance
            ))
            advances_total = advances_total + amount

        result.loans_total = loans_total
        result.total_interest = total_interest
        result.advances_total = advances_total
        return result
