"""
Progress Reconciliation Module

Read-only computations over a loan and its installment ledger, or over an
advance's own counters: elapsed time, expected against actual repayment,
delinquency and schedule statistics. Nothing here writes to storage.
"""

from decimal import Decimal, ROUND_FLOOR
from datetime import date
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from .advances import Advance, AdvanceStatus
from .amortization import project_repayment
from .currency import Money, Currency, round_half_up
from .loans import Loan, LoanStatus, Installment, InstallmentStatus

ZERO = Decimal('0')
HUNDRED = Decimal('100')


@dataclass
class ProgressReport:
    """Expected against actual repayment of a loan at a point in time"""
    as_of: date
    months_elapsed: int
    total_installments: int
    amount_expected_repaid: Money
    amount_actually_repaid: Money
    remaining_balance: Money
    progress_percentage: Decimal
    is_late: bool
    months_late: int
    expected_interest_paid: Money
    expected_principal_repaid: Money
    calculated_remaining_balance: Money


@dataclass
class AdvanceProgressReport:
    """Expected against actual repayment of a salary advance"""
    as_of: date
    months_elapsed: int
    total_installments: int
    amount_expected_repaid: Money
    amount_actually_repaid: Money
    remaining_balance: Money
    progress_percentage: Decimal
    expected_progress_percentage: Decimal
    is_late: bool
    months_late: int


@dataclass
class ScheduleStatistics:
    """Counts and totals over an installment ledger"""
    total_installments: int
    paid_installments: int
    pending_installments: int
    overdue_installments: int
    cancelled_installments: int
    total_paid: Money
    total_remaining: Money
    progress_percentage: Decimal
    next_installment: Optional[Installment] = None


@dataclass
class DelinquencyReport:
    is_delinquent: bool
    overdue_count: int
    overdue_amount: Money
    oldest_due_date: Optional[date] = None
    overdue_installments: List[Installment] = field(default_factory=list)


def months_elapsed(start_date: date, as_of: date, total_installments: int) -> int:
    """
    Whole months from ``start_date`` to ``as_of``.

    A month only counts once its day of month has been reached. The result
    is clamped to ``[0, total_installments]``.
    """
    months = (as_of.year - start_date.year) * 12 + (as_of.month - start_date.month)
    if as_of.day < start_date.day:
        months -= 1
    return max(0, min(months, total_installments))


def percentage(part: Decimal, whole: Decimal) -> Decimal:
    """``part / whole`` in percent, capped at 100 and rounded to 2 places"""
    if whole <= ZERO:
        return ZERO
    return round_half_up(min(HUNDRED, part / whole * HUNDRED))


def _months_late(expected: Decimal, actual: Decimal, installment_amount: Decimal, elapsed: int) -> int:
    if installment_amount <= ZERO or actual >= expected:
        return 0
    behind = ((expected - actual) / installment_amount).to_integral_value(rounding=ROUND_FLOOR)
    return max(0, min(int(behind), elapsed))


def calculate_loan_progress(loan: Loan, as_of: Optional[date] = None) -> ProgressReport:
    """
    Reconcile a loan's repayment against its fixed monthly payment

    Args:
        loan: Loan with its aggregate counters
        as_of: Evaluation date (today if None)

    Returns:
        ProgressReport with amounts rounded to the loan currency
    """
    as_of = as_of or date.today()
    currency = loan.currency
    elapsed = months_elapsed(loan.start_date, as_of, loan.total_installments)

    installment_amount = loan.monthly_payment.amount
    expected = installment_amount * elapsed
    actual = loan.amount_repaid.amount

    interest_paid, principal_repaid = project_repayment(
        loan.principal, loan.annual_interest_rate, loan.monthly_payment, elapsed
    )
    calculated_remaining = max(ZERO, loan.principal.amount - principal_repaid)

    return ProgressReport(
        as_of=as_of,
        months_elapsed=elapsed,
        total_installments=loan.total_installments,
        amount_expected_repaid=Money(expected, currency),
        amount_actually_repaid=loan.amount_repaid,
        remaining_balance=loan.remaining_balance,
        progress_percentage=percentage(actual, loan.principal.amount),
        is_late=actual < expected and elapsed > 0 and loan.status == LoanStatus.ACTIVE,
        months_late=_months_late(expected, actual, installment_amount, elapsed),
        expected_interest_paid=Money(interest_paid, currency),
        expected_principal_repaid=Money(principal_repaid, currency),
        calculated_remaining_balance=Money(calculated_remaining, currency)
    )


def calculate_advance_progress(advance: Advance, as_of: Optional[date] = None) -> AdvanceProgressReport:
    """Reconcile a salary advance against its fixed installment amount"""
    as_of = as_of or date.today()
    currency = advance.amount.currency
    elapsed = months_elapsed(advance.advance_date, as_of, advance.number_of_installments)

    installment_amount = advance.installment_amount.amount
    expected = min(installment_amount * elapsed, advance.amount.amount)
    actual = advance.amount_repaid.amount

    return AdvanceProgressReport(
        as_of=as_of,
        months_elapsed=elapsed,
        total_installments=advance.number_of_installments,
        amount_expected_repaid=Money(expected, currency),
        amount_actually_repaid=advance.amount_repaid,
        remaining_balance=advance.remaining_balance,
        progress_percentage=percentage(actual, advance.amount.amount),
        expected_progress_percentage=percentage(expected, advance.amount.amount),
        is_late=actual < expected and elapsed > 0 and advance.status == AdvanceStatus.IN_PROGRESS,
        months_late=_months_late(expected, actual, installment_amount, elapsed)
    )


def _by_number(installments: Iterable[Installment]) -> List[Installment]:
    return sorted(installments, key=lambda x: x.installment_number)


def find_current_installment(installments: Iterable[Installment], as_of: Optional[date] = None) -> Optional[Installment]:
    """
    The installment payroll should deduct now.

    The earliest PENDING installment already due, otherwise the earliest
    PENDING installment overall; None once nothing is pending.
    """
    as_of = as_of or date.today()
    pending = [i for i in _by_number(installments) if i.status == InstallmentStatus.PENDING]
    for installment in pending:
        if installment.due_date <= as_of:
            return installment
    return pending[0] if pending else None


def effective_status(installment: Installment, as_of: Optional[date] = None) -> InstallmentStatus:
    """Stored status with overdue PENDING installments reported as LATE"""
    return installment.effective_status(as_of or date.today())


def schedule_statistics(
    installments: Iterable[Installment],
    as_of: Optional[date] = None,
    currency: Currency = Currency.MAD
) -> ScheduleStatistics:
    as_of = as_of or date.today()
    ordered = _by_number(installments)
    if ordered:
        currency = ordered[0].amount_due.currency

    paid = [i for i in ordered if i.status == InstallmentStatus.PAID]
    pending = [i for i in ordered if i.status == InstallmentStatus.PENDING]
    cancelled = [i for i in ordered if i.status == InstallmentStatus.CANCELLED]
    overdue = [i for i in pending if i.is_overdue(as_of)]

    total_paid = Money.zero(currency)
    for installment in paid:
        total_paid = total_paid + (installment.amount_paid or Money.zero(currency))
    total_remaining = Money.zero(currency)
    for installment in pending:
        total_remaining = total_remaining + installment.amount_due

    return ScheduleStatistics(
        total_installments=len(ordered),
        paid_installments=len(paid),
        pending_installments=len(pending),
        overdue_installments=len(overdue),
        cancelled_installments=len(cancelled),
        total_paid=total_paid,
        total_remaining=total_remaining,
        progress_percentage=percentage(Decimal(len(paid)), Decimal(len(ordered))),
        next_installment=pending[0] if pending else None
    )


def check_delinquency(
    installments: Iterable[Installment],
    as_of: Optional[date] = None,
    currency: Currency = Currency.MAD
) -> DelinquencyReport:
    """Overdue installments of a ledger: PENDING with a due date before ``as_of``"""
    as_of = as_of or date.today()
    overdue = [i for i in _by_number(installments) if i.is_overdue(as_of)]
    if overdue:
        currency = overdue[0].amount_due.currency

    amount = Money.zero(currency)
    for installment in overdue:
        amount = amount + installment.amount_due

    return DelinquencyReport(
        is_delinquent=bool(overdue),
        overdue_count=len(overdue),
        overdue_amount=amount,
        oldest_due_date=overdue[0].due_date if overdue else None,
        overdue_installments=overdue
    )


def recommend_status(
    loan: Loan,
    report: Optional[ProgressReport] = None,
    as_of: Optional[date] = None,
    suspension_late_months: int = 3
) -> LoanStatus:
    """
    Status a loan should have given its repayment progress.

    CANCELLED is returned unchanged; it is only ever lifted explicitly.
    """
    if loan.status == LoanStatus.CANCELLED:
        return LoanStatus.CANCELLED
    as_of = as_of or date.today()
    report = report or calculate_loan_progress(loan, as_of)

    if loan.amount_repaid >= loan.principal or loan.remaining_balance.is_zero():
        return LoanStatus.PAID_OFF
    if report.months_late > suspension_late_months:
        return LoanStatus.SUSPENDED
    if as_of > loan.end_date:
        return LoanStatus.SUSPENDED
    return LoanStatus.ACTIVE
