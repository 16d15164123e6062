"""
Amortization Module

Pure repayment-schedule math for employee loans: level-payment annuity
schedules, flat (no interest) schedules and custom-amount schedules.
Nothing here touches storage, so every function is safe to call from any
context.

Every monetary output is computed at full Decimal precision and rounded
half-up once, when the field is produced.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union
import calendar

from .config import get_config
from .currency import Money, Currency
from .errors import InvalidTerms

ZERO = Decimal('0')
ONE = Decimal('1')
HUNDRED = Decimal('100')
TWELVE = Decimal('12')
# Residual below half a cent left by the full-precision level payment
DUST = Decimal('0.005')


@dataclass
class AmortizationEntry:
    """Single entry in an amortization schedule"""
    installment_number: int
    due_date: date
    payment_amount: Money       # Level payment: principal + interest
    principal_amount: Money
    interest_amount: Money      # Interest before tax
    interest_tax: Money
    insurance_amount: Money
    remaining_principal: Money  # Principal still owed after this payment

    def __post_init__(self):
        # Validate that payment equals principal + interest
        calculated_payment = self.principal_amount + self.interest_amount
        if abs(calculated_payment.amount - self.payment_amount.amount) > Decimal('0.01'):
            raise ValueError(f"Payment amount {self.payment_amount.to_string()} does not equal "
                             f"principal {self.principal_amount.to_string()} + "
                             f"interest {self.interest_amount.to_string()}")

    @property
    def total_due(self) -> Money:
        """Amount the employee owes for this installment, taxes and insurance included"""
        return self.payment_amount + self.interest_tax + self.insurance_amount


def _as_decimal(value: Union[Money, Decimal, int, str]) -> Decimal:
    if isinstance(value, Money):
        return value.amount
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def validate_terms(
    principal: Union[Money, Decimal],
    annual_rate: Decimal,
    duration_months: int,
    insurance_rate: Decimal = ZERO
) -> None:
    """Raise InvalidTerms unless the loan terms describe a valid schedule"""
    if _as_decimal(principal) <= ZERO:
        raise InvalidTerms("Principal must be greater than 0", "principal", principal)
    if _as_decimal(annual_rate) < ZERO:
        raise InvalidTerms("Interest rate cannot be negative", "annual_rate", annual_rate)
    if _as_decimal(insurance_rate) < ZERO:
        raise InvalidTerms("Insurance rate cannot be negative", "insurance_rate", insurance_rate)
    if not isinstance(duration_months, int) or isinstance(duration_months, bool) or duration_months <= 0:
        raise InvalidTerms("Duration must be a positive number of months", "duration_months", duration_months)


def monthly_rate(annual_rate: Decimal) -> Decimal:
    """Convert an annual percentage rate to a monthly fraction"""
    return _as_decimal(annual_rate) / HUNDRED / TWELVE


def _level_payment(principal: Decimal, rate: Decimal, periods: int) -> Decimal:
    # Standard loan payment formula: P * [c(1+c)^n] / [(1+c)^n - 1]
    if rate == ZERO:
        return principal / Decimal(periods)
    factor = (ONE + rate) ** periods
    return principal * (rate * factor) / (factor - ONE)


def calculate_monthly_payment(
    principal: Union[Money, Decimal],
    annual_rate: Decimal,
    duration_months: int
) -> Money:
    """
    Level monthly payment for an annuity loan.

    Args:
        principal: Amount borrowed
        annual_rate: Nominal annual rate in percent (12 means 12%)
        duration_months: Number of monthly installments

    Returns:
        Payment rounded to the currency precision
    """
    validate_terms(principal, annual_rate, duration_months)
    currency = principal.currency if isinstance(principal, Money) else Currency.MAD
    payment = _level_payment(_as_decimal(principal), monthly_rate(annual_rate), duration_months)
    return Money(payment, currency)


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def generate_amortization_schedule(
    principal: Union[Money, Decimal],
    annual_rate: Decimal,
    duration_months: int,
    start_date: date,
    insurance_rate: Optional[Decimal] = None,
    tax_rate: Optional[Decimal] = None
) -> List[AmortizationEntry]:
    """
    Generate a level-payment amortization schedule.

    Installment k falls due ``k`` months after ``start_date``. Interest is
    charged on the principal outstanding before the payment; insurance is
    charged on that same declining balance at ``insurance_rate / 100 / 12``
    per month, and tax on interest at ``tax_rate``.

    Args:
        principal: Amount borrowed (Money or Decimal; Decimal means MAD)
        annual_rate: Nominal annual rate in percent
        duration_months: Number of installments
        start_date: Loan start date
        insurance_rate: Annual insurance rate in percent (configured default if None)
        tax_rate: Tax on interest as a fraction (configured default if None)

    Returns:
        Ordered list of AmortizationEntry, one per month

    Raises:
        InvalidTerms: If the terms are not valid
    """
    config = get_config()
    if insurance_rate is None:
        insurance_rate = config.default_insurance_rate
    if tax_rate is None:
        tax_rate = config.interest_tax_rate

    validate_terms(principal, annual_rate, duration_months, insurance_rate)
    if _as_decimal(tax_rate) < ZERO:
        raise InvalidTerms("Tax rate cannot be negative", "tax_rate", tax_rate)

    currency = principal.currency if isinstance(principal, Money) else Currency.MAD
    remaining = _as_decimal(principal)
    rate = monthly_rate(annual_rate)
    insurance_monthly = _as_decimal(insurance_rate) / HUNDRED / TWELVE
    payment = _level_payment(remaining, rate, duration_months)

    schedule = []
    for number in range(1, duration_months + 1):
        interest = remaining * rate
        insurance = remaining * insurance_monthly
        principal_part = payment - interest

        remaining = remaining - principal_part
        if abs(remaining) < DUST:
            remaining = ZERO

        schedule.append(AmortizationEntry(
            installment_number=number,
            due_date=add_months(start_date, number),
            payment_amount=Money(payment, currency),
            principal_amount=Money(principal_part, currency),
            interest_amount=Money(interest, currency),
            interest_tax=Money(interest * _as_decimal(tax_rate), currency),
            insurance_amount=Money(insurance, currency),
            remaining_principal=Money(remaining, currency)
        ))

    return schedule


def generate_custom_schedule(
    amounts: Sequence[Union[Money, Decimal]],
    start_date: date,
    currency: Currency = Currency.MAD
) -> List[AmortizationEntry]:
    """
    Schedule with a manually chosen amount for each installment.

    No interest, tax or insurance is charged; the remaining principal is
    the sum of the amounts still to come.
    """
    if not amounts:
        raise InvalidTerms("At least one installment amount is required", "amounts", [])

    values = [_as_decimal(amount) for amount in amounts]
    for index, value in enumerate(values, start=1):
        if value <= ZERO:
            raise InvalidTerms("Installment amounts must be greater than 0", f"amounts[{index}]", value)

    zero = Money.zero(currency)
    remaining = sum(values, ZERO)
    schedule = []
    for number, value in enumerate(values, start=1):
        remaining -= value
        schedule.append(AmortizationEntry(
            installment_number=number,
            due_date=add_months(start_date, number),
            payment_amount=Money(value, currency),
            principal_amount=Money(value, currency),
            interest_amount=zero,
            interest_tax=zero,
            insurance_amount=zero,
            remaining_principal=Money(max(remaining, ZERO), currency)
        ))
    return schedule


def generate_flat_schedule(
    monthly_amount: Union[Money, Decimal],
    number_of_installments: int,
    start_date: date,
    currency: Currency = Currency.MAD
) -> List[AmortizationEntry]:
    """Schedule repeating one fixed amount ``number_of_installments`` times"""
    if not isinstance(number_of_installments, int) or number_of_installments <= 0:
        raise InvalidTerms("Number of installments must be positive",
                           "number_of_installments", number_of_installments)
    if isinstance(monthly_amount, Money):
        currency = monthly_amount.currency
    return generate_custom_schedule([monthly_amount] * number_of_installments, start_date, currency)


def project_repayment(
    principal: Union[Money, Decimal],
    annual_rate: Decimal,
    monthly_payment: Union[Money, Decimal],
    periods: int
) -> Tuple[Decimal, Decimal]:
    """
    Interest and principal that ``periods`` on-time payments should have covered.

    Returns:
        (interest_paid, principal_repaid), unrounded
    """
    remaining = _as_decimal(principal)
    payment = _as_decimal(monthly_payment)
    rate = monthly_rate(annual_rate)

    if rate == ZERO:
        return ZERO, min(payment * Decimal(max(periods, 0)), remaining)

    interest_paid = ZERO
    principal_repaid = ZERO
    for _ in range(max(periods, 0)):
        if remaining <= ZERO:
            break
        interest = remaining * rate
        principal_part = min(payment - interest, remaining)
        if principal_part <= ZERO:
            break
        interest_paid += interest
        principal_repaid += principal_part
        remaining -= principal_part

    return interest_paid, principal_repaid
