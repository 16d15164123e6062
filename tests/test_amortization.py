"""
Test suite for amortization module

Tests the level-payment annuity math. All figures are checked to the cent.
"""

import pytest
from decimal import Decimal
from datetime import date

from payroll_loans.amortization import (
    AmortizationEntry, add_months, calculate_monthly_payment, generate_amortization_schedule,
    generate_custom_schedule, generate_flat_schedule, project_repayment, validate_terms
)
from payroll_loans.currency import Money, Currency
from payroll_loans.errors import InvalidTerms


class TestMonthlyPayment:
    """Test level payment calculation"""

    def test_reference_loan_payment(self):
        """Test 120,000 at 12% over 12 months"""
        payment = calculate_monthly_payment(Money(Decimal('120000')), Decimal('12'), 12)
        assert payment == Money(Decimal('10661.85'))

    def test_zero_rate_is_linear(self):
        """Test that a zero rate divides the principal evenly"""
        payment = calculate_monthly_payment(Money(Decimal('12000')), Decimal('0'), 12)
        assert payment == Money(Decimal('1000.00'))

    def test_single_period_repays_principal_plus_interest(self):
        payment = calculate_monthly_payment(Money(Decimal('5000')), Decimal('12'), 1)
        assert payment == Money(Decimal('5050.00'))

    def test_keeps_principal_currency(self):
        payment = calculate_monthly_payment(Money(Decimal('1000'), Currency.EUR), Decimal('6'), 10)
        assert payment.currency == Currency.EUR

    @pytest.mark.parametrize("principal,rate,months", [
        (Decimal('0'), Decimal('5'), 12),
        (Decimal('-100'), Decimal('5'), 12),
        (Decimal('1000'), Decimal('-1'), 12),
        (Decimal('1000'), Decimal('5'), 0),
        (Decimal('1000'), Decimal('5'), -3),
    ])
    def test_invalid_terms(self, principal, rate, months):
        """Test malformed terms are rejected"""
        with pytest.raises(InvalidTerms):
            calculate_monthly_payment(principal, rate, months)

    def test_invalid_terms_carry_field(self):
        with pytest.raises(InvalidTerms) as exc_info:
            validate_terms(Decimal('1000'), Decimal('5'), 12, insurance_rate=Decimal('-0.5'))
        assert exc_info.value.field == "insurance_rate"
        assert "insurance_rate=-0.5" in str(exc_info.value)


class TestAmortizationSchedule:
    """Test amortization schedule generation"""

    def test_reference_schedule_first_period(self):
        """Test period 1 of 120,000 at 12% over 12 months"""
        schedule = generate_amortization_schedule(
            Money(Decimal('120000')), Decimal('12'), 12, date(2024, 1, 15),
            insurance_rate=Decimal('0.809'), tax_rate=Decimal('0.10')
        )
        first = schedule[0]

        assert len(schedule) == 12
        assert first.installment_number == 1
        assert first.due_date == date(2024, 2, 15)
        assert first.payment_amount == Money(Decimal('10661.85'))
        assert first.interest_amount == Money(Decimal('1200.00'))
        assert first.principal_amount == Money(Decimal('9461.85'))
        assert first.remaining_principal == Money(Decimal('110538.15'))
        assert first.interest_tax == Money(Decimal('120.00'))
        assert first.insurance_amount == Money(Decimal('80.90'))
        assert first.total_due == Money(Decimal('10862.75'))

    def test_insurance_follows_declining_balance(self):
        schedule = generate_amortization_schedule(
            Money(Decimal('120000')), Decimal('12'), 12, date(2024, 1, 15), insurance_rate=Decimal('0.809')
        )
        insurance = [entry.insurance_amount for entry in schedule]
        assert insurance == sorted(insurance, reverse=True)
        assert insurance[-1] < insurance[0]

    @pytest.mark.parametrize("principal,rate,months", [
        (Decimal('120000'), Decimal('12'), 12),
        (Decimal('350000'), Decimal('4.5'), 240),
        (Decimal('15000'), Decimal('7.25'), 36),
        (Decimal('999.99'), Decimal('19.9'), 7),
        (Decimal('5000'), Decimal('12'), 1),
    ])
    def test_principal_portions_sum_to_principal(self, principal, rate, months):
        """Test principal is fully amortized within rounding tolerance"""
        schedule = generate_amortization_schedule(
            Money(principal), rate, months, date(2024, 1, 1), insurance_rate=Decimal('0')
        )
        total_principal = sum((entry.principal_amount.amount for entry in schedule), Decimal('0'))

        assert abs(total_principal - principal) <= Decimal('0.01') * months
        assert schedule[-1].remaining_principal.is_zero()

    def test_remaining_principal_decreases(self):
        schedule = generate_amortization_schedule(Money(Decimal('50000')), Decimal('9'), 24, date(2024, 3, 31))
        balances = [entry.remaining_principal.amount for entry in schedule]
        assert balances == sorted(balances, reverse=True)

    @pytest.mark.parametrize("principal,rate,months", [
        (Decimal('120000'), Decimal('12'), 12),
        (Decimal('50000'), Decimal('9'), 24),
        (Decimal('850000'), Decimal('4.75'), 300),
        (Decimal('3000'), Decimal('0.5'), 7),
    ])
    def test_level_payment_clears_balance(self, principal, rate, months):
        """Test the level payment alone brings the last balance to zero"""
        schedule = generate_amortization_schedule(Money(principal), rate, months, date(2024, 1, 1))

        assert schedule[-1].remaining_principal.is_zero()
        assert all(entry.remaining_principal.is_positive() for entry in schedule[:-1])
        repaid = sum((entry.principal_amount.amount for entry in schedule), Decimal('0'))
        assert abs(repaid - principal) <= Decimal('0.01') * months

    def test_zero_rate_schedule(self):
        """Test that with no interest every principal portion equals the payment"""
        schedule = generate_amortization_schedule(
            Money(Decimal('12000')), Decimal('0'), 12, date(2024, 1, 1), insurance_rate=Decimal('0')
        )
        for entry in schedule:
            assert entry.interest_amount.is_zero()
            assert entry.interest_tax.is_zero()
            assert entry.principal_amount == entry.payment_amount == Money(Decimal('1000.00'))

    def test_month_end_due_dates(self):
        """Test due dates clamp to the end of shorter months"""
        schedule = generate_amortization_schedule(Money(Decimal('3000')), Decimal('5'), 3, date(2024, 1, 31))
        assert [entry.due_date for entry in schedule] == [
            date(2024, 2, 29), date(2024, 3, 31), date(2024, 4, 30)
        ]

    def test_defaults_come_from_config(self):
        schedule = generate_amortization_schedule(Money(Decimal('120000')), Decimal('12'), 12, date(2024, 1, 15))
        assert schedule[0].interest_tax == Money(Decimal('120.00'))
        assert schedule[0].insurance_amount == Money(Decimal('80.90'))

    def test_invalid_terms_produce_no_schedule(self):
        with pytest.raises(InvalidTerms):
            generate_amortization_schedule(Money(Decimal('1000')), Decimal('5'), 0, date(2024, 1, 1))
        with pytest.raises(InvalidTerms):
            generate_amortization_schedule(
                Money(Decimal('1000')), Decimal('5'), 12, date(2024, 1, 1), tax_rate=Decimal('-0.1')
            )


class TestFlatAndCustomSchedules:
    """Test no-interest schedules"""

    def test_flat_schedule(self):
        """Test a repeated fixed amount"""
        schedule = generate_flat_schedule(Money(Decimal('2500')), 4, date(2024, 1, 10))

        assert len(schedule) == 4
        assert all(entry.payment_amount == Money(Decimal('2500.00')) for entry in schedule)
        assert [entry.remaining_principal.amount for entry in schedule] == [
            Decimal('7500.00'), Decimal('5000.00'), Decimal('2500.00'), Decimal('0.00')
        ]
        assert schedule[0].due_date == date(2024, 2, 10)

    def test_flat_schedule_rejects_bad_count(self):
        with pytest.raises(InvalidTerms):
            generate_flat_schedule(Money(Decimal('2500')), 0, date(2024, 1, 10))

    def test_custom_schedule(self):
        schedule = generate_custom_schedule(
            [Decimal('1000'), Decimal('1500'), Decimal('500')], date(2024, 1, 1), Currency.EUR
        )
        assert [entry.remaining_principal.amount for entry in schedule] == [
            Decimal('2000.00'), Decimal('500.00'), Decimal('0.00')
        ]
        assert schedule[1].payment_amount == Money(Decimal('1500'), Currency.EUR)
        assert schedule[1].total_due == Money(Decimal('1500'), Currency.EUR)

    def test_custom_schedule_rejects_bad_amounts(self):
        with pytest.raises(InvalidTerms):
            generate_custom_schedule([], date(2024, 1, 1))
        with pytest.raises(InvalidTerms):
            generate_custom_schedule([Decimal('100'), Decimal('0')], date(2024, 1, 1))


class TestHelpers:
    """Test date and projection helpers"""

    def test_add_months(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)
        assert add_months(date(2024, 1, 15), 0) == date(2024, 1, 15)

    def test_project_repayment_matches_schedule(self):
        """Test projected interest equals the schedule's interest over the same periods"""
        principal = Money(Decimal('120000'))
        schedule = generate_amortization_schedule(principal, Decimal('12'), 12, date(2024, 1, 15))
        interest, repaid = project_repayment(principal, Decimal('12'), schedule[0].payment_amount, 3)

        scheduled_interest = sum((e.interest_amount.amount for e in schedule[:3]), Decimal('0'))
        assert abs(interest - scheduled_interest) <= Decimal('0.03')
        assert abs((principal.amount - repaid) - schedule[2].remaining_principal.amount) <= Decimal('0.05')

    def test_project_repayment_zero_rate(self):
        interest, repaid = project_repayment(Decimal('12000'), Decimal('0'), Decimal('1000'), 6)
        assert interest == Decimal('0')
        assert repaid == Decimal('6000')

    def test_entry_rejects_inconsistent_split(self):
        zero = Money.zero()
        with pytest.raises(ValueError):
            AmortizationEntry(
                installment_number=1,
                due_date=date(2024, 2, 1),
                payment_amount=Money(Decimal('100')),
                principal_amount=Money(Decimal('50')),
                interest_amount=Money(Decimal('10')),
                interest_tax=zero,
                insurance_amount=zero,
                remaining_principal=zero
            )
