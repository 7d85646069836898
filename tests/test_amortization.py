"""
Tests for the amortization calculator
"""

from decimal import Decimal

import pytest

from loan_backoffice.amortization import compute_amortization, installment_count
from loan_backoffice.errors import InvalidFrequencyError, ValidationError
from loan_backoffice.models import RepaymentFrequency


class TestComputeAmortization:
    """Test loan repayment breakdowns"""

    def test_three_month_monthly_loan(self):
        """10000 over 3 months monthly"""
        breakdown = compute_amortization(Decimal("10000"), 3, "monthly")

        assert breakdown.closing_fee == Decimal("500.00")
        assert breakdown.total_interest == Decimal("6000.00")
        assert breakdown.total_repayment == Decimal("16500.00")
        assert breakdown.installment_count == 3
        assert breakdown.installment_amount == Decimal("5500.00")
        assert breakdown.interest_rate_monthly == "20.00%"

    def test_six_month_weekly_loan(self):
        """Weekly repayment means four installments per month"""
        breakdown = compute_amortization("2500", 6, RepaymentFrequency.WEEKLY)

        assert breakdown.closing_fee == Decimal("125.00")
        assert breakdown.total_interest == Decimal("3000.00")
        assert breakdown.total_repayment == Decimal("5625.00")
        assert breakdown.installment_count == 24
        assert breakdown.installment_amount == Decimal("234.38")

    def test_rounding_half_up(self):
        """Fees are rounded half away from zero to the cent"""
        breakdown = compute_amortization("100.10", 3, "monthly")

        # 100.10 * 0.05 = 5.005
        assert breakdown.closing_fee == Decimal("5.01")
        assert breakdown.total_interest == Decimal("60.06")
        assert breakdown.total_repayment == Decimal("165.17")

    def test_custom_rates(self):
        """Rates can be overridden"""
        breakdown = compute_amortization(
            "1000", 3, "monthly",
            monthly_interest_rate=Decimal("0.10"), closing_fee_rate=Decimal("0"),
        )
        assert breakdown.total_repayment == Decimal("1300.00")
        assert breakdown.interest_rate_monthly == "10.00%"

    def test_total_is_sum_of_parts(self):
        """Principal, interest and fee add up exactly to the total"""
        breakdown = compute_amortization("3333.33", 6, "bi-weekly")
        assert breakdown.principal + breakdown.total_interest + breakdown.closing_fee \
            == breakdown.total_repayment

    def test_to_dict_serializes_amounts_as_strings(self):
        data = compute_amortization("10000", 3, "monthly").to_dict()
        assert data["total_repayment"] == "16500.00"
        assert data["frequency"] == "monthly"
        assert data["installment_count"] == 3

    @pytest.mark.parametrize("principal", ["0", "-5", Decimal("0.00")])
    def test_non_positive_principal_rejected(self, principal):
        with pytest.raises(ValidationError):
            compute_amortization(principal, 3, "monthly")

    @pytest.mark.parametrize("tenure", [0, -3, "3", True])
    def test_invalid_tenure_rejected(self, tenure):
        with pytest.raises(ValidationError):
            compute_amortization("1000", tenure, "monthly")

    def test_tenure_policy_not_enforced_here(self):
        """Any positive tenure computes; approval enforces the 3/6 policy"""
        breakdown = compute_amortization("1000", 12, "monthly")
        assert breakdown.installment_count == 12

    def test_unknown_frequency_rejected(self):
        with pytest.raises(InvalidFrequencyError) as exc_info:
            compute_amortization("1000", 3, "yearly")
        assert exc_info.value.code == "INVALID_FREQUENCY"

    def test_negative_rate_rejected(self):
        with pytest.raises(ValidationError):
            compute_amortization("1000", 3, "monthly", monthly_interest_rate="-0.1")


class TestInstallmentCount:
    """Test installments per tenure"""

    @pytest.mark.parametrize("frequency,expected", [
        ("monthly", 3),
        ("bi-weekly", 6),
        ("biweekly", 6),
        ("bi_weekly", 6),
        ("weekly", 12),
        ("daily", 90),
    ])
    def test_counts_for_three_months(self, frequency, expected):
        assert installment_count(3, frequency) == expected
