"""
Test suite for summary module

Tests portfolio aggregates over a project's loans.
"""

import pytest
from decimal import Decimal

from core_lending.currency import Money, Currency
from core_lending.events import EventDispatcher
from core_lending.loans import LoanLifecycle, LoanType, LoanPosition
from core_lending.summary import (
    LoanPortfolioSummary, summarize_loans, weighted_average_rate, portfolio_utilization
)


def usd(amount) -> Money:
    return Money(Decimal(str(amount)), Currency.USD)


class TestProjectSummary:
    """Senior construction loan plus mezzanine on one project"""

    def setup_method(self):
        self.lifecycle = LoanLifecycle(event_dispatcher=EventDispatcher())
        self.senior = self.lifecycle.create_loan(
            project_id="PROJ001",
            name="Senior Construction Loan",
            commitment_amount="4875000",
            interest_rate=Decimal('0.085'),
            term_months=24,
            io_period_months=24,
            origination_fee_percent=Decimal('0.01'),
            interest_reserve="425000",
        )
        self.mezz = self.lifecycle.create_loan(
            project_id="PROJ001",
            name="Mezzanine Loan",
            commitment_amount="650000",
            interest_rate=Decimal('0.12'),
            term_months=24,
            io_period_months=24,
            loan_type=LoanType.MEZZANINE,
            position=LoanPosition.SECOND,
        )
        draw = self.lifecycle.request_draw(self.senior, usd(3412500))
        self.lifecycle.approve_draw(draw)
        self.lifecycle.fund_draw(draw)

    def test_summarize_loans(self):
        summary = summarize_loans(self.lifecycle.get_project_loans("PROJ001"))

        assert isinstance(summary, LoanPortfolioSummary)
        assert summary.loan_count == 2
        assert summary.total_commitment == usd(5525000)
        assert summary.total_funded == usd(3412500)
        assert summary.available_to_fund == usd(2112500)
        assert summary.total_interest_reserve == usd(425000)
        assert summary.total_origination_fees == usd(48750)
        assert summary.count_by_status == {
            "committed": 1,
            "partially_drawn": 1,
            "fully_drawn": 0,
            "paid_off": 0,
        }

    def test_weighted_average_rate(self):
        rate = weighted_average_rate([self.senior, self.mezz])

        # (0.085 * 4,875,000 + 0.12 * 650,000) / 5,525,000
        expected = (Decimal('414375') + Decimal('78000')) / Decimal('5525000')
        assert rate == expected
        assert Decimal('0.085') < rate < Decimal('0.12')

    def test_utilization(self):
        utilization = portfolio_utilization([self.senior, self.mezz])

        assert utilization == Decimal('3412500') / Decimal('5525000') * Decimal('100')

    def test_to_dict(self):
        data = summarize_loans([self.senior, self.mezz]).to_dict()

        assert data["currency"] == "USD"
        assert data["total_commitment"] == "5525000.00"
        assert data["loan_count"] == 2
        assert data["count_by_status"]["partially_drawn"] == 1

    def test_other_currencies_are_skipped(self):
        euro = self.lifecycle.create_loan(
            "PROJ001", "Euro Bridge", Money(Decimal('1000000'), Currency.EUR), Decimal('0.07'), 12
        )
        loans = [self.senior, self.mezz, euro]

        assert summarize_loans(loans).loan_count == 2
        euro_summary = summarize_loans(loans, Currency.EUR)
        assert euro_summary.loan_count == 1
        assert euro_summary.total_commitment == Money(Decimal('1000000'), Currency.EUR)
        assert euro_summary.weighted_average_rate == Decimal('0.07')

    def test_direct_aggregates_refuse_mixed_currencies(self):
        euro = self.lifecycle.create_loan(
            "PROJ001", "Euro Bridge", Money(Decimal('1000000'), Currency.EUR), Decimal('0.07'), 12
        )

        with pytest.raises(ValueError, match="Cannot aggregate USD and EUR"):
            weighted_average_rate([self.senior, euro])
        with pytest.raises(ValueError, match="Cannot aggregate USD and EUR"):
            portfolio_utilization(iter([self.senior, self.mezz, euro]))


class TestEmptyScope:
    """Aggregates over no loans"""

    def test_empty(self):
        summary = summarize_loans([])

        assert summary.loan_count == 0
        assert summary.total_commitment == usd(0)
        assert summary.utilization == Decimal('0')
        assert summary.weighted_average_rate == Decimal('0')
        assert weighted_average_rate([]) == Decimal('0')
        assert portfolio_utilization([]) == Decimal('0')
