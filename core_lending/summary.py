"""
Loan Summary Module

Portfolio aggregates for the loans of a project (or any other scope):
commitment, funding, utilization and the commitment-weighted average rate.
Computed on demand from the current loan records; nothing is stored.
"""

from decimal import Decimal
from dataclasses import dataclass, field
from typing import Dict, Iterable, List

from .currency import Money, Currency
from .loans import Loan, LoanStatus


@dataclass(frozen=True)
class LoanPortfolioSummary:
    """Aggregate figures for a set of loans in one currency"""
    currency: Currency
    total_commitment: Money
    total_funded: Money
    available_to_fund: Money
    utilization: Decimal
    weighted_average_rate: Decimal
    total_interest_reserve: Money
    total_origination_fees: Money
    loan_count: int
    count_by_status: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "currency": self.currency.code,
            "total_commitment": str(self.total_commitment.amount),
            "total_funded": str(self.total_funded.amount),
            "available_to_fund": str(self.available_to_fund.amount),
            "utilization": str(self.utilization),
            "weighted_average_rate": str(self.weighted_average_rate),
            "total_interest_reserve": str(self.total_interest_reserve.amount),
            "total_origination_fees": str(self.total_origination_fees.amount),
            "loan_count": self.loan_count,
            "count_by_status": dict(self.count_by_status),
        }


def _single_currency(loans: Iterable[Loan]) -> List[Loan]:
    """Materialize `loans`, refusing to add amounts across currencies"""
    loans = list(loans)
    for loan in loans[1:]:
        if loan.currency != loans[0].currency:
            raise ValueError(
                f"Cannot aggregate {loans[0].currency.code} and {loan.currency.code} loans"
            )
    return loans


def weighted_average_rate(loans: Iterable[Loan]) -> Decimal:
    """
    Commitment-weighted mean interest rate.

    sum(rate * commitment) / sum(commitment); zero for an empty scope or
    when no loan carries a commitment.

    Raises:
        ValueError: If the loans are in more than one currency
    """
    weighted = Decimal('0')
    total_commitment = Decimal('0')
    for loan in _single_currency(loans):
        weighted += loan.interest_rate * loan.commitment_amount.amount
        total_commitment += loan.commitment_amount.amount
    if total_commitment == Decimal('0'):
        return Decimal('0')
    return weighted / total_commitment


def portfolio_utilization(loans: Iterable[Loan]) -> Decimal:
    """Total funded as a percentage of total commitment, 0 when nothing is committed"""
    funded = Decimal('0')
    commitment = Decimal('0')
    for loan in _single_currency(loans):
        funded += loan.funded_amount.amount
        commitment += loan.commitment_amount.amount
    if commitment == Decimal('0'):
        return Decimal('0')
    return funded / commitment * Decimal('100')


def summarize_loans(loans: Iterable[Loan], currency: Currency = Currency.USD) -> LoanPortfolioSummary:
    """
    Summarize loans denominated in `currency`; loans in other currencies are skipped.
    """
    scoped: List[Loan] = [loan for loan in loans if loan.currency == currency]

    zero = Money.zero(currency)
    total_commitment = zero
    total_funded = zero
    total_interest_reserve = zero
    total_origination_fees = zero
    count_by_status = {status.value: 0 for status in LoanStatus}

    for loan in scoped:
        total_commitment = total_commitment + loan.commitment_amount
        total_funded = total_funded + loan.funded_amount
        total_interest_reserve = total_interest_reserve + loan.interest_reserve
        total_origination_fees = total_origination_fees + loan.origination_fee_amount
        count_by_status[loan.status.value] += 1

    available = total_commitment - total_funded
    if available.is_negative():
        available = zero

    return LoanPortfolioSummary(
        currency=currency,
        total_commitment=total_commitment,
        total_funded=total_funded,
        available_to_fund=available,
        utilization=portfolio_utilization(scoped),
        weighted_average_rate=weighted_average_rate(scoped),
        total_interest_reserve=total_interest_reserve,
        total_origination_fees=total_origination_fees,
        loan_count=len(scoped),
        count_by_status=count_by_status
    )
