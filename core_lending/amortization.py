"""
Amortization Module

Pure schedule generation for development and construction loans: an optional
interest-only period followed by level-payment amortization. The final row
always retires the remaining balance, so rounding residue (or a balloon when
the amortization period is longer than the remaining term) never leaves a
tail balance.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import List, Optional, Union

from .currency import Money, Currency, to_decimal
from .exceptions import InvalidLoanTermsError
from .logging_config import get_logger
from .rates import validate_rate

# Maximum drift between payment and principal + interest on a row
ROUNDING_TOLERANCE = Decimal('0.01')

logger = get_logger("core_lending.amortization")


@dataclass(frozen=True)
class ScheduleRow:
    """Single month in an amortization schedule"""
    month: int
    payment: Money
    principal: Money
    interest: Money
    balance: Money

    def __post_init__(self):
        calculated_payment = self.principal + self.interest
        if abs(calculated_payment.amount - self.payment.amount) > ROUNDING_TOLERANCE:
            raise ValueError(f"Payment amount {self.payment.to_string()} does not equal "
                             f"principal {self.principal.to_string()} + "
                             f"interest {self.interest.to_string()}")

    @property
    def is_interest_only(self) -> bool:
        return self.principal.is_zero()

    def to_dict(self) -> dict:
        return {
            "month": self.month,
            "payment": str(self.payment.amount),
            "principal": str(self.principal.amount),
            "interest": str(self.interest.amount),
            "balance": str(self.balance.amount),
            "currency": self.payment.currency.code,
        }


@dataclass(frozen=True)
class InterestSummary:
    """Totals derived from a schedule for the loan summary view"""
    total_interest: Money
    total_principal: Money
    total_payments: Money
    monthly_average: Money
    annual_average: Money
    term_months: int


def validate_months(value, field: str, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidLoanTermsError(field, f"must be an integer, got {value!r}")
    if value < minimum:
        raise InvalidLoanTermsError(field, f"must be at least {minimum}, got {value}")
    return value


def _resolve_principal(principal: Union[Money, Decimal, int, str], currency: Currency) -> Money:
    if isinstance(principal, Money):
        amount = principal
    else:
        try:
            amount = Money(to_decimal(principal), currency)
        except ValueError:
            raise InvalidLoanTermsError("principal", f"{principal!r} is not a number")
    if amount.is_negative():
        raise InvalidLoanTermsError("principal", f"must not be negative, got {amount.to_string()}")
    return amount


def level_payment(
    principal: Union[Money, Decimal, int, str],
    annual_rate: Union[Decimal, int, str],
    periods: int,
    currency: Currency = Currency.USD
) -> Money:
    """
    Constant monthly payment that retires `principal` over `periods` months.

    Standard annuity formula: P * r / (1 - (1 + r)^-n), with r the monthly
    rate. A zero rate degenerates to straight-line P / n.
    """
    balance = _resolve_principal(principal, currency)
    rate = validate_rate(annual_rate, "annual_rate")
    periods = validate_months(periods, "periods", 1)

    monthly_rate = rate / Decimal('12')
    if monthly_rate == Decimal('0'):
        return balance / Decimal(periods)

    discount = Decimal('1') - (Decimal('1') + monthly_rate) ** (-periods)
    return Money(balance.amount * monthly_rate / discount, balance.currency)


def compute_schedule(
    principal: Union[Money, Decimal, int, str],
    annual_rate: Union[Decimal, int, str],
    term_months: int,
    io_period_months: int = 0,
    amortization_months: Optional[int] = None,
    currency: Currency = Currency.USD
) -> List[ScheduleRow]:
    """
    Generate a month-by-month amortization schedule.

    Args:
        principal: Opening balance; a Money value's currency overrides `currency`
        annual_rate: Nominal annual rate as a fraction, e.g. Decimal('0.085')
        term_months: Total life of the loan
        io_period_months: Leading months in which only interest is due
        amortization_months: Period the level payment is sized over; defaults
            to term_months - io_period_months. A longer period produces a
            balloon on the final row.
        currency: Currency for raw principal amounts

    Returns:
        Exactly term_months rows, months 1..term_months in order

    Raises:
        InvalidLoanTermsError: If any input is out of range
    """
    balance = _resolve_principal(principal, currency)
    rate = validate_rate(annual_rate, "annual_rate")
    term_months = validate_months(term_months, "term_months", 1)
    io_period_months = validate_months(io_period_months, "io_period_months", 0)
    if io_period_months > term_months:
        raise InvalidLoanTermsError(
            "io_period_months",
            f"must not exceed term_months ({term_months}), got {io_period_months}"
        )

    amortizing_months = term_months - io_period_months
    if amortization_months is not None:
        amortization_months = validate_months(amortization_months, "amortization_months", 1)
        if amortization_months < amortizing_months:
            raise InvalidLoanTermsError(
                "amortization_months",
                f"must be at least the amortizing period ({amortizing_months}), got {amortization_months}"
            )

    monthly_rate = rate / Decimal('12')
    opening_balance = balance
    zero = Money.zero(balance.currency)
    schedule: List[ScheduleRow] = []

    # Interest-only period: balance does not move
    for month in range(1, io_period_months + 1):
        interest = balance * monthly_rate
        schedule.append(ScheduleRow(
            month=month,
            payment=interest,
            principal=zero,
            interest=interest,
            balance=balance
        ))

    if amortizing_months:
        # Sized once from the balance at the start of amortization
        payment = level_payment(balance, rate, amortization_months or amortizing_months)

        for month in range(io_period_months + 1, term_months + 1):
            interest = balance * monthly_rate
            principal_amount = payment - interest

            if month == term_months or principal_amount > balance:
                # Retire exactly what is left
                principal_amount = balance

            row_payment = principal_amount + interest
            balance = balance - principal_amount

            schedule.append(ScheduleRow(
                month=month,
                payment=row_payment,
                principal=principal_amount,
                interest=interest,
                balance=balance
            ))

    logger.debug(
        f"Generated {len(schedule)}-month schedule for {opening_balance.to_string()} "
        f"at {rate} ({io_period_months} months interest-only)"
    )

    return schedule


def summarize_schedule(schedule: List[ScheduleRow]) -> InterestSummary:
    """
    Interest totals for a schedule.

    monthly_average = total_interest / term
    annual_average = total_interest / (term / 12)
    """
    if not schedule:
        zero = Money.zero(Currency.USD)
        return InterestSummary(zero, zero, zero, zero, zero, 0)

    currency = schedule[0].payment.currency
    total_interest = Money.zero(currency)
    total_principal = Money.zero(currency)
    total_payments = Money.zero(currency)
    for row in schedule:
        total_interest = total_interest + row.interest
        total_principal = total_principal + row.principal
        total_payments = total_payments + row.payment

    term_months = len(schedule)
    return InterestSummary(
        total_interest=total_interest,
        total_principal=total_principal,
        total_payments=total_payments,
        monthly_average=total_interest / Decimal(term_months),
        annual_average=Money(total_interest.amount * Decimal('12') / Decimal(term_months), currency),
        term_months=term_months
    )
