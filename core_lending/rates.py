"""
Interest Rate Module

Fixed and floating rate structures for loan terms. A floating rate is quoted
as a benchmark index plus a spread, optionally subject to a floor.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Optional, Union
from enum import Enum

from .currency import to_decimal
from .exceptions import InvalidLoanTermsError


class RateType(Enum):
    """How the loan's interest rate is set"""
    FIXED = "fixed"
    FLOATING = "floating"


class IndexRate(Enum):
    """Benchmark indices for floating rate loans"""
    SOFR = "sofr"
    PRIME = "prime"
    LIBOR = "libor"  # Legacy


def validate_rate(value: Union[Decimal, int, float, str], field: str, allow_none: bool = False) -> Optional[Decimal]:
    """
    Coerce an annual rate to Decimal and check it is a fraction in [0, 1).

    Raises:
        InvalidLoanTermsError: naming `field` if the value is missing,
            non-numeric or out of range
    """
    if value is None:
        if allow_none:
            return None
        raise InvalidLoanTermsError(field, "rate is required")
    try:
        rate = to_decimal(value)
    except ValueError:
        raise InvalidLoanTermsError(field, f"{value!r} is not a number")
    if rate < Decimal('0'):
        raise InvalidLoanTermsError(field, f"rate must not be negative, got {rate}")
    if rate >= Decimal('1'):
        raise InvalidLoanTermsError(field, f"rate must be a fraction below 1, got {rate}")
    return rate


@dataclass(frozen=True)
class FloatingRateTerms:
    """Index + spread pricing with an optional floor"""
    index_rate: IndexRate
    spread: Decimal
    floor_rate: Optional[Decimal] = None

    def __post_init__(self):
        if not isinstance(self.index_rate, IndexRate):
            try:
                object.__setattr__(self, 'index_rate', IndexRate(self.index_rate))
            except ValueError:
                raise InvalidLoanTermsError("index_rate", f"unknown index {self.index_rate!r}")
        object.__setattr__(self, 'spread', validate_rate(self.spread, "spread"))
        object.__setattr__(self, 'floor_rate', validate_rate(self.floor_rate, "floor_rate", allow_none=True))

    def effective_rate(self, index_value: Union[Decimal, int, float, str]) -> Decimal:
        """
        All-in annual rate for a given index fixing.

        effective = max(index + spread, floor)

        Args:
            index_value: Current value of the benchmark index as a fraction

        Returns:
            Annual rate as a Decimal fraction
        """
        index_value = validate_rate(index_value, "index_value")
        rate = index_value + self.spread
        if self.floor_rate is not None and rate < self.floor_rate:
            rate = self.floor_rate
        return validate_rate(rate, "interest_rate")

    def to_dict(self) -> dict:
        return {
            "index_rate": self.index_rate.value,
            "spread": str(self.spread),
            "floor_rate": str(self.floor_rate) if self.floor_rate is not None else None,
        }
