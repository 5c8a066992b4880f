"""
Test suite for currency module

Tests Money arithmetic, rounding and Decimal parsing.
All monetary calculations must use Decimal precision.
"""

import pytest
from decimal import Decimal

from core_lending.currency import Money, Currency, as_money, decimal_from_string, to_decimal


class TestMoney:
    """Test Money class operations"""

    def test_money_creation(self):
        money = Money(Decimal('100.50'), Currency.USD)
        assert money.amount == Decimal('100.50')
        assert money.currency == Currency.USD

        # Rounded half-up to currency precision
        assert Money(Decimal('100.555'), Currency.USD).amount == Decimal('100.56')
        assert Money(Decimal('100.7'), Currency.JPY).amount == Decimal('101')

    def test_non_decimal_amounts_are_converted(self):
        assert Money(1500, Currency.USD).amount == Decimal('1500.00')
        assert Money("1,250.50", Currency.USD).amount == Decimal('1250.50')

    def test_money_arithmetic(self):
        money1 = Money(Decimal('100.50'), Currency.USD)
        money2 = Money(Decimal('50.25'), Currency.USD)

        assert (money1 + money2).amount == Decimal('150.75')
        assert (money1 - money2).amount == Decimal('50.25')
        assert (money1 * Decimal('2')).amount == Decimal('201.00')
        assert (money1 / Decimal('4')).amount == Decimal('25.13')
        assert (-money1).amount == Decimal('-100.50')
        assert abs(-money1) == money1

    def test_currency_mismatch(self):
        usd = Money(Decimal('100'), Currency.USD)
        eur = Money(Decimal('100'), Currency.EUR)

        with pytest.raises(ValueError, match="Cannot add"):
            usd + eur
        with pytest.raises(ValueError, match="Cannot compare"):
            usd < eur
        assert usd != eur

    def test_comparisons(self):
        small = Money(Decimal('10'), Currency.USD)
        large = Money(Decimal('20'), Currency.USD)

        assert small < large
        assert small <= large
        assert large > small
        assert large >= small
        assert small == Money(Decimal('10.00'), Currency.USD)

    def test_sign_checks(self):
        assert Money.zero(Currency.USD).is_zero()
        assert Money(Decimal('0.01'), Currency.USD).is_positive()
        assert Money(Decimal('-0.01'), Currency.USD).is_negative()

    def test_to_string_and_dict(self):
        money = Money(Decimal('4875000'), Currency.USD)

        assert money.to_string() == "USD 4,875,000.00"
        assert money.to_dict() == {"amount": "4875000.00", "currency": "USD"}

    def test_hashable(self):
        amounts = {Money(Decimal('1'), Currency.USD), Money(Decimal('1.00'), Currency.USD)}
        assert len(amounts) == 1


class TestCurrency:
    """Test currency lookup"""

    def test_from_code(self):
        assert Currency.from_code("usd") == Currency.USD
        with pytest.raises(ValueError, match="Unknown currency"):
            Currency.from_code("XYZ")

    def test_minor_unit(self):
        assert Currency.USD.minor_unit == Decimal('0.01')
        assert Currency.JPY.minor_unit == Decimal('1')


class TestDecimalParsing:
    """Test string and numeric coercion"""

    def test_decimal_from_string_formats(self):
        assert decimal_from_string("$1,250,000.00") == Decimal('1250000.00')
        assert decimal_from_string("1,250") == Decimal('1250')
        assert decimal_from_string("12,5") == Decimal('12.5')
        assert decimal_from_string("0.085") == Decimal('0.085')

    def test_decimal_from_string_rejects_garbage(self):
        with pytest.raises(ValueError):
            decimal_from_string("")
        with pytest.raises(ValueError, match="Cannot convert"):
            decimal_from_string("n/a")

    def test_to_decimal(self):
        assert to_decimal(Decimal('1.5')) == Decimal('1.5')
        assert to_decimal(3) == Decimal('3')
        assert to_decimal(0.085) == Decimal('0.085')
        with pytest.raises(ValueError):
            to_decimal(True)
        with pytest.raises(ValueError):
            to_decimal([1])

    def test_as_money(self):
        money = Money(Decimal('5'), Currency.EUR)

        assert as_money(money, Currency.USD) is money
        assert as_money("250000", Currency.USD) == Money(Decimal('250000'), Currency.USD)
