"""
Loan Module

Handles loan commitments, draw requests against the undrawn commitment,
draw approval and funding, payment schedule generation and payment posting
for development and construction financing.

Every transition on a loan runs under that loan's lock and validates before
it mutates anything, so a rejected call leaves loan, draw and payment
records exactly as they were.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional, Union
from enum import Enum
import calendar
import threading
import uuid

from .amortization import ScheduleRow, compute_schedule, validate_months
from .config import get_config
from .currency import Money, Currency, as_money
from .events import DomainEvent, EventDispatcher, EventPayload, get_global_dispatcher
from .exceptions import (
    LendingError, InvalidLoanTermsError, ExceedsCommitmentError,
    InvalidTransitionError, InvalidDrawAmountError,
    LoanNotFoundError, DrawNotFoundError, PaymentNotFoundError
)
from .logging_config import get_logger, log_action
from .rates import RateType, FloatingRateTerms, validate_rate


class LoanStatus(Enum):
    """Loan funding lifecycle states"""
    COMMITTED = "committed"              # Commitment in place, nothing funded
    PARTIALLY_DRAWN = "partially_drawn"  # Some of the commitment funded
    FULLY_DRAWN = "fully_drawn"          # Funded amount equals commitment
    PAID_OFF = "paid_off"                # Funded principal repaid by posted payments


class DrawStatus(Enum):
    """Draw request states, forward only"""
    REQUESTED = "requested"
    APPROVED = "approved"
    FUNDED = "funded"


class PaymentStatus(Enum):
    """Debt service payment states"""
    SCHEDULED = "scheduled"
    PAID = "paid"


class LoanType(Enum):
    """Kinds of development financing"""
    CONSTRUCTION = "construction"
    BRIDGE = "bridge"
    PERMANENT = "permanent"
    MEZZANINE = "mezzanine"
    PREFERRED_EQUITY = "preferred_equity"
    LINE_OF_CREDIT = "line_of_credit"


class LoanPosition(Enum):
    """Lien position"""
    FIRST = "first"
    SECOND = "second"
    THIRD = "third"
    UNSECURED = "unsecured"


# Only legal next state for each draw status
DRAW_TRANSITIONS = {
    DrawStatus.REQUESTED: DrawStatus.APPROVED,
    DrawStatus.APPROVED: DrawStatus.FUNDED,
}


def _serialize(value: Any) -> Any:
    """Convert record values to JSON-safe primitives"""
    if isinstance(value, Money):
        return value.to_dict()
    if isinstance(value, FloatingRateTerms):
        return value.to_dict()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    return value


def _coerce_enum(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        raise InvalidLoanTermsError(field, f"unknown value {value!r}")


def _coerce_amount(value, currency: Currency, field: str) -> Money:
    try:
        amount = as_money(value, currency)
    except ValueError:
        raise InvalidLoanTermsError(field, f"{value!r} is not a number")
    if amount.currency != currency:
        raise InvalidLoanTermsError(field, f"currency {amount.currency.code} does not match {currency.code}")
    if amount.is_negative():
        raise InvalidLoanTermsError(field, f"must not be negative, got {amount.to_string()}")
    return amount


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


@dataclass
class LendingRecord:
    """Base class for lifecycle records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a dictionary of JSON-safe values"""
        return {f.name: _serialize(getattr(self, f.name)) for f in fields(self)}


@dataclass
class Loan(LendingRecord):
    """Financing commitment owned by a project"""
    project_id: str
    name: str
    commitment_amount: Money
    interest_rate: Decimal              # e.g. Decimal('0.085') for 8.5%
    term_months: int
    io_period_months: int = 0
    amortization_months: Optional[int] = None
    rate_type: RateType = RateType.FIXED
    floating_terms: Optional[FloatingRateTerms] = None
    loan_type: LoanType = LoanType.CONSTRUCTION
    position: LoanPosition = LoanPosition.FIRST
    lender_name: str = ""
    funded_amount: Optional[Money] = None
    origination_fee_percent: Decimal = Decimal('0')
    exit_fee_percent: Decimal = Decimal('0')
    interest_reserve: Optional[Money] = None
    status: LoanStatus = LoanStatus.COMMITTED

    def __post_init__(self):
        if not isinstance(self.commitment_amount, Money):
            raise InvalidLoanTermsError("commitment_amount", "must be a Money amount")
        if self.commitment_amount.is_negative():
            raise InvalidLoanTermsError(
                "commitment_amount", f"must not be negative, got {self.commitment_amount.to_string()}"
            )
        currency = self.commitment_amount.currency

        self.interest_rate = validate_rate(self.interest_rate, "interest_rate")
        self.term_months = validate_months(self.term_months, "term_months", 1)
        self.io_period_months = validate_months(self.io_period_months, "io_period_months", 0)
        if self.io_period_months > self.term_months:
            raise InvalidLoanTermsError(
                "io_period_months",
                f"must not exceed term_months ({self.term_months}), got {self.io_period_months}"
            )
        if self.amortization_months is not None:
            self.amortization_months = validate_months(self.amortization_months, "amortization_months", 1)
            if self.amortization_months < self.amortizing_months:
                raise InvalidLoanTermsError(
                    "amortization_months",
                    f"must be at least the amortizing period ({self.amortizing_months}), "
                    f"got {self.amortization_months}"
                )

        self.rate_type = _coerce_enum(RateType, self.rate_type, "rate_type")
        if self.rate_type == RateType.FLOATING and self.floating_terms is None:
            raise InvalidLoanTermsError("floating_terms", "floating rate loans need index, spread and floor terms")
        if self.rate_type == RateType.FIXED and self.floating_terms is not None:
            raise InvalidLoanTermsError("floating_terms", "only apply to floating rate loans")

        self.loan_type = _coerce_enum(LoanType, self.loan_type, "loan_type")
        self.position = _coerce_enum(LoanPosition, self.position, "position")
        self.status = _coerce_enum(LoanStatus, self.status, "status")

        if self.funded_amount is None:
            self.funded_amount = Money.zero(currency)
        self.funded_amount = _coerce_amount(self.funded_amount, currency, "funded_amount")
        if self.funded_amount > self.commitment_amount:
            raise InvalidLoanTermsError(
                "funded_amount",
                f"{self.funded_amount.to_string()} exceeds commitment {self.commitment_amount.to_string()}"
            )

        if self.interest_reserve is None:
            self.interest_reserve = Money.zero(currency)
        self.interest_reserve = _coerce_amount(self.interest_reserve, currency, "interest_reserve")

        self.origination_fee_percent = validate_rate(self.origination_fee_percent, "origination_fee_percent")
        self.exit_fee_percent = validate_rate(self.exit_fee_percent, "exit_fee_percent")

    @property
    def currency(self) -> Currency:
        return self.commitment_amount.currency

    @property
    def amortizing_months(self) -> int:
        """Months after the interest-only period"""
        return self.term_months - self.io_period_months

    @property
    def available_to_fund(self) -> Money:
        """Undrawn commitment"""
        remaining = self.commitment_amount - self.funded_amount
        if remaining.is_negative():
            return Money.zero(self.currency)
        return remaining

    @property
    def utilization(self) -> Decimal:
        """Funded share of the commitment as a percentage (0-100)"""
        if self.commitment_amount.is_zero():
            return Decimal('0')
        return self.funded_amount.amount / self.commitment_amount.amount * Decimal('100')

    @property
    def origination_fee_amount(self) -> Money:
        return self.commitment_amount * self.origination_fee_percent

    @property
    def exit_fee_amount(self) -> Money:
        return self.commitment_amount * self.exit_fee_percent

    @property
    def schedule_principal(self) -> Money:
        """Balance the payment schedule is built on: funded amount, else the commitment"""
        if self.funded_amount.is_positive():
            return self.funded_amount
        return self.commitment_amount

    @property
    def is_paid_off(self) -> bool:
        return self.status == LoanStatus.PAID_OFF

    def current_rate(self, index_value: Optional[Union[Decimal, str]] = None) -> Decimal:
        """
        Annual rate in effect.

        Fixed loans return their contract rate. Floating loans reprice
        against `index_value` when one is supplied, otherwise the stored
        all-in rate is used.
        """
        if self.rate_type == RateType.FLOATING and index_value is not None:
            return self.floating_terms.effective_rate(index_value)
        return self.interest_rate

    def build_schedule(self, index_value: Optional[Union[Decimal, str]] = None) -> List[ScheduleRow]:
        """Amortization schedule for the loan's current balance and terms"""
        return compute_schedule(
            self.schedule_principal,
            self.current_rate(index_value),
            self.term_months,
            self.io_period_months,
            self.amortization_months,
        )


@dataclass
class Draw(LendingRecord):
    """Disbursement request against a loan's undrawn commitment"""
    loan_id: str
    draw_number: int
    amount: Money
    status: DrawStatus = DrawStatus.REQUESTED
    draw_date: Optional[date] = None
    approved_at: Optional[datetime] = None
    funded_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        """Requested or approved but not yet funded"""
        return self.status in (DrawStatus.REQUESTED, DrawStatus.APPROVED)


@dataclass
class Payment(LendingRecord):
    """Scheduled debt service, copied once from a schedule row"""
    loan_id: str
    payment_number: int
    beginning_balance: Money
    principal_payment: Money
    interest_payment: Money
    total_payment: Money
    ending_balance: Money
    payment_date: Optional[date] = None
    status: PaymentStatus = PaymentStatus.SCHEDULED
    paid_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return self.status == PaymentStatus.PAID


def derive_loan_status(commitment_amount: Money, funded_amount: Money) -> LoanStatus:
    """Funding status implied by the funded amount"""
    if funded_amount.is_zero():
        return LoanStatus.COMMITTED
    if funded_amount >= commitment_amount:
        return LoanStatus.FULLY_DRAWN
    return LoanStatus.PARTIALLY_DRAWN


class LoanLifecycle:
    """
    Manages the draw and payment lifecycle of registered loans.

    Records are held in process; callers own persistence. Transitions on
    one loan are serialized with a per-loan lock so concurrent draw requests
    and fundings can never overdraw the commitment.
    """

    def __init__(self, event_dispatcher: Optional[EventDispatcher] = None):
        self.event_dispatcher = event_dispatcher
        self.logger = get_logger("core_lending.loans")

        self._loans: Dict[str, Loan] = {}
        self._draws: Dict[str, Draw] = {}
        self._payments: Dict[str, List[Payment]] = {}   # by loan id
        self._payment_index: Dict[str, Payment] = {}
        self._lock = threading.RLock()
        self._loan_locks: Dict[str, threading.RLock] = {}

    # Loans

    def create_loan(
        self,
        project_id: str,
        name: str,
        commitment_amount: Union[Money, Decimal, int, str],
        interest_rate: Union[Decimal, str],
        term_months: int,
        currency: Optional[Currency] = None,
        **terms
    ) -> Loan:
        """
        Create and register a new loan in the committed state.

        Args:
            project_id: Owning project
            name: Display name, e.g. "Senior Construction Loan"
            commitment_amount: Maximum principal available
            interest_rate: Annual rate as a fraction
            term_months: Total life of the loan
            currency: Currency for raw amounts; defaults to config.default_currency
            **terms: Any other Loan field (io_period_months, rate_type, ...)

        Returns:
            The registered Loan
        """
        for reserved in ("id", "created_at", "updated_at", "funded_amount", "status"):
            if reserved in terms:
                raise InvalidLoanTermsError(reserved, "is set by the lifecycle, not the caller")

        if isinstance(commitment_amount, Money):
            currency = commitment_amount.currency
        elif currency is None:
            currency = Currency.from_code(get_config().default_currency)

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            project_id=project_id,
            name=name,
            commitment_amount=_coerce_amount(commitment_amount, currency, "commitment_amount"),
            interest_rate=interest_rate,
            term_months=term_months,
            **terms
        )
        return self.register_loan(loan)

    def register_loan(self, loan: Loan) -> Loan:
        """
        Adopt a loan built elsewhere (e.g. loaded by the persistence layer).

        The funding status is re-derived from the funded amount unless the
        loan is already paid off.
        """
        with self._lock:
            if loan.id in self._loans:
                raise LendingError(f"Loan {loan.id} is already registered")
            if loan.status != LoanStatus.PAID_OFF:
                loan.status = derive_loan_status(loan.commitment_amount, loan.funded_amount)
            self._loans[loan.id] = loan
            self._payments[loan.id] = []
            self._loan_locks[loan.id] = threading.RLock()

        log_action(
            self.logger, "info", f"Loan registered: {loan.name}",
            action="register_loan", resource=f"loan:{loan.id}",
            extra={
                "project_id": loan.project_id,
                "commitment_amount": str(loan.commitment_amount.amount),
                "interest_rate": str(loan.interest_rate),
                "term_months": loan.term_months,
                "io_period_months": loan.io_period_months,
            }
        )
        self._publish(DomainEvent.LOAN_CREATED, "loan", loan.id, {
            "project_id": loan.project_id,
            "commitment_amount": str(loan.commitment_amount.amount),
            "currency": loan.currency.code,
            "status": loan.status.value,
        })
        return loan

    def get_loan(self, loan_id: str) -> Loan:
        with self._lock:
            loan = self._loans.get(loan_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def get_project_loans(self, project_id: str) -> List[Loan]:
        """All loans owned by a project, oldest first"""
        with self._lock:
            loans = [loan for loan in self._loans.values() if loan.project_id == project_id]
        return sorted(loans, key=lambda loan: loan.created_at)

    def get_all_loans(self) -> List[Loan]:
        with self._lock:
            return list(self._loans.values())

    # Draws

    def get_draw(self, draw_id: str) -> Draw:
        with self._lock:
            draw = self._draws.get(draw_id)
        if draw is None:
            raise DrawNotFoundError(f"Draw {draw_id} not found")
        return draw

    def get_loan_draws(self, loan: Union[Loan, str]) -> List[Draw]:
        """Draws for a loan ordered by draw number"""
        loan = self._resolve_loan(loan)
        with self._lock:
            draws = [draw for draw in self._draws.values() if draw.loan_id == loan.id]
        return sorted(draws, key=lambda draw: draw.draw_number)

    def request_draw(
        self,
        loan: Union[Loan, str],
        amount: Union[Money, Decimal, int, str],
        draw_date: Optional[date] = None
    ) -> Draw:
        """
        Request a draw against the loan's undrawn commitment.

        Requested and approved draws count against the commitment as well as
        funded ones, so the loan can never be overdrawn once they fund.

        Raises:
            InvalidDrawAmountError: If the amount is not positive or in another currency
            InvalidTransitionError: If the loan is paid off or has posted payments
            ExceedsCommitmentError: If the draw would exceed the commitment
        """
        loan = self._resolve_loan(loan)
        resource = f"loan:{loan.id}"

        with self._loan_lock(loan.id):
            try:
                amount = as_money(amount, loan.currency)
            except ValueError:
                self._reject(InvalidDrawAmountError(f"Draw amount {amount!r} is not a number"),
                             "request_draw", resource)
            if amount.currency != loan.currency:
                self._reject(InvalidDrawAmountError(
                    f"Draw currency {amount.currency.code} does not match loan currency {loan.currency.code}"
                ), "request_draw", resource)
            if not amount.is_positive():
                self._reject(InvalidDrawAmountError(
                    f"Draw amount must be positive, got {amount.to_string()}"
                ), "request_draw", resource)
            self._check_drawable(loan, "request_draw", resource)

            draws = self.get_loan_draws(loan)
            pending = Money.zero(loan.currency)
            for draw in draws:
                if draw.is_pending:
                    pending = pending + draw.amount
            available = loan.commitment_amount - loan.funded_amount - pending

            if amount > available:
                self._reject(ExceedsCommitmentError(
                    f"Draw of {amount.to_string()} exceeds available commitment {available.to_string()} "
                    f"(funded {loan.funded_amount.to_string()}, pending {pending.to_string()})",
                    requested=amount,
                    available=available
                ), "request_draw", resource)

            now = datetime.now(timezone.utc)
            draw = Draw(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                draw_number=max((d.draw_number for d in draws), default=0) + 1,
                amount=amount,
                status=DrawStatus.REQUESTED,
                draw_date=draw_date
            )
            with self._lock:
                self._draws[draw.id] = draw

        log_action(
            self.logger, "info", f"Draw #{draw.draw_number} requested for {amount.to_string()}",
            action="request_draw", resource=f"draw:{draw.id}",
            extra={"loan_id": loan.id, "amount": str(amount.amount)}
        )
        self._publish(DomainEvent.DRAW_REQUESTED, "draw", draw.id, self._draw_event_data(draw))
        return draw

    def approve_draw(self, draw: Union[Draw, str]) -> Draw:
        """
        Approve a requested draw. No funds move.

        Raises:
            InvalidTransitionError: If the draw is not in the requested state
        """
        draw = self._resolve_draw(draw)

        with self._loan_lock(draw.loan_id):
            self._check_draw_transition(draw, DrawStatus.APPROVED, "approve_draw")
            now = datetime.now(timezone.utc)
            draw.status = DrawStatus.APPROVED
            draw.approved_at = now
            draw.updated_at = now

        log_action(
            self.logger, "info", f"Draw #{draw.draw_number} approved",
            action="approve_draw", resource=f"draw:{draw.id}",
            extra={"loan_id": draw.loan_id, "amount": str(draw.amount.amount)}
        )
        self._publish(DomainEvent.DRAW_APPROVED, "draw", draw.id, self._draw_event_data(draw))
        return draw

    def fund_draw(self, draw: Union[Draw, str]) -> Draw:
        """
        Fund an approved draw and add it to the loan's funded amount.

        The loan moves to partially_drawn or fully_drawn accordingly. Any
        scheduled payments are discarded, since they no longer cover the
        funded balance; call generate_payments again.

        Raises:
            InvalidTransitionError: If the draw is not approved, or the loan is
                paid off or already has posted payments
            ExceedsCommitmentError: If funding would exceed the commitment
        """
        draw = self._resolve_draw(draw)
        loan = self._resolve_loan(draw.loan_id)
        resource = f"draw:{draw.id}"

        with self._loan_lock(loan.id):
            self._check_draw_transition(draw, DrawStatus.FUNDED, "fund_draw")
            self._check_drawable(loan, "fund_draw", resource)

            funded_amount = loan.funded_amount + draw.amount
            if funded_amount > loan.commitment_amount:
                self._reject(ExceedsCommitmentError(
                    f"Funding draw #{draw.draw_number} would take {loan.name} to "
                    f"{funded_amount.to_string()}, above commitment {loan.commitment_amount.to_string()}",
                    requested=draw.amount,
                    available=loan.available_to_fund
                ), "fund_draw", resource)

            previous_status = loan.status
            status = derive_loan_status(loan.commitment_amount, funded_amount)
            now = datetime.now(timezone.utc)

            draw.status = DrawStatus.FUNDED
            draw.funded_at = now
            draw.updated_at = now
            loan.funded_amount = funded_amount
            loan.status = status
            loan.updated_at = now

            # Scheduled payments were sized on the old balance
            stale_payments = self._payments.get(loan.id, [])
            with self._lock:
                for payment in stale_payments:
                    self._payment_index.pop(payment.id, None)
                self._payments[loan.id] = []

        log_action(
            self.logger, "info", f"Draw #{draw.draw_number} funded, {loan.utilization:.1f}% utilized",
            action="fund_draw", resource=resource,
            extra={
                "loan_id": loan.id,
                "amount": str(draw.amount.amount),
                "funded_amount": str(loan.funded_amount.amount),
                "status": loan.status.value,
                "discarded_payments": len(stale_payments),
            }
        )
        self._publish(DomainEvent.DRAW_FUNDED, "draw", draw.id, self._draw_event_data(draw))
        if status != previous_status:
            self._publish_status_change(loan, previous_status)
        return draw

    # Payments

    def get_loan_payments(self, loan: Union[Loan, str]) -> List[Payment]:
        """Payments for a loan ordered by payment number"""
        loan = self._resolve_loan(loan)
        with self._lock:
            payments = list(self._payments.get(loan.id, []))
        return sorted(payments, key=lambda payment: payment.payment_number)

    def get_payment(self, payment_id: str) -> Payment:
        with self._lock:
            payment = self._payment_index.get(payment_id)
        if payment is None:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        return payment

    def generate_payments(
        self,
        loan: Union[Loan, str],
        first_payment_date: Optional[date] = None,
        index_value: Optional[Union[Decimal, str]] = None
    ) -> List[Payment]:
        """
        Build the loan's payment records from its amortization schedule.

        Payments are sized on the funded amount, so the loan must have been
        drawn. Regeneration replaces every scheduled payment; it is refused
        once any payment has been posted.

        Args:
            loan: Loan or loan id
            first_payment_date: Due date of payment 1; later payments fall monthly
            index_value: Benchmark fixing for floating rate loans

        Returns:
            Payment records ordered by payment number
        """
        loan = self._resolve_loan(loan)
        resource = f"loan:{loan.id}"

        with self._loan_lock(loan.id):
            existing = self._payments.get(loan.id, [])
            if any(payment.is_paid for payment in existing):
                self._reject(InvalidTransitionError(
                    "payment schedule", PaymentStatus.PAID.value, "regenerated",
                    f"Loan {loan.id} has posted payments; its schedule can no longer be regenerated"
                ), "generate_payments", resource)
            if not loan.funded_amount.is_positive():
                self._reject(InvalidTransitionError(
                    "payment schedule", loan.status.value, "scheduled",
                    f"Loan {loan.id} has no funded principal to schedule payments on"
                ), "generate_payments", resource)

            schedule = loan.build_schedule(index_value)
            now = datetime.now(timezone.utc)
            beginning_balance = loan.funded_amount
            payments = []

            for row in schedule:
                payment_date = None
                if first_payment_date is not None:
                    payment_date = add_months(first_payment_date, row.month - 1)
                payments.append(Payment(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    payment_number=row.month,
                    beginning_balance=beginning_balance,
                    principal_payment=row.principal,
                    interest_payment=row.interest,
                    total_payment=row.payment,
                    ending_balance=row.balance,
                    payment_date=payment_date
                ))
                beginning_balance = row.balance

            with self._lock:
                for payment in existing:
                    self._payment_index.pop(payment.id, None)
                self._payments[loan.id] = payments
                for payment in payments:
                    self._payment_index[payment.id] = payment

        log_action(
            self.logger, "info", f"Scheduled {len(payments)} payments for {loan.name}",
            action="generate_payments", resource=resource,
            extra={
                "principal": str(loan.funded_amount.amount),
                "replaced": len(existing),
            }
        )
        self._publish(DomainEvent.PAYMENTS_SCHEDULED, "loan", loan.id, {
            "payment_count": len(payments),
            "principal": str(loan.funded_amount.amount),
        })
        return payments

    def record_payment(self, payment: Union[Payment, str]) -> Payment:
        """
        Post a scheduled payment.

        The loan is paid off once every payment is posted and the posted
        principal equals the funded amount. An interest-only schedule leaves
        the balance outstanding, so it never pays the loan off on its own.

        Raises:
            InvalidTransitionError: If the payment has already been posted
        """
        payment = self._resolve_payment(payment)
        loan = self._resolve_loan(payment.loan_id)
        resource = f"payment:{payment.id}"

        with self._loan_lock(loan.id):
            if payment.is_paid:
                self._reject(InvalidTransitionError(
                    "payment", payment.status.value, PaymentStatus.PAID.value,
                    f"Payment #{payment.payment_number} has already been posted"
                ), "record_payment", resource)

            now = datetime.now(timezone.utc)
            payment.status = PaymentStatus.PAID
            payment.paid_at = now
            payment.updated_at = now

            previous_status = loan.status
            payments = self._payments[loan.id]
            paid_off = (
                all(p.is_paid for p in payments)
                and self._repaid_principal(loan, payments) == loan.funded_amount
            )
            if paid_off:
                loan.status = LoanStatus.PAID_OFF
                loan.updated_at = now

        log_action(
            self.logger, "info", f"Payment #{payment.payment_number} posted for {payment.total_payment.to_string()}",
            action="record_payment", resource=resource,
            extra={"loan_id": loan.id, "ending_balance": str(payment.ending_balance.amount)}
        )
        self._publish(DomainEvent.PAYMENT_RECORDED, "payment", payment.id, {
            "loan_id": loan.id,
            "payment_number": payment.payment_number,
            "total_payment": str(payment.total_payment.amount),
        })
        if paid_off and previous_status != LoanStatus.PAID_OFF:
            self._publish_status_change(loan, previous_status)
            self._publish(DomainEvent.LOAN_PAID_OFF, "loan", loan.id, {
                "funded_amount": str(loan.funded_amount.amount),
            })
        return payment

    def outstanding_principal(self, loan: Union[Loan, str]) -> Money:
        """Funded principal not yet repaid by posted payments"""
        loan = self._resolve_loan(loan)
        with self._loan_lock(loan.id):
            repaid = self._repaid_principal(loan, self._payments.get(loan.id, []))
            return loan.funded_amount - repaid

    # Internals

    def _repaid_principal(self, loan: Loan, payments: List[Payment]) -> Money:
        repaid = Money.zero(loan.currency)
        for payment in payments:
            if payment.is_paid:
                repaid = repaid + payment.principal_payment
        return repaid

    def _check_drawable(self, loan: Loan, action: str, resource: str) -> None:
        if loan.is_paid_off:
            self._reject(InvalidTransitionError(
                "loan", loan.status.value, "drawn", f"Loan {loan.id} is paid off and cannot be drawn"
            ), action, resource)
        if any(payment.is_paid for payment in self._payments.get(loan.id, [])):
            self._reject(InvalidTransitionError(
                "loan", "repaying", "drawn",
                f"Loan {loan.id} has posted payments and cannot take further draws"
            ), action, resource)

    def _loan_lock(self, loan_id: str) -> threading.RLock:
        with self._lock:
            lock = self._loan_locks.get(loan_id)
            if lock is None:
                lock = self._loan_locks[loan_id] = threading.RLock()
            return lock

    def _resolve_loan(self, loan: Union[Loan, str]) -> Loan:
        loan_id = loan.id if isinstance(loan, Loan) else loan
        return self.get_loan(loan_id)

    def _resolve_draw(self, draw: Union[Draw, str]) -> Draw:
        draw_id = draw.id if isinstance(draw, Draw) else draw
        return self.get_draw(draw_id)

    def _resolve_payment(self, payment: Union[Payment, str]) -> Payment:
        payment_id = payment.id if isinstance(payment, Payment) else payment
        return self.get_payment(payment_id)

    def _check_draw_transition(self, draw: Draw, target: DrawStatus, action: str) -> None:
        if DRAW_TRANSITIONS.get(draw.status) != target:
            self._reject(InvalidTransitionError("draw", draw.status.value, target.value,
                                                f"Draw #{draw.draw_number} is {draw.status.value}, "
                                                f"cannot move to {target.value}"),
                         action, f"draw:{draw.id}")

    def _reject(self, error: LendingError, action: str, resource: str) -> None:
        log_action(self.logger, "warning", str(error), action=action, resource=resource,
                   extra={"error": type(error).__name__})
        raise error

    def _draw_event_data(self, draw: Draw) -> Dict[str, Any]:
        return {
            "loan_id": draw.loan_id,
            "draw_number": draw.draw_number,
            "amount": str(draw.amount.amount),
            "currency": draw.amount.currency.code,
            "status": draw.status.value,
        }

    def _publish_status_change(self, loan: Loan, previous_status: LoanStatus) -> None:
        log_action(
            self.logger, "info", f"Loan {loan.name} moved from {previous_status.value} to {loan.status.value}",
            action="loan_status_changed", resource=f"loan:{loan.id}"
        )
        self._publish(DomainEvent.LOAN_STATUS_CHANGED, "loan", loan.id, {
            "previous_status": previous_status.value,
            "status": loan.status.value,
            "funded_amount": str(loan.funded_amount.amount),
            "utilization": str(loan.utilization),
        })

    def _publish(self, event_type: DomainEvent, entity_type: str, entity_id: str, data: Dict[str, Any]) -> None:
        if not get_config().enable_events:
            return
        dispatcher = self.event_dispatcher or get_global_dispatcher()
        dispatcher.publish(EventPayload(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            data=data
        ))
