"""
Schedule Module

Turns a loan's commercial terms into its repayment schedule: reducing-balance
(level installment) or flat-rate amortization, calendar-aware due dates, and
rounding reconciled so that the principal column sums exactly to the loan
principal.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
import calendar
import uuid

from .currency import Money, Currency, to_decimal, sum_money
from .errors import InvalidTermsError


# Remaining balance at or below this is treated as settled
PAID_EPSILON = Decimal('0.01')


class RatePeriod(Enum):
    """Period the quoted interest rate refers to"""
    PER_MONTH = "per_month"
    PER_ANNUM = "per_annum"


class RepaymentFrequency(Enum):
    """Installment frequency"""
    MONTHLY = "monthly"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"


class InterestMethod(Enum):
    """How interest is charged over the term"""
    DECLINING_BALANCE = "declining_balance"  # Interest on remaining principal
    FLAT = "flat"                            # Interest on original principal every period


PERIODS_PER_YEAR = {
    RepaymentFrequency.MONTHLY: 12,
    RepaymentFrequency.WEEKLY: 52,
    RepaymentFrequency.BIWEEKLY: 26,
}


@dataclass(frozen=True)
class LoanTerms:
    """Commercial terms of a loan, fixed at approval"""
    principal: Money
    interest_rate: Decimal              # Fraction, e.g. 0.18 for 18%
    term_months: int
    start_date: date
    rate_period: RatePeriod = RatePeriod.PER_ANNUM
    repayment_frequency: RepaymentFrequency = RepaymentFrequency.MONTHLY
    interest_method: InterestMethod = InterestMethod.DECLINING_BALANCE
    processing_fee: Optional[Money] = None

    def __post_init__(self):
        if not isinstance(self.interest_rate, Decimal):
            try:
                object.__setattr__(self, 'interest_rate', to_decimal(self.interest_rate))
            except ValueError as e:
                raise InvalidTermsError(str(e))
        if self.processing_fee is None:
            object.__setattr__(self, 'processing_fee', Money.zero(self.principal.currency))

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def periods_per_year(self) -> int:
        return PERIODS_PER_YEAR[self.repayment_frequency]

    @property
    def number_of_installments(self) -> int:
        """Installment count for the term at the repayment frequency (at least 1)"""
        if self.repayment_frequency == RepaymentFrequency.MONTHLY:
            return self.term_months
        return max(1, self.term_months * self.periods_per_year // 12)

    @property
    def periodic_rate(self) -> Decimal:
        """Interest rate per installment period"""
        ppy = Decimal(self.periods_per_year)
        if self.rate_period == RatePeriod.PER_ANNUM:
            return self.interest_rate / ppy
        if self.repayment_frequency == RepaymentFrequency.MONTHLY:
            return self.interest_rate
        return self.interest_rate * Decimal('12') / ppy

    def validate(self) -> None:
        """
        Check that the terms can produce a schedule

        Raises:
            InvalidTermsError: On non-positive principal, a term shorter than a
                month, a negative or non-finite rate or an inconsistent
                processing fee
        """
        if not self.principal.amount.is_finite() or not self.principal.is_positive():
            raise InvalidTermsError(
                f"Principal must be positive, got {self.principal.to_string()}"
            )
        if not isinstance(self.term_months, int) or isinstance(self.term_months, bool) \
                or self.term_months < 1:
            raise InvalidTermsError(f"Term must be at least 1 month, got {self.term_months}")
        if not self.interest_rate.is_finite():
            raise InvalidTermsError(f"Interest rate must be a finite number, got {self.interest_rate}")
        if self.interest_rate < 0:
            raise InvalidTermsError(f"Interest rate cannot be negative, got {self.interest_rate}")
        if self.processing_fee.currency != self.principal.currency:
            raise InvalidTermsError("Processing fee currency must match principal currency")
        if not self.processing_fee.amount.is_finite() or self.processing_fee.is_negative():
            raise InvalidTermsError("Processing fee cannot be negative")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal.amount),
            'currency': self.principal.currency.code,
            'interest_rate': str(self.interest_rate),
            'term_months': self.term_months,
            'start_date': self.start_date.isoformat(),
            'rate_period': self.rate_period.value,
            'repayment_frequency': self.repayment_frequency.value,
            'interest_method': self.interest_method.value,
            'processing_fee': str(self.processing_fee.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanTerms':
        currency = Currency[data['currency']]
        return cls(
            principal=Money(Decimal(data['principal']), currency),
            interest_rate=Decimal(data['interest_rate']),
            term_months=int(data['term_months']),
            start_date=date.fromisoformat(data['start_date']),
            rate_period=RatePeriod(data['rate_period']),
            repayment_frequency=RepaymentFrequency(data['repayment_frequency']),
            interest_method=InterestMethod(data['interest_method']),
            processing_fee=Money(Decimal(data['processing_fee']), currency),
        )


def processing_fee_for(
    principal: Money,
    fixed_fee: Optional[Money] = None,
    fee_rate: Optional[Decimal] = None,
    fee_cap: Optional[Money] = None
) -> Optional[Money]:
    """
    Resolve the processing fee charged on the first installment

    A fee is either a fixed amount or a fraction of the principal (0.03 for
    3%), optionally capped. The percentage fee is rounded half-up to the
    currency's minor unit before the cap is applied.

    Raises:
        InvalidTermsError: If both forms are given, a cap comes without a
            rate, or the rate or cap is negative, non-finite or in another
            currency
    """
    if fee_rate is None:
        if fee_cap is not None:
            raise InvalidTermsError("Processing fee cap requires a processing fee rate")
        return fixed_fee
    if fixed_fee is not None:
        raise InvalidTermsError("Give either a fixed processing fee or a fee rate, not both")

    try:
        rate = to_decimal(fee_rate)
    except ValueError as e:
        raise InvalidTermsError(str(e))
    if rate < 0:
        raise InvalidTermsError(f"Processing fee rate cannot be negative, got {rate}")

    fee = principal * rate
    if fee_cap is not None:
        if fee_cap.currency != principal.currency:
            raise InvalidTermsError("Processing fee cap currency must match principal currency")
        if fee_cap.is_negative():
            raise InvalidTermsError("Processing fee cap cannot be negative")
        fee = min(fee, fee_cap)
    return fee


_MONEY_FIELDS = (
    'principal_due', 'interest_due', 'fees_due', 'balance_after',
    'principal_paid', 'interest_paid', 'fees_paid',
)


@dataclass
class ScheduleEntry:
    """Single installment of a loan's repayment schedule"""
    id: str
    installment_number: int
    due_date: date
    principal_due: Money
    interest_due: Money
    fees_due: Money
    balance_after: Money                # Scheduled principal balance after this installment
    principal_paid: Money = None
    interest_paid: Money = None
    fees_paid: Money = None
    is_paid: bool = False
    paid_at: Optional[date] = None
    loan_id: Optional[str] = None

    def __post_init__(self):
        zero_amount = Money.zero(self.principal_due.currency)
        if not self.principal_paid:
            self.principal_paid = zero_amount
        if not self.interest_paid:
            self.interest_paid = zero_amount
        if not self.fees_paid:
            self.fees_paid = zero_amount

    @property
    def currency(self) -> Currency:
        return self.principal_due.currency

    @property
    def total_due(self) -> Money:
        return self.principal_due + self.interest_due + self.fees_due

    @property
    def total_paid(self) -> Money:
        return self.principal_paid + self.interest_paid + self.fees_paid

    @property
    def remaining(self) -> Money:
        return self.total_due - self.total_paid

    def is_outstanding(self, epsilon: Decimal = PAID_EPSILON) -> bool:
        """Unpaid with more than epsilon still owed"""
        return not self.is_paid and self.remaining.amount > epsilon

    def is_overdue(self, as_of: date, epsilon: Decimal = PAID_EPSILON) -> bool:
        return self.is_outstanding(epsilon) and self.due_date < as_of

    def days_past_due(self, as_of: date, epsilon: Decimal = PAID_EPSILON) -> int:
        if not self.is_overdue(as_of, epsilon):
            return 0
        return (as_of - self.due_date).days

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'loan_id': self.loan_id,
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'currency': self.currency.code,
            'is_paid': self.is_paid,
            'paid_at': self.paid_at.isoformat() if self.paid_at else None,
        }
        for name in _MONEY_FIELDS:
            result[name] = str(getattr(self, name).amount)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduleEntry':
        currency = Currency[data['currency']]
        amounts = {name: Money(Decimal(data[name]), currency) for name in _MONEY_FIELDS}
        return cls(
            id=data['id'],
            loan_id=data.get('loan_id'),
            installment_number=int(data['installment_number']),
            due_date=date.fromisoformat(data['due_date']),
            is_paid=bool(data.get('is_paid', False)),
            paid_at=date.fromisoformat(data['paid_at']) if data.get('paid_at') else None,
            **amounts
        )


@dataclass
class ScheduleSummary:
    """Totals over a schedule, as shown in previews and loan views"""
    installments: int
    total_principal: Money
    total_interest: Money
    total_fees: Money
    total_payable: Money
    installment_amount: Optional[Money] = None
    first_due_date: Optional[date] = None
    last_due_date: Optional[date] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installments': self.installments,
            'total_principal': self.total_principal.to_dict(),
            'total_interest': self.total_interest.to_dict(),
            'total_fees': self.total_fees.to_dict(),
            'total_payable': self.total_payable.to_dict(),
            'installment_amount': self.installment_amount.to_dict() if self.installment_amount else None,
            'first_due_date': self.first_due_date.isoformat() if self.first_due_date else None,
            'last_due_date': self.last_due_date.isoformat() if self.last_due_date else None,
        }


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping the day to the end of shorter months"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def due_date_for(terms: LoanTerms, installment_number: int) -> date:
    """Due date of an installment, counted from the start date (not chained)"""
    if terms.repayment_frequency == RepaymentFrequency.MONTHLY:
        return add_months(terms.start_date, installment_number)
    if terms.repayment_frequency == RepaymentFrequency.WEEKLY:
        return terms.start_date + timedelta(days=7 * installment_number)
    if terms.repayment_frequency == RepaymentFrequency.BIWEEKLY:
        return terms.start_date + timedelta(days=14 * installment_number)
    raise InvalidTermsError(f"Unsupported repayment frequency: {terms.repayment_frequency}")


def level_installment(principal: Money, rate: Decimal, periods: int) -> Money:
    """Reducing-balance installment A = P*r*(1+r)^n / ((1+r)^n - 1)"""
    if rate == 0:
        return principal / Decimal(periods)
    factor = (Decimal('1') + rate) ** periods
    return Money(principal.amount * rate * factor / (factor - Decimal('1')), principal.currency)


def generate_schedule(terms: LoanTerms) -> List[ScheduleEntry]:
    """
    Generate the repayment schedule for a set of loan terms

    Every amount is rounded to the currency's minor unit as it is computed.
    Whatever principal the rounded installments leave behind is charged on
    the final installment, so the principal column always sums to the loan
    principal. The processing fee, if any, is due with installment 1.

    Args:
        terms: Loan terms

    Returns:
        Installments ordered by installment number

    Raises:
        InvalidTermsError: If the terms fail validation
    """
    terms.validate()

    currency = terms.currency
    periods = terms.number_of_installments
    rate = terms.periodic_rate
    zero_amount = Money.zero(currency)

    declining = terms.interest_method == InterestMethod.DECLINING_BALANCE and rate > 0
    if declining:
        installment = level_installment(terms.principal, rate, periods)
        flat_principal = None
        flat_interest = None
    else:
        installment = None
        flat_principal = terms.principal / Decimal(periods)
        flat_interest = terms.principal * rate

    schedule = []
    balance = terms.principal

    for number in range(1, periods + 1):
        if declining:
            interest = balance * rate
            principal = installment - interest
        else:
            interest = flat_interest
            principal = flat_principal

        if number == periods or principal > balance:
            principal = balance
        if principal.is_negative():
            principal = zero_amount

        balance = balance - principal

        schedule.append(ScheduleEntry(
            id=str(uuid.uuid4()),
            installment_number=number,
            due_date=due_date_for(terms, number),
            principal_due=principal,
            interest_due=interest,
            fees_due=terms.processing_fee if number == 1 else zero_amount,
            balance_after=balance,
        ))

    return schedule


def summarize_schedule(entries: Iterable[ScheduleEntry]) -> ScheduleSummary:
    """Total the principal, interest and fees over a schedule"""
    entries = sorted(entries, key=lambda e: e.installment_number)
    if not entries:
        raise InvalidTermsError("Cannot summarize an empty schedule")

    currency = entries[0].currency
    total_principal = sum_money((e.principal_due for e in entries), currency)
    total_interest = sum_money((e.interest_due for e in entries), currency)
    total_fees = sum_money((e.fees_due for e in entries), currency)

    # First installment may carry the processing fee; quote the one after it
    regular = entries[1] if len(entries) > 1 else entries[0]

    return ScheduleSummary(
        installments=len(entries),
        total_principal=total_principal,
        total_interest=total_interest,
        total_fees=total_fees,
        total_payable=total_principal + total_interest + total_fees,
        installment_amount=regular.principal_due + regular.interest_due,
        first_due_date=entries[0].due_date,
        last_due_date=entries[-1].due_date,
    )
