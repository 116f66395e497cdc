"""
Payment Allocation Module

Applies a repayment against a loan's outstanding installments, oldest due
date first and bucket by bucket within an installment, and reverses a prior
allocation from its recorded lines.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union
from enum import Enum

from .currency import Money, Currency, sum_money
from .errors import AllocationError
from .schedule import ScheduleEntry, PAID_EPSILON


class AllocationBucket(Enum):
    """Component of an installment a payment can settle"""
    FEES = "fees"
    INTEREST = "interest"
    PRINCIPAL = "principal"


DEFAULT_ALLOCATION_ORDER: Tuple[AllocationBucket, ...] = (
    AllocationBucket.FEES,
    AllocationBucket.INTEREST,
    AllocationBucket.PRINCIPAL,
)


def resolve_allocation_order(
    order: Optional[Sequence[Union[AllocationBucket, str]]]
) -> Tuple[AllocationBucket, ...]:
    """
    Normalize a configured bucket order

    Raises:
        ValueError: If the order is not a permutation of all three buckets
    """
    if not order:
        return DEFAULT_ALLOCATION_ORDER
    buckets = tuple(
        item if isinstance(item, AllocationBucket) else AllocationBucket(str(item).lower())
        for item in order
    )
    if sorted(b.value for b in buckets) != sorted(b.value for b in AllocationBucket):
        raise ValueError(
            f"Allocation order must name fees, interest and principal once each, got "
            f"{[b.value for b in buckets]}"
        )
    return buckets


def _due(entry: ScheduleEntry, bucket: AllocationBucket) -> Money:
    return getattr(entry, f"{bucket.value}_due")


def _paid(entry: ScheduleEntry, bucket: AllocationBucket) -> Money:
    return getattr(entry, f"{bucket.value}_paid")


def _set_paid(entry: ScheduleEntry, bucket: AllocationBucket, amount: Money) -> None:
    setattr(entry, f"{bucket.value}_paid", amount)


@dataclass
class AllocationLine:
    """What one repayment applied to one installment"""
    schedule_entry_id: str
    installment_number: int
    amount_applied: Money
    fees_applied: Money
    interest_applied: Money
    principal_applied: Money

    def applied_to(self, bucket: AllocationBucket) -> Money:
        return getattr(self, f"{bucket.value}_applied")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'schedule_entry_id': self.schedule_entry_id,
            'installment_number': self.installment_number,
            'currency': self.amount_applied.currency.code,
            'amount_applied': str(self.amount_applied.amount),
            'fees_applied': str(self.fees_applied.amount),
            'interest_applied': str(self.interest_applied.amount),
            'principal_applied': str(self.principal_applied.amount),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'AllocationLine':
        currency = Currency[data['currency']]
        return cls(
            schedule_entry_id=data['schedule_entry_id'],
            installment_number=int(data['installment_number']),
            amount_applied=Money(Decimal(data['amount_applied']), currency),
            fees_applied=Money(Decimal(data['fees_applied']), currency),
            interest_applied=Money(Decimal(data['interest_applied']), currency),
            principal_applied=Money(Decimal(data['principal_applied']), currency),
        )


@dataclass
class AllocationResult:
    """Outcome of allocating one repayment"""
    lines: List[AllocationLine]
    applied: Money
    unapplied: Money                    # Left over once every installment is paid
    settled_installments: List[int] = field(default_factory=list)

    def total_for(self, bucket: AllocationBucket) -> Money:
        return sum_money((line.applied_to(bucket) for line in self.lines), self.applied.currency)


def allocate_payment(
    entries: Iterable[ScheduleEntry],
    amount: Money,
    payment_date: date,
    order: Optional[Sequence[Union[AllocationBucket, str]]] = None,
    epsilon: Decimal = PAID_EPSILON
) -> AllocationResult:
    """
    Allocate a repayment across a loan's schedule

    Installments are settled in ascending due date (installment number breaks
    ties) whatever the payment date. Within an installment the buckets fill in
    ``order``, fees, interest then principal unless configured otherwise. The
    entries are mutated in place.

    Args:
        entries: The loan's schedule
        amount: Repayment amount
        payment_date: Recorded as paid_at on installments this payment settles
        order: Bucket order within an installment
        epsilon: Remaining balance treated as settled

    Returns:
        AllocationResult; any amount left after the last installment is
        reported as ``unapplied``

    Raises:
        AllocationError: If the amount is not positive, its currency differs
            from the schedule's, or nothing is outstanding
    """
    if not amount.is_positive():
        raise AllocationError(f"Repayment amount must be positive, got {amount.to_string()}")

    buckets = resolve_allocation_order(order)
    outstanding = sorted(
        (e for e in entries if e.is_outstanding(epsilon)),
        key=lambda e: (e.due_date, e.installment_number)
    )
    if not outstanding:
        raise AllocationError("Loan has no outstanding installments")
    if outstanding[0].currency != amount.currency:
        raise AllocationError(
            f"Repayment currency {amount.currency.code} does not match "
            f"loan currency {outstanding[0].currency.code}"
        )

    zero_amount = Money.zero(amount.currency)
    remaining = amount
    lines = []
    settled = []

    for entry in outstanding:
        if not remaining.is_positive():
            break

        applied = {bucket: zero_amount for bucket in AllocationBucket}
        for bucket in buckets:
            gap = _due(entry, bucket) - _paid(entry, bucket)
            if not gap.is_positive() or not remaining.is_positive():
                continue
            portion = min(gap, remaining)
            _set_paid(entry, bucket, _paid(entry, bucket) + portion)
            applied[bucket] = portion
            remaining = remaining - portion

        line_total = sum_money(applied.values(), amount.currency)
        if line_total.is_positive():
            lines.append(AllocationLine(
                schedule_entry_id=entry.id,
                installment_number=entry.installment_number,
                amount_applied=line_total,
                fees_applied=applied[AllocationBucket.FEES],
                interest_applied=applied[AllocationBucket.INTEREST],
                principal_applied=applied[AllocationBucket.PRINCIPAL],
            ))

        if entry.remaining.amount <= epsilon:
            entry.is_paid = True
            entry.paid_at = payment_date
            settled.append(entry.installment_number)

    return AllocationResult(
        lines=lines,
        applied=amount - remaining,
        unapplied=remaining,
        settled_installments=settled,
    )


def reverse_allocation(
    entries: Iterable[ScheduleEntry],
    lines: Iterable[AllocationLine],
    epsilon: Decimal = PAID_EPSILON
) -> Money:
    """
    Undo a recorded allocation, bucket by bucket

    Installments that no longer meet the paid threshold lose their paid flag
    and paid date. Nothing is mutated unless every line can be reversed.

    Returns:
        Total amount taken back off the schedule

    Raises:
        AllocationError: If a line names an unknown installment or exceeds
            what that installment has been paid
    """
    by_id = {entry.id: entry for entry in entries}
    lines = list(lines)
    if not lines:
        raise AllocationError("Allocation has no lines to reverse")

    for line in lines:
        entry = by_id.get(line.schedule_entry_id)
        if entry is None:
            raise AllocationError(
                f"Schedule entry {line.schedule_entry_id} for installment "
                f"{line.installment_number} not found"
            )
        for bucket in AllocationBucket:
            if line.applied_to(bucket) > _paid(entry, bucket):
                raise AllocationError(
                    f"Cannot reverse {line.applied_to(bucket).to_string()} of {bucket.value} "
                    f"on installment {entry.installment_number}; only "
                    f"{_paid(entry, bucket).to_string()} paid"
                )

    for line in lines:
        entry = by_id[line.schedule_entry_id]
        for bucket in AllocationBucket:
            _set_paid(entry, bucket, _paid(entry, bucket) - line.applied_to(bucket))
        if entry.is_paid and entry.remaining.amount > epsilon:
            entry.is_paid = False
            entry.paid_at = None

    return sum_money((line.amount_applied for line in lines), lines[0].amount_applied.currency)
