"""
Status Reconciliation Module

Derives a loan's lifecycle status from the state of its installments as of a
given day. Pure: nothing here reads the clock or touches storage.
"""

from decimal import Decimal
from datetime import date
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum

from .currency import Money, sum_money
from .schedule import ScheduleEntry, PAID_EPSILON


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING_DISBURSEMENT = "pending_disbursement"  # Created from an approved application
    ACTIVE = "active"                              # Disbursed, nothing due yet
    DUE = "due"                                    # An installment falls due today
    IN_ARREARS = "in_arrears"                      # An installment is past due
    CLOSED = "closed"                              # Every installment paid
    WRITTEN_OFF = "written_off"                    # Terminal, uncollectible


# Statuses the reconciler never changes
UNRECONCILED_STATUSES = frozenset({LoanStatus.PENDING_DISBURSEMENT, LoanStatus.WRITTEN_OFF})


@dataclass
class InstallmentStanding:
    """Read-time view of one installment against a date"""
    installment_number: int
    due_date: date
    total_due: Money
    total_paid: Money
    remaining: Money
    is_paid: bool
    is_overdue: bool
    is_due_today: bool
    days_past_due: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'installment_number': self.installment_number,
            'due_date': self.due_date.isoformat(),
            'total_due': self.total_due.to_dict(),
            'total_paid': self.total_paid.to_dict(),
            'remaining': self.remaining.to_dict(),
            'is_paid': self.is_paid,
            'is_overdue': self.is_overdue,
            'is_due_today': self.is_due_today,
            'days_past_due': self.days_past_due,
        }


@dataclass
class ReconciliationResult:
    """Derived status plus the installments that drove it"""
    status: LoanStatus
    as_of: date
    overdue_installments: List[int] = field(default_factory=list)
    due_today_installments: List[int] = field(default_factory=list)
    max_days_past_due: int = 0
    arrears_amount: Optional[Money] = None
    standings: List[InstallmentStanding] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'as_of': self.as_of.isoformat(),
            'overdue_installments': self.overdue_installments,
            'due_today_installments': self.due_today_installments,
            'max_days_past_due': self.max_days_past_due,
            'arrears_amount': self.arrears_amount.to_dict() if self.arrears_amount else None,
            'installments': [s.to_dict() for s in self.standings],
        }


def derive_status(
    entries: Iterable[ScheduleEntry],
    today: date,
    epsilon: Decimal = PAID_EPSILON
) -> ReconciliationResult:
    """
    Derive a loan's status from its schedule

    Precedence: every installment settled gives CLOSED; otherwise any
    outstanding installment due before ``today`` gives IN_ARREARS, even when
    another falls due today; otherwise one due today gives DUE; otherwise
    ACTIVE. Future installments never affect the result.

    Args:
        entries: The loan's schedule
        today: Calendar date to reconcile against
        epsilon: Remaining balance treated as settled

    Returns:
        ReconciliationResult
    """
    entries = sorted(entries, key=lambda e: (e.due_date, e.installment_number))

    standings = []
    overdue = []
    due_today = []
    for entry in entries:
        outstanding = entry.is_outstanding(epsilon)
        is_overdue = outstanding and entry.due_date < today
        is_due_today = outstanding and entry.due_date == today
        if is_overdue:
            overdue.append(entry)
        elif is_due_today:
            due_today.append(entry)
        standings.append(InstallmentStanding(
            installment_number=entry.installment_number,
            due_date=entry.due_date,
            total_due=entry.total_due,
            total_paid=entry.total_paid,
            remaining=entry.remaining,
            is_paid=not outstanding,
            is_overdue=is_overdue,
            is_due_today=is_due_today,
            days_past_due=(today - entry.due_date).days if is_overdue else 0,
        ))

    if entries and all(standing.is_paid for standing in standings):
        status = LoanStatus.CLOSED
    elif overdue:
        status = LoanStatus.IN_ARREARS
    elif due_today:
        status = LoanStatus.DUE
    else:
        status = LoanStatus.ACTIVE

    arrears = None
    if entries:
        arrears = sum_money((e.remaining for e in overdue), entries[0].currency)

    return ReconciliationResult(
        status=status,
        as_of=today,
        overdue_installments=[e.installment_number for e in overdue],
        due_today_installments=[e.installment_number for e in due_today],
        max_days_past_due=max((s.days_past_due for s in standings), default=0),
        arrears_amount=arrears,
        standings=standings,
    )
