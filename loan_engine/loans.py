"""
Loan Module

Handles the loan lifecycle after approval: creation from an approved
application with its generated schedule, disbursement, repayment posting and
reversal, write-off, and status reconciliation.

Every mutation of a loan runs under that loan's lock and inside one
storage.atomic() block spanning allocation, reconciliation and persistence.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional
from enum import Enum
import uuid

from .currency import Money, Currency
from .storage import StorageInterface, StorageRecord, KeyedLock
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, get_config
from .errors import (
    AllocationError, ConcurrencyError, DuplicateApprovalError,
    IllegalStateTransitionError, NotFoundError,
)
from .logging_config import get_logger, log_action
from .schedule import LoanTerms, ScheduleEntry, generate_schedule
from .allocation import (
    AllocationBucket, AllocationLine, allocate_payment, reverse_allocation,
    resolve_allocation_order,
)
from .reconciliation import (
    LoanStatus, ReconciliationResult, UNRECONCILED_STATUSES, derive_status,
)

if TYPE_CHECKING:
    from .applications import LoanApplication


logger = get_logger("loan_engine.loans")

# Statuses in which a loan accepts repayments and write-off
REPAYABLE_STATUSES = (LoanStatus.ACTIVE, LoanStatus.DUE, LoanStatus.IN_ARREARS)


class RepaymentChannel(Enum):
    """How a repayment reached us"""
    CASH = "cash"
    MOBILE_MONEY = "mobile_money"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    OTHER = "other"


def format_reference(prefix: str, year: int, value: int) -> str:
    """Human-facing number such as LN-2025-000042"""
    return f"{prefix}-{year}-{value:06d}"


def next_reference(storage: StorageInterface, prefix: str, year: int) -> str:
    """Allocate the next number in a prefix's yearly sequence"""
    return format_reference(prefix, year, storage.next_sequence(f"{prefix}-{year}"))


def _date_or_none(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _datetime_or_none(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Loan(StorageRecord):
    """Disbursable loan with its terms and running totals"""
    loan_number: str
    client_id: str
    terms: LoanTerms
    product_version_id: Optional[str] = None
    application_id: Optional[str] = None
    status: LoanStatus = LoanStatus.PENDING_DISBURSEMENT

    # Running totals
    principal_paid: Money = None
    interest_paid: Money = None
    fees_paid: Money = None
    total_repaid: Money = None          # Everything received, suspense included
    suspense_balance: Money = None      # Over-payments not applied to any installment

    # Dates
    disbursed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    written_off_at: Optional[datetime] = None
    write_off_reason: Optional[str] = None
    last_payment_date: Optional[date] = None

    version: int = 0

    def __post_init__(self):
        zero_amount = Money.zero(self.terms.currency)
        if not self.principal_paid:
            self.principal_paid = zero_amount
        if not self.interest_paid:
            self.interest_paid = zero_amount
        if not self.fees_paid:
            self.fees_paid = zero_amount
        if not self.total_repaid:
            self.total_repaid = zero_amount
        if not self.suspense_balance:
            self.suspense_balance = zero_amount

    @property
    def currency(self) -> Currency:
        return self.terms.currency

    @property
    def principal(self) -> Money:
        return self.terms.principal

    @property
    def outstanding(self) -> Money:
        """Principal not yet repaid"""
        return self.principal - self.principal_paid

    @property
    def is_active(self) -> bool:
        """Check if loan is in active repayment"""
        return self.status in REPAYABLE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_number': self.loan_number,
            'client_id': self.client_id,
            'product_version_id': self.product_version_id,
            'application_id': self.application_id,
            'terms': self.terms.to_dict(),
            'status': self.status.value,
            'currency': self.currency.code,
            'principal_paid': str(self.principal_paid.amount),
            'interest_paid': str(self.interest_paid.amount),
            'fees_paid': str(self.fees_paid.amount),
            'total_repaid': str(self.total_repaid.amount),
            'suspense_balance': str(self.suspense_balance.amount),
            'disbursed_at': self.disbursed_at.isoformat() if self.disbursed_at else None,
            'closed_at': self.closed_at.isoformat() if self.closed_at else None,
            'written_off_at': self.written_off_at.isoformat() if self.written_off_at else None,
            'write_off_reason': self.write_off_reason,
            'last_payment_date': self.last_payment_date.isoformat() if self.last_payment_date else None,
            'version': self.version,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            client_id=data['client_id'],
            product_version_id=data.get('product_version_id'),
            application_id=data.get('application_id'),
            terms=LoanTerms.from_dict(data['terms']),
            status=LoanStatus(data['status']),
            principal_paid=Money(Decimal(data['principal_paid']), currency),
            interest_paid=Money(Decimal(data['interest_paid']), currency),
            fees_paid=Money(Decimal(data['fees_paid']), currency),
            total_repaid=Money(Decimal(data['total_repaid']), currency),
            suspense_balance=Money(Decimal(data['suspense_balance']), currency),
            disbursed_at=_datetime_or_none(data.get('disbursed_at')),
            closed_at=_datetime_or_none(data.get('closed_at')),
            written_off_at=_datetime_or_none(data.get('written_off_at')),
            write_off_reason=data.get('write_off_reason'),
            last_payment_date=_date_or_none(data.get('last_payment_date')),
            version=int(data.get('version', 0)),
        )


@dataclass
class RepaymentTransaction(StorageRecord):
    """Append-only record of a repayment and where it went"""
    loan_id: str
    receipt_number: str
    amount: Money
    channel: RepaymentChannel
    transaction_date: date
    allocations: List[AllocationLine] = field(default_factory=list)
    unapplied_amount: Money = None      # Credited to the loan's suspense balance
    reference: Optional[str] = None
    notes: Optional[str] = None
    posted_by: Optional[str] = None
    reversed: bool = False
    reversed_at: Optional[datetime] = None
    reversal_reason: Optional[str] = None

    def __post_init__(self):
        if not self.unapplied_amount:
            self.unapplied_amount = Money.zero(self.amount.currency)

    @property
    def applied_amount(self) -> Money:
        return self.amount - self.unapplied_amount

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'receipt_number': self.receipt_number,
            'amount': str(self.amount.amount),
            'currency': self.amount.currency.code,
            'channel': self.channel.value,
            'transaction_date': self.transaction_date.isoformat(),
            'allocations': [line.to_dict() for line in self.allocations],
            'unapplied_amount': str(self.unapplied_amount.amount),
            'reference': self.reference,
            'notes': self.notes,
            'posted_by': self.posted_by,
            'reversed': self.reversed,
            'reversed_at': self.reversed_at.isoformat() if self.reversed_at else None,
            'reversal_reason': self.reversal_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RepaymentTransaction':
        currency = Currency[data['currency']]
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            receipt_number=data['receipt_number'],
            amount=Money(Decimal(data['amount']), currency),
            channel=RepaymentChannel(data['channel']),
            transaction_date=date.fromisoformat(data['transaction_date']),
            allocations=[AllocationLine.from_dict(line) for line in data.get('allocations', [])],
            unapplied_amount=Money(Decimal(data['unapplied_amount']), currency),
            reference=data.get('reference'),
            notes=data.get('notes'),
            posted_by=data.get('posted_by'),
            reversed=bool(data.get('reversed', False)),
            reversed_at=_datetime_or_none(data.get('reversed_at')),
            reversal_reason=data.get('reversal_reason'),
        )


class LoanManager:
    """
    Manages the loan lifecycle from creation through closure or write-off
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        clock: Optional[Clock] = None,
        config: Optional[LoanEngineConfig] = None
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.epsilon = self.config.epsilon
        self.allocation_order = resolve_allocation_order(self.config.allocation_order)
        self._locks = KeyedLock()

        self.loans_table = "loans"
        self.schedules_table = "loan_schedules"
        self.repayments_table = "repayments"

    # ------------------------------------------------------------------
    # Creation and disbursement
    # ------------------------------------------------------------------

    def create_from_application(
        self,
        application: 'LoanApplication',
        user_id: Optional[str] = None
    ) -> Loan:
        """
        Create the loan for an approved application

        The loan uses the approved terms, which may differ from the requested
        ones. Its schedule is generated and stored now and never regenerated.
        No reconciliation runs until disbursement.

        Args:
            application: An APPROVED application not yet linked to a loan
            user_id: Officer performing the approval

        Returns:
            The new loan, in PENDING_DISBURSEMENT

        Raises:
            IllegalStateTransitionError: If the application is not approved
            DuplicateApprovalError: If the application already has a loan
            InvalidTermsError: If the approved terms cannot be scheduled
        """
        if application.loan_id or self.storage.find(
            self.loans_table, {"application_id": application.id}
        ):
            raise DuplicateApprovalError(
                f"Application {application.application_number} already has a loan"
            )

        terms = application.approved_terms()
        schedule = generate_schedule(terms)
        now = self.clock.now()

        with self.storage.atomic():
            loan = Loan(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=next_reference(self.storage, self.config.loan_number_prefix, now.year),
                client_id=application.client_id,
                product_version_id=application.product_version_id,
                application_id=application.id,
                terms=terms,
                status=LoanStatus.PENDING_DISBURSEMENT,
            )
            self._persist(loan)

            for entry in schedule:
                entry.loan_id = loan.id
            self._save_entries(schedule)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_CREATED,
                entity_type="loan",
                entity_id=loan.id,
                metadata={
                    "loan_number": loan.loan_number,
                    "application_id": application.id,
                    "client_id": loan.client_id,
                    "principal": terms.principal.to_string(),
                    "interest_rate": str(terms.interest_rate),
                    "rate_period": terms.rate_period.value,
                    "term_months": terms.term_months,
                    "repayment_frequency": terms.repayment_frequency.value,
                    "installments": len(schedule),
                },
                user_id=user_id
            )

        log_action(logger, "info", f"Loan {loan.loan_number} created",
                   user_id=user_id, action="create_loan", resource=loan.id,
                   extra={"application_id": application.id, "installments": len(schedule)})
        return loan

    def disburse(self, loan_id: str, user_id: Optional[str] = None) -> Loan:
        """
        Disburse a loan and reconcile it once

        The immediate reconciliation matters when the first installment is
        already due on the disbursement date.

        Raises:
            NotFoundError: If the loan does not exist
            IllegalStateTransitionError: Unless the loan is PENDING_DISBURSEMENT
        """
        with self._locks.hold(loan_id):
            loan = self._require_loan(loan_id)
            if loan.status != LoanStatus.PENDING_DISBURSEMENT:
                raise IllegalStateTransitionError(
                    "loan", "disburse", loan.status.value, LoanStatus.PENDING_DISBURSEMENT.value
                )

            with self.storage.atomic():
                loan.status = LoanStatus.ACTIVE
                loan.disbursed_at = self.clock.now()

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_DISBURSED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "loan_number": loan.loan_number,
                        "amount": loan.principal.to_string(),
                        "disbursed_at": loan.disbursed_at,
                    },
                    user_id=user_id
                )

                self._apply_reconciliation(loan, self.get_schedule(loan.id), user_id)
                self._persist(loan)

        log_action(logger, "info", f"Loan {loan.loan_number} disbursed",
                   user_id=user_id, action="disburse_loan", resource=loan.id,
                   extra={"status": loan.status.value})
        return loan

    # ------------------------------------------------------------------
    # Repayments
    # ------------------------------------------------------------------

    def post_repayment(
        self,
        loan_id: str,
        amount: Money,
        channel: RepaymentChannel = RepaymentChannel.CASH,
        transaction_date: Optional[date] = None,
        reference: Optional[str] = None,
        notes: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> RepaymentTransaction:
        """
        Post a repayment against a loan

        The amount is allocated oldest installment first; anything left once
        every installment is paid goes to the loan's suspense balance. The
        loan is then reconciled.

        Args:
            loan_id: Loan ID
            amount: Amount received
            channel: Repayment channel
            transaction_date: Date the money was received (defaults to today)
            reference: External reference such as a mobile-money code
            notes: Free text
            user_id: Officer posting the repayment

        Returns:
            The stored RepaymentTransaction

        Raises:
            NotFoundError: If the loan does not exist
            AllocationError: For a non-positive or foreign-currency amount, a
                future transaction date, or a loan that is already closed
            IllegalStateTransitionError: If the loan is not disbursed or is
                written off
        """
        today = self.clock.today()
        transaction_date = transaction_date or today
        if transaction_date > today:
            raise AllocationError(
                f"Transaction date {transaction_date.isoformat()} is in the future"
            )

        with self._locks.hold(loan_id):
            loan = self._require_loan(loan_id)
            if loan.status == LoanStatus.CLOSED:
                raise AllocationError(f"Loan {loan.loan_number} is fully repaid")
            if loan.status not in REPAYABLE_STATUSES:
                raise IllegalStateTransitionError(
                    "loan", "post a repayment to", loan.status.value,
                    [s.value for s in REPAYABLE_STATUSES]
                )
            if amount.currency != loan.currency:
                raise AllocationError(
                    f"Repayment currency {amount.currency.code} does not match "
                    f"loan currency {loan.currency.code}"
                )

            schedule = self.get_schedule(loan.id)

            with self.storage.atomic():
                result = allocate_payment(
                    schedule, amount, transaction_date,
                    order=self.allocation_order, epsilon=self.epsilon
                )

                now = self.clock.now()
                transaction = RepaymentTransaction(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    loan_id=loan.id,
                    receipt_number=next_reference(
                        self.storage, self.config.receipt_number_prefix, now.year
                    ),
                    amount=amount,
                    channel=channel,
                    transaction_date=transaction_date,
                    allocations=result.lines,
                    unapplied_amount=result.unapplied,
                    reference=reference,
                    notes=notes,
                    posted_by=user_id,
                )
                self._save_repayment(transaction)
                self._save_entries(self._touched(schedule, result.lines))

                loan.principal_paid = loan.principal_paid + result.total_for(AllocationBucket.PRINCIPAL)
                loan.interest_paid = loan.interest_paid + result.total_for(AllocationBucket.INTEREST)
                loan.fees_paid = loan.fees_paid + result.total_for(AllocationBucket.FEES)
                loan.total_repaid = loan.total_repaid + amount
                loan.suspense_balance = loan.suspense_balance + result.unapplied
                if not loan.last_payment_date or transaction_date > loan.last_payment_date:
                    loan.last_payment_date = transaction_date

                self.audit_trail.log_event(
                    event_type=AuditEventType.REPAYMENT_POSTED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "transaction_id": transaction.id,
                        "receipt_number": transaction.receipt_number,
                        "amount": amount.to_string(),
                        "channel": channel.value,
                        "transaction_date": transaction_date,
                        "applied": result.applied.to_string(),
                        "unapplied": result.unapplied.to_string(),
                        "settled_installments": result.settled_installments,
                    },
                    user_id=user_id
                )

                self._apply_reconciliation(loan, schedule, user_id)
                self._persist(loan)

        log_action(logger, "info", f"Repayment {transaction.receipt_number} posted to {loan.loan_number}",
                   user_id=user_id, action="post_repayment", resource=loan.id,
                   extra={"transaction_id": transaction.id, "amount": str(amount.amount),
                          "unapplied": str(result.unapplied.amount), "status": loan.status.value})
        return transaction

    def reverse_repayment(
        self,
        transaction_id: str,
        reason: str,
        user_id: Optional[str] = None
    ) -> RepaymentTransaction:
        """
        Reverse a posted repayment

        Exactly the stored allocation lines are taken back off the schedule
        and the suspense credit is removed. The loan is then reconciled, which
        re-opens a closed loan if an installment is outstanding again.

        Raises:
            NotFoundError: If the transaction or its loan does not exist
            IllegalStateTransitionError: If the transaction is already
                reversed, or the loan is written off
            AllocationError: If the loan's suspense balance cannot cover the
                transaction's unapplied amount
        """
        transaction = self.get_repayment(transaction_id)

        with self._locks.hold(transaction.loan_id):
            # Re-read under the lock so a concurrent reversal is seen
            transaction = self.get_repayment(transaction_id)
            if transaction.reversed:
                raise IllegalStateTransitionError(
                    "repayment", "reverse", "reversed", "posted"
                )

            loan = self._require_loan(transaction.loan_id)
            if loan.status in UNRECONCILED_STATUSES:
                raise IllegalStateTransitionError(
                    "loan", "reverse a repayment on", loan.status.value,
                    [s.value for s in REPAYABLE_STATUSES + (LoanStatus.CLOSED,)]
                )
            if transaction.unapplied_amount > loan.suspense_balance:
                raise AllocationError(
                    f"Suspense balance {loan.suspense_balance.to_string()} cannot cover "
                    f"unapplied {transaction.unapplied_amount.to_string()}"
                )

            schedule = self.get_schedule(loan.id)

            with self.storage.atomic():
                reversed_total = reverse_allocation(schedule, transaction.allocations, self.epsilon)
                self._save_entries(self._touched(schedule, transaction.allocations))

                for bucket, attr in ((AllocationBucket.PRINCIPAL, 'principal_paid'),
                                     (AllocationBucket.INTEREST, 'interest_paid'),
                                     (AllocationBucket.FEES, 'fees_paid')):
                    taken = Money.zero(loan.currency)
                    for line in transaction.allocations:
                        taken = taken + line.applied_to(bucket)
                    setattr(loan, attr, getattr(loan, attr) - taken)
                loan.total_repaid = loan.total_repaid - transaction.amount
                loan.suspense_balance = loan.suspense_balance - transaction.unapplied_amount

                now = self.clock.now()
                transaction.reversed = True
                transaction.reversed_at = now
                transaction.reversal_reason = reason
                transaction.updated_at = now
                self._save_repayment(transaction)

                loan.last_payment_date = self._latest_payment_date(loan.id)

                self.audit_trail.log_event(
                    event_type=AuditEventType.REPAYMENT_REVERSED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "transaction_id": transaction.id,
                        "receipt_number": transaction.receipt_number,
                        "amount": transaction.amount.to_string(),
                        "reversed_from_schedule": reversed_total.to_string(),
                        "reason": reason,
                    },
                    user_id=user_id
                )

                self._apply_reconciliation(loan, schedule, user_id)
                self._persist(loan)

        log_action(logger, "info", f"Repayment {transaction.receipt_number} reversed on {loan.loan_number}",
                   user_id=user_id, action="reverse_repayment", resource=loan.id,
                   extra={"transaction_id": transaction.id, "status": loan.status.value})
        return transaction

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def reconcile_status(self, loan_id: str, user_id: Optional[str] = None) -> LoanStatus:
        """
        Re-derive and persist a loan's status as of today

        Loans pending disbursement or written off are returned unchanged.
        Nothing is written when the status does not change.

        Raises:
            NotFoundError: If the loan does not exist
        """
        with self._locks.hold(loan_id):
            loan = self._require_loan(loan_id)
            if loan.status in UNRECONCILED_STATUSES:
                return loan.status

            previous = loan.status
            with self.storage.atomic():
                self._apply_reconciliation(loan, self.get_schedule(loan.id), user_id)
                if loan.status != previous:
                    self._persist(loan)

        return loan.status

    def reconcile_all(self, batch_size: Optional[int] = None) -> Dict[str, int]:
        """
        Reconcile every loan in repayment, the daily status sync

        A failure on one loan is logged and counted; the rest still run.

        Returns:
            Counts of loans processed, changed and failed
        """
        batch_size = batch_size or self.config.status_sync_batch_size
        results = {"processed": 0, "changed": 0, "failed": 0}

        loan_ids = []
        for loan_status in REPAYABLE_STATUSES:
            loan_ids.extend(
                data['id'] for data in self.storage.find(self.loans_table, {"status": loan_status.value})
            )

        for start in range(0, len(loan_ids), batch_size):
            batch = loan_ids[start:start + batch_size]
            for loan_id in batch:
                try:
                    before = self._require_loan(loan_id).status
                    after = self.reconcile_status(loan_id)
                    results["processed"] += 1
                    if after != before:
                        results["changed"] += 1
                except Exception as e:
                    # Log error but continue with other loans
                    results["failed"] += 1
                    log_action(logger, "warning", f"Status sync failed for loan {loan_id}: {e}",
                               action="reconcile_status", resource=loan_id,
                               extra={"error": type(e).__name__})
            log_action(logger, "info", f"Status sync batch of {len(batch)} loans done",
                       action="reconcile_all", extra=dict(results))

        return results

    def write_off(self, loan_id: str, reason: str, user_id: Optional[str] = None) -> Loan:
        """
        Write a loan off as uncollectible; terminal

        Raises:
            NotFoundError: If the loan does not exist
            IllegalStateTransitionError: Unless the loan is in repayment
        """
        with self._locks.hold(loan_id):
            loan = self._require_loan(loan_id)
            if loan.status not in REPAYABLE_STATUSES:
                raise IllegalStateTransitionError(
                    "loan", "write off", loan.status.value,
                    [s.value for s in REPAYABLE_STATUSES]
                )

            with self.storage.atomic():
                previous = loan.status
                loan.status = LoanStatus.WRITTEN_OFF
                loan.written_off_at = self.clock.now()
                loan.write_off_reason = reason
                self._persist(loan)

                self.audit_trail.log_event(
                    event_type=AuditEventType.LOAN_WRITTEN_OFF,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "loan_number": loan.loan_number,
                        "previous_status": previous,
                        "outstanding": loan.outstanding.to_string(),
                        "reason": reason,
                    },
                    user_id=user_id
                )

        log_action(logger, "info", f"Loan {loan.loan_number} written off",
                   user_id=user_id, action="write_off_loan", resource=loan.id,
                   extra={"outstanding": str(loan.outstanding.amount)})
        return loan

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if loan_dict:
            return Loan.from_dict(loan_dict)
        return None

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        client_id: Optional[str] = None
    ) -> List[Loan]:
        """List loans, optionally filtered by status and client"""
        filters = {}
        if status:
            filters["status"] = status.value
        if client_id:
            filters["client_id"] = client_id
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda x: x.created_at)
        return loans

    def get_schedule(self, loan_id: str) -> List[ScheduleEntry]:
        """Get a loan's schedule ordered by installment number"""
        entries = [
            ScheduleEntry.from_dict(data)
            for data in self.storage.find(self.schedules_table, {"loan_id": loan_id})
        ]
        entries.sort(key=lambda x: x.installment_number)
        return entries

    def get_repayment(self, transaction_id: str) -> RepaymentTransaction:
        """
        Get a repayment by ID

        Raises:
            NotFoundError: If it does not exist
        """
        data = self.storage.load(self.repayments_table, transaction_id)
        if not data:
            raise NotFoundError("repayment", transaction_id)
        return RepaymentTransaction.from_dict(data)

    def list_repayments(self, loan_id: str, include_reversed: bool = True) -> List[RepaymentTransaction]:
        """Get repayment history for a loan, oldest first"""
        transactions = [
            RepaymentTransaction.from_dict(data)
            for data in self.storage.find(self.repayments_table, {"loan_id": loan_id})
        ]
        if not include_reversed:
            transactions = [t for t in transactions if not t.reversed]
        transactions.sort(key=lambda x: (x.transaction_date, x.created_at))
        return transactions

    def get_standing(self, loan_id: str, as_of: Optional[date] = None) -> ReconciliationResult:
        """
        Per-installment days past due and arrears for a loan, without
        persisting anything

        Loans outside reconciliation (pending disbursement, written off)
        report their stored status; the arrears figures are still derived.

        Raises:
            NotFoundError: If the loan does not exist
        """
        loan = self._require_loan(loan_id)
        result = derive_status(self.get_schedule(loan_id), as_of or self.clock.today(), self.epsilon)
        if loan.status in UNRECONCILED_STATUSES:
            result.status = loan.status
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError("loan", loan_id)
        return loan

    def _apply_reconciliation(
        self,
        loan: Loan,
        schedule: List[ScheduleEntry],
        user_id: Optional[str] = None
    ) -> Optional[ReconciliationResult]:
        """Set the loan's derived status in memory; the caller persists"""
        if loan.status in UNRECONCILED_STATUSES:
            return None

        result = derive_status(schedule, self.clock.today(), self.epsilon)
        if result.status == loan.status:
            return result

        previous = loan.status
        loan.status = result.status
        if result.status == LoanStatus.CLOSED:
            loan.closed_at = self.clock.now()
        elif previous == LoanStatus.CLOSED:
            loan.closed_at = None

        self.audit_trail.log_event(
            event_type=(AuditEventType.LOAN_CLOSED if result.status == LoanStatus.CLOSED
                        else AuditEventType.LOAN_STATUS_CHANGED),
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "loan_number": loan.loan_number,
                "previous_status": previous,
                "new_status": result.status,
                "as_of": result.as_of,
                "overdue_installments": result.overdue_installments,
                "max_days_past_due": result.max_days_past_due,
            },
            user_id=user_id
        )
        log_action(logger, "info",
                   f"Loan {loan.loan_number} status {previous.value} -> {result.status.value}",
                   user_id=user_id, action="reconcile_status", resource=loan.id)
        return result

    def _persist(self, loan: Loan) -> None:
        """Save the loan if nobody else advanced its version"""
        expected = loan.version
        loan.version = expected + 1
        loan.updated_at = self.clock.now()
        try:
            self.storage.save_versioned(self.loans_table, loan.id, loan.to_dict(), expected)
        except ConcurrencyError:
            loan.version = expected
            raise

    def _save_entries(self, entries: List[ScheduleEntry]) -> None:
        for entry in entries:
            self.storage.save(self.schedules_table, entry.id, entry.to_dict())

    def _save_repayment(self, transaction: RepaymentTransaction) -> None:
        self.storage.save(self.repayments_table, transaction.id, transaction.to_dict())

    @staticmethod
    def _touched(schedule: List[ScheduleEntry], lines: List[AllocationLine]) -> List[ScheduleEntry]:
        ids = {line.schedule_entry_id for line in lines}
        return [entry for entry in schedule if entry.id in ids]

    def _latest_payment_date(self, loan_id: str) -> Optional[date]:
        dates = [t.transaction_date for t in self.list_repayments(loan_id, include_reversed=False)]
        return max(dates) if dates else None
