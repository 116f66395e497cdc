"""
Pydantic schemas for API requests and responses
"""

from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..currency import Money, Currency, to_decimal
from ..errors import InvalidTermsError
from ..schedule import (
    LoanTerms, RatePeriod, RepaymentFrequency, InterestMethod, ScheduleEntry, processing_fee_for,
)
from ..applications import ApprovalDecision, RejectionDecision, LoanApplication
from ..loans import Loan, RepaymentChannel, RepaymentTransaction


def _parse_enum(enum_cls, value: str, label: str):
    try:
        return enum_cls(value.lower())
    except ValueError:
        allowed = ", ".join(member.value for member in enum_cls)
        raise InvalidTermsError(f"Unknown {label} '{value}'; expected one of {allowed}")


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (KES, UGX, ...)")

    def to_money(self) -> Money:
        try:
            currency = Currency[self.currency.upper()]
        except KeyError:
            raise InvalidTermsError(f"Unsupported currency '{self.currency}'")
        try:
            return Money(to_decimal(self.amount), currency)
        except ValueError as e:
            raise InvalidTermsError(str(e))


# Terms shared by approval and schedule preview
class TermsModel(BaseModel):
    principal: MoneyModel
    term_months: int
    interest_rate: str = Field(..., description="Rate as a fraction, e.g. \"0.18\"")
    rate_period: str = RatePeriod.PER_ANNUM.value
    repayment_frequency: str = RepaymentFrequency.MONTHLY.value
    interest_method: str = InterestMethod.DECLINING_BALANCE.value
    processing_fee: Optional[MoneyModel] = None
    processing_fee_rate: Optional[str] = Field(None, description="Fee as a fraction of principal")
    processing_fee_cap: Optional[MoneyModel] = None
    start_date: Optional[date] = None

    def _common(self) -> Dict[str, Any]:
        try:
            rate = to_decimal(self.interest_rate)
        except ValueError as e:
            raise InvalidTermsError(str(e))
        return {
            "principal": self.principal.to_money(),
            "term_months": self.term_months,
            "interest_rate": rate,
            "rate_period": _parse_enum(RatePeriod, self.rate_period, "rate period"),
            "repayment_frequency": _parse_enum(
                RepaymentFrequency, self.repayment_frequency, "repayment frequency"
            ),
            "interest_method": _parse_enum(InterestMethod, self.interest_method, "interest method"),
            "processing_fee": self.processing_fee.to_money() if self.processing_fee else None,
            "processing_fee_rate": self.processing_fee_rate,
            "processing_fee_cap": self.processing_fee_cap.to_money() if self.processing_fee_cap else None,
        }

    def to_terms(self, default_start: date) -> LoanTerms:
        fields = self._common()
        fields["processing_fee"] = processing_fee_for(
            fields["principal"], fields["processing_fee"],
            fields.pop("processing_fee_rate"), fields.pop("processing_fee_cap")
        )
        return LoanTerms(start_date=self.start_date or default_start, **fields)


# Application schemas
class CreateApplicationRequest(BaseModel):
    client_id: str
    requested_amount: MoneyModel
    requested_term_months: int
    product_version_id: Optional[str] = None
    purpose: Optional[str] = None


class NotesRequest(BaseModel):
    notes: Optional[str] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class ApprovalRequest(TermsModel):
    notes: Optional[str] = None

    def to_decision(self) -> ApprovalDecision:
        return ApprovalDecision(start_date=self.start_date, notes=self.notes, **self._common())


class RejectionRequest(BaseModel):
    reason: str
    notes: Optional[str] = None

    def to_decision(self) -> RejectionDecision:
        return RejectionDecision(reason=self.reason, notes=self.notes)


class BulkApproveRequest(BaseModel):
    application_ids: List[str]
    decision: ApprovalRequest


class BulkRejectRequest(BaseModel):
    application_ids: List[str]
    reason: str
    notes: Optional[str] = None


# Loan schemas
class WriteOffRequest(BaseModel):
    reason: str


class RepaymentRequest(BaseModel):
    loan_id: str
    amount: MoneyModel
    channel: str = RepaymentChannel.CASH.value
    transaction_date: Optional[date] = None
    reference: Optional[str] = None
    notes: Optional[str] = None

    def parsed_channel(self) -> RepaymentChannel:
        return _parse_enum(RepaymentChannel, self.channel, "channel")


class ReversalRequest(BaseModel):
    reason: str


class SchedulePreviewRequest(TermsModel):
    pass


# Response serializers
def serialize_application(application: LoanApplication) -> Dict[str, Any]:
    return application.to_dict()


def serialize_loan(loan: Loan) -> Dict[str, Any]:
    data = loan.to_dict()
    data["principal"] = loan.principal.to_dict()
    data["outstanding"] = loan.outstanding.to_dict()
    return data


def serialize_entry(entry: ScheduleEntry) -> Dict[str, Any]:
    data = entry.to_dict()
    data["total_due"] = str(entry.total_due.amount)
    data["total_paid"] = str(entry.total_paid.amount)
    data["remaining"] = str(entry.remaining.amount)
    return data


def serialize_repayment(transaction: RepaymentTransaction) -> Dict[str, Any]:
    data = transaction.to_dict()
    data["applied_amount"] = str(transaction.applied_amount.amount)
    return data
