"""
Bulk Operations Module

Applies one approve or reject decision across many applications. Each
application is decided on its own; a failure is recorded against its id and
the batch carries on.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Union

from .applications import LoanApplicationManager, ApprovalDecision, RejectionDecision
from .errors import LoanEngineError
from .logging_config import get_logger, log_action


logger = get_logger("loan_engine.bulk")

Decision = Union[ApprovalDecision, RejectionDecision]


@dataclass
class BulkItemError:
    id: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "message": self.message}


@dataclass
class BulkActionResult:
    """Outcome of a bulk decision; succeeded + failed == requested"""
    requested: int
    succeeded: int = 0
    failed: int = 0
    succeeded_ids: List[str] = field(default_factory=list)
    errors: List[BulkItemError] = field(default_factory=list)

    def record_success(self, application_id: str) -> None:
        self.succeeded += 1
        self.succeeded_ids.append(application_id)

    def record_failure(self, application_id: str, message: str) -> None:
        self.failed += 1
        self.errors.append(BulkItemError(id=application_id, message=message))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested": self.requested,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "succeeded_ids": list(self.succeeded_ids),
            "errors": [error.to_dict() for error in self.errors],
        }


class BulkOperationRunner:
    """Runs application decisions in bulk with per-item isolation"""

    def __init__(self, application_manager: LoanApplicationManager):
        self.application_manager = application_manager

    def bulk_decide(
        self,
        application_ids: Sequence[str],
        decision: Decision,
        user_id: Optional[str] = None
    ) -> BulkActionResult:
        """
        Apply one decision to every listed application

        No transaction spans the batch: each approval commits or rolls back
        on its own. Ids are processed in the order given, duplicates included.

        Args:
            application_ids: Applications to decide
            decision: ApprovalDecision or RejectionDecision, applied uniformly
            user_id: Officer taking the decision

        Returns:
            BulkActionResult

        Raises:
            TypeError: If the decision is of neither kind
        """
        if isinstance(decision, ApprovalDecision):
            action = "bulk_approve"

            def decide(application_id: str) -> None:
                self.application_manager.approve_and_create_loan(application_id, decision, user_id)
        elif isinstance(decision, RejectionDecision):
            action = "bulk_reject"

            def decide(application_id: str) -> None:
                self.application_manager.reject(application_id, decision, user_id)
        else:
            raise TypeError(f"Unsupported decision type: {type(decision).__name__}")

        result = BulkActionResult(requested=len(application_ids))

        for application_id in application_ids:
            try:
                decide(application_id)
            except LoanEngineError as e:
                result.record_failure(application_id, str(e))
                log_action(logger, "warning", f"{action} skipped {application_id}: {e}",
                           user_id=user_id, action=action, resource=application_id,
                           extra={"error": type(e).__name__})
            except Exception as e:
                # Log error but continue with other applications
                result.record_failure(application_id, str(e) or type(e).__name__)
                logger.exception(f"{action} failed unexpectedly for {application_id}")
            else:
                result.record_success(application_id)

        log_action(logger, "info", f"{action} finished: {result.succeeded}/{result.requested} succeeded",
                   user_id=user_id, action=action,
                   extra={"requested": result.requested, "succeeded": result.succeeded,
                          "failed": result.failed})
        return result

    def bulk_approve(
        self,
        application_ids: Sequence[str],
        decision: ApprovalDecision,
        user_id: Optional[str] = None
    ) -> BulkActionResult:
        return self.bulk_decide(application_ids, decision, user_id)

    def bulk_reject(
        self,
        application_ids: Sequence[str],
        decision: RejectionDecision,
        user_id: Optional[str] = None
    ) -> BulkActionResult:
        return self.bulk_decide(application_ids, decision, user_id)
