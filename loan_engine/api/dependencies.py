"""
Shared dependencies for the API routers
"""

from typing import Optional

from fastapi import Header

from ..storage import StorageInterface, create_storage
from ..audit import AuditTrail
from ..clock import Clock, SystemClock
from ..config import LoanEngineConfig, get_config
from ..loans import LoanManager
from ..applications import LoanApplicationManager
from ..bulk import BulkOperationRunner


class LoanSystem:
    """Loan engine with all components initialized"""

    def __init__(
        self,
        config: Optional[LoanEngineConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Clock] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        self.storage = storage or create_storage(
            self.config.storage_backend, self.config.database_path
        )
        self.clock = clock or SystemClock()

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.loan_manager = LoanManager(self.storage, self.audit_trail, self.clock, self.config)
        self.application_manager = LoanApplicationManager(
            self.storage, self.audit_trail, self.loan_manager, self.clock, self.config
        )
        self.bulk_runner = BulkOperationRunner(self.application_manager)


_loan_system: Optional[LoanSystem] = None


def get_loan_system() -> LoanSystem:
    """Dependency returning the process-wide loan system, built on first use"""
    global _loan_system
    if _loan_system is None:
        _loan_system = LoanSystem()
    return _loan_system


def get_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Acting officer, as asserted by the upstream gateway"""
    return x_user_id
