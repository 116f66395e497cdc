"""
Loan Engine API Application Factory
"""

from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import get_config
from ..errors import (
    LoanEngineError, NotFoundError, IllegalStateTransitionError, DuplicateApprovalError,
    ConcurrencyError, InvalidTermsError, AllocationError,
)
from ..logging_config import get_logger, setup_logging
from .dependencies import LoanSystem, get_loan_system
from .applications import router as applications_router
from .loans import router as loans_router
from .repayments import router as repayments_router
from .schedules import router as schedules_router


logger = get_logger("loan_engine.api")

# Domain error -> HTTP status
ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (IllegalStateTransitionError, 409),
    (DuplicateApprovalError, 409),
    (ConcurrencyError, 409),
    (InvalidTermsError, 422),
    (AllocationError, 422),
)


def status_code_for(error: LoanEngineError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return 400


async def loan_engine_error_handler(request: Request, exc: LoanEngineError) -> JSONResponse:
    code = status_code_for(exc)
    logger.warning(f"{request.method} {request.url.path} -> {code}: {exc}")
    return JSONResponse(
        status_code=code,
        content={"detail": str(exc), "error": type(exc).__name__}
    )


def create_app(system: Optional[LoanSystem] = None) -> FastAPI:
    """
    Create and configure the FastAPI application

    Args:
        system: Loan system to serve; the process-wide one when omitted
    """
    app = FastAPI(
        title="Loan Engine API",
        description="Loan amortization, repayment allocation and status reconciliation",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc"
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(LoanEngineError, loan_engine_error_handler)

    if system is not None:
        app.dependency_overrides[get_loan_system] = lambda: system

    # Include routers
    app.include_router(applications_router, prefix="/applications", tags=["Applications"])
    app.include_router(loans_router, prefix="/loans", tags=["Loans"])
    app.include_router(repayments_router, prefix="/repayments", tags=["Repayments"])
    app.include_router(schedules_router, prefix="/schedules", tags=["Schedules"])

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "loan_engine_api",
            "version": __version__
        }

    return app


# Run server function
def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    setup_logging(config.log_level, fmt=config.log_format, log_file=config.log_file)
    uvicorn.run(
        "loan_engine.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
