"""FastAPI application factory."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payroll_execution import __version__
from payroll_execution.api.routes import (
    health_router,
    irregularities_router,
    payroll_runs_router,
    payslips_router,
    signing_bonuses_router,
    termination_benefits_router,
)
from payroll_execution.config import Settings, get_settings
from payroll_execution.database import dispose_db, init_db
from payroll_execution.exceptions import PayrollError, error_payload
from payroll_execution.logging_config import configure_logging
from payroll_execution.services.collaborators import (
    EmployeeDirectory,
    InMemoryEmployeeDirectory,
    InMemoryPeriodFacts,
    PeriodFactsProvider,
)

logger = logging.getLogger(__name__)

STATUS_BY_CODE: dict[str, int] = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "CONFIGURATION_MISSING": status.HTTP_400_BAD_REQUEST,
    "PERMISSION_DENIED": status.HTTP_403_FORBIDDEN,
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "STATE_CONFLICT": status.HTTP_409_CONFLICT,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "APPROVAL_GUARD_VIOLATION": status.HTTP_409_CONFLICT,
    "DUPLICATE_DISBURSEMENT": status.HTTP_409_CONFLICT,
    "SUBMISSION_TIMEOUT": status.HTTP_504_GATEWAY_TIMEOUT,
}


def create_app(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    employee_directory: EmployeeDirectory | None = None,
    period_facts: PeriodFactsProvider | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators default to empty in-memory implementations; deployments
    inject adapters for their HR and attendance systems.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler."""
        configure_logging(settings.log_level)
        owns_engine = session_factory is None
        if owns_engine:
            _, app.state.session_factory = init_db()
        logger.info("Payroll execution API %s starting", __version__)
        yield
        if owns_engine:
            await dispose_db()

    app = FastAPI(
        title="Payroll Execution API",
        description="Payroll run lifecycle, calculation, approvals and payslips",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_factory = session_factory
    app.state.employee_directory = employee_directory or InMemoryEmployeeDirectory()
    app.state.period_facts = period_facts or InMemoryPeriodFacts()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Exception handlers
    @app.exception_handler(PayrollError)
    async def payroll_error_handler(request: Request, exc: PayrollError) -> JSONResponse:
        """Map typed payroll errors onto HTTP statuses."""
        status_code = STATUS_BY_CODE.get(exc.code, status.HTTP_400_BAD_REQUEST)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content=error_payload(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {"loc": (), "msg": "Invalid request"}
        field = ".".join(str(p) for p in first.get("loc", ()))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": f"{field}: {first['msg']}", "code": "VALIDATION_ERROR"},
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions."""
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "An unexpected error occurred",
                "code": "INTERNAL_ERROR",
            },
        )

    # Include routers
    app.include_router(health_router)
    app.include_router(payroll_runs_router, prefix="/api/v1")
    app.include_router(signing_bonuses_router, prefix="/api/v1")
    app.include_router(termination_benefits_router, prefix="/api/v1")
    app.include_router(irregularities_router, prefix="/api/v1")
    app.include_router(payslips_router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
