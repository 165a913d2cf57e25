"""
Bank Ledger API Application Factory
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from .. import __version__
from ..config import BankConfig, get_config
from ..errors import BankError
from ..logging_config import get_logger, log_action
from .deps import BankingSystem, get_banking_system
from .schemas import envelope
from .auth import router as auth_router
from .users import router as users_router
from .accounts import router as accounts_router
from .transactions import router as transactions_router
from .analytics import router as analytics_router


logger = get_logger("bank_ledger.api")


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=envelope(message=message, success=False))


def register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors and framework errors onto the response envelope"""

    @app.exception_handler(BankError)
    async def bank_error_handler(request: Request, exc: BankError):
        if exc.status_code >= 500:
            log_action(
                logger, "error", f"Request failed: {exc.message}",
                action="request_failed", resource=request.url.path
            )
        return _error_response(exc.status_code, exc.public_message)

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _error_response(400, "Invalid request body")

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        log_action(
            logger, "error", f"Unhandled error: {exc}",
            action="request_failed", resource=request.url.path,
            extra={"error": type(exc).__name__}
        )
        return _error_response(500, "Internal server error")


def create_app(system: Optional[BankingSystem] = None,
               config: Optional[BankConfig] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    When no system is given, one is built from configuration at startup and
    closed at shutdown. A system passed in stays owned by the caller.
    """
    app_config = system.config if system else (config or get_config())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_system = app.state.system is None
        if owns_system:
            app.state.system = BankingSystem(app_config)
            log_action(logger, "info", "Banking system started", action="startup",
                       extra={"database_url": app_config.database_url.split("@")[-1]})
        try:
            yield
        finally:
            if owns_system:
                app.state.system.close()
                app.state.system = None
                log_action(logger, "info", "Banking system stopped", action="shutdown")

    app = FastAPI(
        title="Bank Ledger API",
        description="Banking demo API with a serialized deposit/withdraw ledger",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan
    )
    app.state.system = system

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=app_config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    # Include routers
    app.include_router(auth_router, tags=["Auth"])
    app.include_router(users_router, prefix="/api/users", tags=["Users"])
    app.include_router(accounts_router, prefix="/api/accounts", tags=["Accounts"])
    app.include_router(transactions_router, prefix="/api/transactions", tags=["Transactions"])
    app.include_router(analytics_router, prefix="/api", tags=["Analytics"])

    @app.get("/")
    def get_api_info():
        """Get API information"""
        return envelope({
            "name": "Bank Ledger API",
            "version": __version__,
            "time": datetime.now(timezone.utc).isoformat(),
        }, "Server is running")

    @app.get("/health")
    def health_check(request: Request):
        """Health check endpoint; 503 when storage is unreachable"""
        system = get_banking_system(request)
        try:
            system.storage.ping()
        except Exception as e:
            log_action(logger, "error", f"Health check failed: {e}", action="health_check")
            return JSONResponse(
                status_code=503,
                content=envelope({"status": "unhealthy", "database": "disconnected"},
                                 "Database connection failed", success=False)
            )
        return envelope({"status": "healthy", "database": "connected"})

    return app


# Create the app instance for uvicorn
app = create_app()


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    app_config = get_config()
    uvicorn.run(
        "bank_ledger.api:app",
        host=host or app_config.api_host,
        port=port or app_config.api_port,
        reload=debug,
        log_level=app_config.log_level.lower()
    )
