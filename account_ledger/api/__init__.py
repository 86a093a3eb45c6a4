"""
Account Ledger API Application Factory
"""

from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .. import __version__
from ..config import LedgerConfig, get_config
from ..errors import (
    InsufficientFundsError, InvalidInputError, LedgerError, NotFoundError,
    StoreUnavailableError,
)
from ..logging_config import get_logger, setup_logging
from ..service import LedgerService
from ..storage import create_store
from .accounts import router as accounts_router


# Checked in order; the first matching kind wins
ERROR_STATUS_CODES = (
    (NotFoundError, 404),
    (InsufficientFundsError, 400),
    (InvalidInputError, 400),
    (StoreUnavailableError, 503),
)


def status_code_for(error: LedgerError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def create_app(service: Optional[LedgerService] = None,
               config: Optional[LedgerConfig] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    When no service is given, the account store named by the configuration
    is opened on startup and closed on shutdown.
    """
    config = config or (service.config if service else get_config())
    setup_logging(config.log_level, config.log_format)
    logger = get_logger("ledger.api")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_store = getattr(app.state, "ledger", None) is None
        if owns_store:
            app.state.ledger = LedgerService(create_store(config), config)
        logger.info("Account ledger API started")
        try:
            yield
        finally:
            if owns_store:
                app.state.ledger.store.close()
                app.state.ledger = None
            logger.info("Account ledger API stopped")

    app = FastAPI(
        title="Account Ledger API",
        description="Customer account balances with atomic deposits and withdrawals",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.ledger = service

    @app.exception_handler(LedgerError)
    async def ledger_error_handler(request: Request, exc: LedgerError):
        status_code = status_code_for(exc)
        if status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    app.include_router(accounts_router, prefix="/accounts", tags=["Accounts"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "account_ledger",
            "version": __version__
        }

    return app


def run_server(host: Optional[str] = None, port: Optional[int] = None, debug: bool = False):
    """Run the FastAPI server"""
    config = get_config()
    uvicorn.run(
        "account_ledger.api:create_app",
        factory=True,
        host=host or config.api_host,
        port=port or config.api_port,
        reload=debug,
        log_level=config.log_level.lower()
    )
