"""
FastAPI REST API Module

Thin HTTP layer over the ledger core: request parsing, error-to-status
mapping and the store lifecycle. Runs on port 9999 by default.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from fastapi import FastAPI, Depends, Path, Request, status
from fastapi.responses import JSONResponse
import uvicorn

from . import __version__
from .async_storage import AccountStoreInterface, create_account_store
from .config import LedgerConfig, get_config
from .errors import (
    AccountNotFoundError, InsufficientFundsError, InvalidRequestError,
    StorageUnavailableError
)
from .ledger import LedgerCore
from .logging_config import get_logger, setup_logging
from .migrations import SEED_ACCOUNTS
from .schemas import BalanceResponse, StatementResponse, TransactionRequest


logger = get_logger("ledger.api")

MAX_ACCOUNT_ID = 65535


def create_app(config: Optional[LedgerConfig] = None,
               store: Optional[AccountStoreInterface] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Service configuration; the global config when omitted
        store: Account store to serve from; built from config when omitted.
            The application opens it on startup and closes it on shutdown.
    """
    if config is None:
        config = get_config()
    if store is None:
        store = create_account_store(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await store.initialize()
        if config.seed_accounts:
            await store.provision_accounts(SEED_ACCOUNTS)
        app.state.store = store
        app.state.ledger = LedgerCore(store)
        logger.info(f"Ledger ready on {type(store).__name__}")

        yield

        await store.close()
        logger.info("Account store closed")

    app = FastAPI(
        title="Credit Ledger API",
        description="Account balances with credit limits and recent statements",
        version=__version__,
        lifespan=lifespan
    )

    @app.exception_handler(InvalidRequestError)
    async def invalid_request_handler(request: Request, exc: InvalidRequestError):
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                            content={"detail": str(exc)})

    @app.exception_handler(InsufficientFundsError)
    async def insufficient_funds_handler(request: Request, exc: InsufficientFundsError):
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                            content={"detail": str(exc)})

    @app.exception_handler(AccountNotFoundError)
    async def account_not_found_handler(request: Request, exc: AccountNotFoundError):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND,
                            content={"detail": str(exc)})

    @app.exception_handler(StorageUnavailableError)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError):
        logger.error(f"Storage failure on {request.method} {request.url.path}: {exc}")
        return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                            content={"detail": "Storage unavailable"})

    def get_ledger(request: Request) -> LedgerCore:
        return request.app.state.ledger

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "service": "credit_ledger",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    @app.post("/clientes/{account_id}/transacoes", response_model=BalanceResponse)
    async def post_transaction(
        request: TransactionRequest,
        account_id: int = Path(..., ge=0, le=MAX_ACCOUNT_ID),
        ledger: LedgerCore = Depends(get_ledger)
    ):
        """Apply a credit or debit to an account"""
        result = await ledger.apply(
            account_id,
            amount=request.valor,
            kind=request.tipo,
            description=request.descricao
        )
        return BalanceResponse.from_result(result)

    @app.get("/clientes/{account_id}/extrato", response_model=StatementResponse)
    async def get_statement(
        account_id: int = Path(..., ge=0, le=MAX_ACCOUNT_ID),
        ledger: LedgerCore = Depends(get_ledger)
    ):
        """Current balance and the ten most recent transactions"""
        snapshot = await ledger.statement(account_id)
        return StatementResponse.from_snapshot(snapshot)

    return app


def run_server(config: Optional[LedgerConfig] = None):
    """Run the FastAPI server"""
    if config is None:
        config = get_config()
    setup_logging(level=config.log_level, log_format=config.log_format, log_file=config.log_file)
    uvicorn.run(
        create_app(config),
        host=config.api_host,
        port=config.api_port,
        log_level=config.log_level.lower()
    )
