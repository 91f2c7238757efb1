"""Application factory wiring every custody component once per process."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from custody.api.v1 import health, transactions, wallets
from custody.audit import AuditTrail, bootstrap_default_audit_trail
from custody.chain.balance import BalanceReader
from custody.chain.client import ChainClient, Web3ChainClient
from custody.chain.executor import TransactionExecutor
from custody.chain.nonce import NonceAllocator
from custody.chain.price_oracle import PriceOracle
from custody.chain.signer import Signer
from custody.config import Settings, load_settings
from custody.crypto.encryption import LayeredCipher
from custody.crypto.kms import KeyManagementService, create_kms
from custody.crypto.wallet import WalletGenerator
from custody.errors import CustodyError, TokenAlreadyConsumed, TransferFailed
from custody.infra.cache import CacheStore, create_cache
from custody.infra.store import CustodyStore, SQLiteCustodyStore
from custody.logging_config import configure_logging
from custody.transactions import LimitPolicy, RecipientResolver, StatusReconciler, TransactionService
from custody.wallets import WalletService

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


async def _custody_error_handler(request: Request, exc: CustodyError) -> JSONResponse:
    body = {"error": exc.code, "detail": exc.message}
    if isinstance(exc, TokenAlreadyConsumed):
        body.update(status=exc.status, tx_hash=exc.tx_hash)
    if isinstance(exc, TransferFailed):
        body["transaction_id"] = exc.transaction_id
    if exc.status_code >= 500:
        logger.error("Request failed", extra={"path": request.url.path, "error": exc.code})
    return JSONResponse(status_code=exc.status_code, content=body)


@asynccontextmanager
async def _lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    stop = asyncio.Event()
    task: Optional[asyncio.Task] = None
    if settings.reconcile_interval_seconds > 0:
        task = asyncio.create_task(
            app.state.reconciler.run_periodic(settings.reconcile_interval_seconds, stop)
        )
        logger.info("Periodic reconciliation every %ss", settings.reconcile_interval_seconds)
    try:
        yield
    finally:
        stop.set()
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await app.state.cache.close()
        app.state.store.close()


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[CustodyStore] = None,
    chain_client: Optional[ChainClient] = None,
    kms: Optional[KeyManagementService] = None,
    cache: Optional[CacheStore] = None,
    price_oracle: Optional[PriceOracle] = None,
    audit_trail: Optional[AuditTrail] = None,
) -> FastAPI:
    """Build the API. Collaborators not passed in are constructed from ``settings``."""

    settings = settings or load_settings()
    configure_logging(settings.log_level)

    store = store or SQLiteCustodyStore(settings.database_path)
    chain_client = chain_client or Web3ChainClient(
        settings.rpc_url, settings.network.chain_id, timeout_seconds=settings.rpc_timeout_seconds
    )
    kms = kms or create_kms(settings.kms, timeout_seconds=settings.rpc_timeout_seconds)
    cache = cache or create_cache(settings.redis_url)
    price_oracle = price_oracle or PriceOracle(
        url=settings.price_api_url, timeout_seconds=settings.price_timeout_seconds
    )
    audit_trail = audit_trail or bootstrap_default_audit_trail()

    cipher = LayeredCipher.from_keys(settings.app_encryption_key, kms)
    balances = BalanceReader(chain_client, cache, price_oracle, settings.network)
    signer = Signer(store, cipher, chain_client, audit_trail=audit_trail, chain=settings.chain)
    nonces = NonceAllocator(store, chain_client)
    executor = TransactionExecutor(
        store, chain_client, signer, nonces, balances, price_oracle, settings.network, chain=settings.chain
    )

    app = FastAPI(title="Custody Engine API", version=VERSION, lifespan=_lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.chain_client = chain_client
    app.state.cache = cache
    app.state.price_oracle = price_oracle
    app.state.audit_trail = audit_trail
    app.state.signer = signer
    app.state.nonce_allocator = nonces
    app.state.limit_policy = LimitPolicy(store)
    app.state.wallet_service = WalletService(
        store, WalletGenerator(cipher, settings.chain), balances, audit_trail=audit_trail, chain=settings.chain
    )
    app.state.transaction_service = TransactionService(
        store,
        chain_client,
        executor,
        balances,
        price_oracle,
        RecipientResolver(store, settings.chain),
        app.state.limit_policy,
        settings.network,
        audit_trail=audit_trail,
        chain=settings.chain,
    )
    app.state.reconciler = StatusReconciler(
        store,
        chain_client,
        audit_trail=audit_trail,
        batch_size=settings.reconcile_batch_size,
        concurrency=settings.reconcile_concurrency,
    )

    app.add_exception_handler(CustodyError, _custody_error_handler)
    app.include_router(health.router)
    app.include_router(wallets.router)
    app.include_router(transactions.router)

    @app.get("/metrics", include_in_schema=False)
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    logger.info(
        "Custody engine configured",
        extra={"network": settings.network.name, "encryption_stages": cipher.stage_count},
    )
    return app
