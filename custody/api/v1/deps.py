"""Dependency accessors for objects wired onto ``app.state``."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request, status

from custody.config import NetworkConfig
from custody.transactions import LimitPolicy, StatusReconciler, TransactionService
from custody.wallets import WalletService


def current_user(x_user_id: str | None = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="unauthorized")
    return x_user_id.strip()


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise RuntimeError(f"{name} is not configured")
    return value


def get_wallet_service(request: Request) -> WalletService:
    return _state(request, "wallet_service")


def get_transaction_service(request: Request) -> TransactionService:
    return _state(request, "transaction_service")


def get_limit_policy(request: Request) -> LimitPolicy:
    return _state(request, "limit_policy")


def get_reconciler(request: Request) -> StatusReconciler:
    return _state(request, "reconciler")


def get_network(request: Request) -> NetworkConfig:
    return _state(request, "settings").network
