"""Wallet routes: create, address, balances and spending limits."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from custody.chain.client import explorer_address_url
from custody.config import NetworkConfig
from custody.transactions import LimitPolicy
from custody.wallets import WalletService

from .deps import current_user, get_limit_policy, get_network, get_wallet_service
from .schemas import (
    AssetBalanceResponse,
    BalanceResponse,
    LimitsResponse,
    WalletAddressResponse,
    WalletCreate,
    WalletResponse,
)

router = APIRouter(prefix="/api/v1/wallets", tags=["wallets"])


@router.post("", response_model=WalletResponse)
async def create_wallet(
    payload: Optional[WalletCreate] = None,
    user_id: str = Depends(current_user),
    service: WalletService = Depends(get_wallet_service),
    network: NetworkConfig = Depends(get_network),
) -> WalletResponse:
    if payload is not None and payload.email:
        service.register_user(user_id, payload.email, payload.name)
    result = await service.create_wallet(user_id)
    return WalletResponse(
        address=result.wallet.address,
        chain=result.wallet.chain,
        created=result.created,
        explorer_url=explorer_address_url(network, result.wallet.address),
    )


@router.get("/address", response_model=WalletAddressResponse)
async def wallet_address(
    user_id: str = Depends(current_user),
    service: WalletService = Depends(get_wallet_service),
    network: NetworkConfig = Depends(get_network),
) -> WalletAddressResponse:
    wallet = service.get_wallet(user_id)
    return WalletAddressResponse(
        address=wallet.address,
        chain=wallet.chain,
        explorer_url=explorer_address_url(network, wallet.address),
    )


@router.get("/balance", response_model=BalanceResponse)
async def wallet_balance(
    user_id: str = Depends(current_user),
    service: WalletService = Depends(get_wallet_service),
) -> BalanceResponse:
    balances = await service.get_balances(user_id)
    return BalanceResponse(
        address=balances.address,
        eth=AssetBalanceResponse(**balances.to_dict()["native"]),
        usdc=AssetBalanceResponse(**balances.to_dict()["token"]),
        total_usd=balances.total_usd,
    )


@router.get("/limits", response_model=LimitsResponse)
async def wallet_limits(
    user_id: str = Depends(current_user),
    policy: LimitPolicy = Depends(get_limit_policy),
) -> LimitsResponse:
    usage = policy.usage(user_id)
    limits = usage.limits
    return LimitsResponse(
        tier=usage.tier,
        per_transaction_usd=str(limits.per_transaction_usd),
        daily_usd=str(limits.daily_usd),
        monthly_usd=str(limits.monthly_usd),
        requires_2fa=limits.requires_second_factor,
        spent_today_usd=str(usage.spent_today_usd),
        spent_this_month_usd=str(usage.spent_this_month_usd),
        remaining_today_usd=str(usage.remaining_today_usd),
        remaining_this_month_usd=str(usage.remaining_this_month_usd),
    )
