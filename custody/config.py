"""Runtime configuration for the custody service."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Mapping, Optional

from dotenv import load_dotenv

from custody.errors import ConfigurationError

_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


@dataclass(frozen=True)
class NetworkConfig:
    """Static description of a supported EVM network."""

    name: str
    chain_id: int
    explorer_url: str
    usdc_address: str
    infura_host: str


NETWORKS: Mapping[str, NetworkConfig] = {
    "sepolia": NetworkConfig(
        name="sepolia",
        chain_id=11155111,
        explorer_url="https://sepolia.etherscan.io",
        usdc_address="0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238",
        infura_host="sepolia.infura.io",
    ),
    "mainnet": NetworkConfig(
        name="mainnet",
        chain_id=1,
        explorer_url="https://etherscan.io",
        usdc_address="0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
        infura_host="mainnet.infura.io",
    ),
}


@dataclass(frozen=True)
class KMSSettings:
    backend: str
    project: Optional[str] = None
    location: str = "global"
    key_ring: Optional[str] = None
    key: Optional[str] = None
    credentials_json: Optional[str] = field(default=None, repr=False)
    local_key: Optional[bytes] = field(default=None, repr=False)

    @property
    def key_reference(self) -> str:
        if self.backend == "local":
            return "local/wallet-key"
        return (
            f"projects/{self.project}/locations/{self.location}"
            f"/keyRings/{self.key_ring}/cryptoKeys/{self.key}"
        )


@dataclass(frozen=True)
class Settings:
    """Process-wide settings, built once and injected into ``create_app``."""

    app_encryption_key: bytes = field(repr=False)
    kms: KMSSettings
    network: NetworkConfig
    rpc_url: str = field(repr=False)
    rpc_timeout_seconds: float = 10.0
    price_api_url: str = "https://api.coingecko.com/api/v3/simple/price?ids=ethereum&vs_currencies=usd"
    price_timeout_seconds: float = 5.0
    redis_url: Optional[str] = None
    database_path: str = "data/custody.db"
    reconcile_interval_seconds: float = 0.0
    reconcile_batch_size: int = 50
    reconcile_concurrency: int = 5
    log_level: str = "INFO"

    @property
    def chain(self) -> str:
        return "ethereum"


def parse_hex_key(value: Optional[str], name: str) -> bytes:
    """Decode a 32-byte key given as 64 hex characters."""

    if not value:
        raise ConfigurationError(f"{name} environment variable not set")
    if not _HEX_KEY.match(value.strip()):
        raise ConfigurationError(f"{name} must be 64 hex characters (32 bytes)")
    return bytes.fromhex(value.strip())


def _load_kms(env: Mapping[str, str]) -> KMSSettings:
    backend = env.get("KMS_BACKEND", "gcp").strip().lower()
    if backend == "local":
        return KMSSettings(
            backend="local",
            local_key=parse_hex_key(env.get("LOCAL_KMS_KEY"), "LOCAL_KMS_KEY"),
        )
    if backend != "gcp":
        raise ConfigurationError(f"Unsupported KMS_BACKEND: {backend}")

    project = env.get("GOOGLE_KMS_PROJECT")
    key_ring = env.get("GOOGLE_KMS_KEYRING")
    key = env.get("GOOGLE_KMS_KEY")
    credentials = env.get("GOOGLE_APPLICATION_CREDENTIALS_JSON")
    if not (project and key_ring and key):
        raise ConfigurationError("Missing required KMS environment variables")
    if not credentials:
        raise ConfigurationError("GOOGLE_APPLICATION_CREDENTIALS_JSON environment variable is not set")
    return KMSSettings(
        backend="gcp",
        project=project,
        location=env.get("GOOGLE_KMS_LOCATION", "global"),
        key_ring=key_ring,
        key=key,
        credentials_json=credentials,
    )


def _resolve_rpc_url(env: Mapping[str, str], network: NetworkConfig) -> str:
    explicit = env.get("ETH_RPC_URL")
    if explicit:
        return explicit
    project_id = env.get("INFURA_PROJECT_ID")
    if not project_id:
        raise ConfigurationError("Either ETH_RPC_URL or INFURA_PROJECT_ID must be set")
    return f"https://{network.infura_host}/v3/{project_id}"


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build :class:`Settings` from ``env`` (defaults to ``os.environ`` after ``.env``)."""

    if env is None:
        load_dotenv()
        env = os.environ

    network_name = env.get("ETHEREUM_NETWORK", "sepolia").strip().lower()
    network = NETWORKS.get(network_name)
    if network is None:
        raise ConfigurationError(f"Unsupported ETHEREUM_NETWORK: {network_name}")

    try:
        return Settings(
            app_encryption_key=parse_hex_key(env.get("APP_ENCRYPTION_KEY"), "APP_ENCRYPTION_KEY"),
            kms=_load_kms(env),
            network=network,
            rpc_url=_resolve_rpc_url(env, network),
            rpc_timeout_seconds=float(env.get("RPC_TIMEOUT_SECONDS", 10)),
            price_api_url=env.get("PRICE_API_URL", Settings.price_api_url),
            price_timeout_seconds=float(env.get("PRICE_TIMEOUT_SECONDS", 5)),
            redis_url=env.get("REDIS_URL") or None,
            database_path=env.get("DATABASE_PATH", Settings.database_path),
            reconcile_interval_seconds=float(env.get("RECONCILE_INTERVAL_SECONDS", 0)),
            reconcile_batch_size=int(env.get("RECONCILE_BATCH_SIZE", 50)),
            reconcile_concurrency=int(env.get("RECONCILE_CONCURRENCY", 5)),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
    except ValueError as exc:
        raise ConfigurationError(f"Invalid numeric setting: {exc}") from exc
