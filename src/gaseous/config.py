"""
Configuration management for gaseous.

Provides centralized configuration for:
- Ledger RPC and bundler endpoints
- EntryPoint and account factory addresses
- Timeout values
- Gas limit defaults and fee floors
- Retry settings
- Sponsorship quota defaults
- Logging configuration
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

WEI_PER_ETH = 10**18
GWEI = 10**9

# ERC-4337 v0.6 EntryPoint, same address on every supported chain.
ENTRY_POINT_V06 = "0x5FF137D4b0FDCD49DcA30c7CF57E578a026d2789"

# Creation code of the proxy SimpleAccountFactory deploys (type(ERC1967Proxy).creationCode).
# It depends on the compiler build of the deployed factory, so it is configured
# per network rather than hard-coded.
DEFAULT_PROXY_CREATION_CODE = ""


@dataclass
class NetworkConfig:
    """Addresses and endpoints for one network."""
    chain_id: int
    name: str
    rpc_url: str
    bundler_url: str = ""
    entry_point: str = ENTRY_POINT_V06
    factory_address: str = "0x0000000000000000000000000000000000000000"
    account_implementation: str = "0x0000000000000000000000000000000000000000"
    proxy_creation_code: str = DEFAULT_PROXY_CREATION_CODE
    paymaster_url: str = ""
    is_testnet: bool = False
    explorer_url: str = ""


@dataclass
class GasDefaults:
    """Generous gas limits used when the caller gives no hints."""
    call_gas_limit: int = 100_000
    verification_gas_limit: int = 100_000
    deploy_verification_gas_limit: int = 400_000  # initCode runs inside validation
    pre_verification_gas: int = 50_000


@dataclass
class FeeFloors:
    """Conservative fee bounds substituted when estimation fails."""
    max_fee_per_gas: int = 1 * GWEI
    max_priority_fee_per_gas: int = 1 * GWEI
    base_fee_multiplier: int = 2  # maxFee = base * multiplier + priority


@dataclass
class TimeoutConfig:
    """Bounded waits for every external call, in seconds."""
    rpc_seconds: float = 10.0
    bundler_seconds: float = 30.0
    receipt_timeout_seconds: float = 180.0
    receipt_poll_seconds: float = 2.0


@dataclass
class RetrySettings:
    """Retry policy for transient failures."""
    max_attempts: int = 3
    initial_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1


@dataclass
class SponsorshipDefaults:
    """Quota values a fresh paymaster starts with (wei)."""
    daily_limit: int = WEI_PER_ETH // 10  # 0.1 ETH
    monthly_limit: int = WEI_PER_ETH  # 1 ETH
    per_user_limit: int = WEI_PER_ETH // 100  # 0.01 ETH
    daily_window_seconds: int = 24 * 60 * 60
    monthly_window_seconds: int = 30 * 24 * 60 * 60


@dataclass
class LoggingConfig:
    """Configuration for pipeline logging."""
    rpc_call_level: str = "DEBUG"
    operation_level: str = "INFO"
    error_level: str = "ERROR"

    mask_addresses: bool = False
    log_gas_prices: bool = True

    audit_log_enabled: bool = True
    audit_log_path: Optional[str] = None  # None = use default logger


@dataclass
class GaslessConfig:
    """
    Master configuration for gaseous.

    Supports loading from environment variables with prefix GASEOUS_.
    """
    networks: Dict[str, NetworkConfig] = field(default_factory=dict)

    gas: GasDefaults = field(default_factory=GasDefaults)
    fee_floors: FeeFloors = field(default_factory=FeeFloors)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    retry: RetrySettings = field(default_factory=RetrySettings)
    sponsorship: SponsorshipDefaults = field(default_factory=SponsorshipDefaults)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    default_network: str = "base_sepolia"

    def get_network(self, name: Optional[str] = None) -> NetworkConfig:
        """Get configuration for a network (default network when omitted)."""
        key = name or self.default_network
        if key not in self.networks:
            raise ValueError(f"Unknown network: {key}")
        return self.networks[key]


def _get_env(key: str, default: Any = None, prefix: str = "GASEOUS_") -> Any:
    """Get environment variable with prefix."""
    return os.getenv(f"{prefix}{key}", default)


def _get_env_int(key: str, default: int) -> int:
    raw = _get_env(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw, 0)
    except ValueError:
        logger.warning("Invalid integer for GASEOUS_%s: %s", key, raw)
        return default


def _build_network_config(
    chain_id: int,
    name: str,
    default_rpc: str,
    explorer_url: str,
    is_testnet: bool = False,
) -> NetworkConfig:
    """Build a NetworkConfig with environment variable overrides.

    Network-specific variables (``GASEOUS_BASE_SEPOLIA_RPC_URL``) win over the
    generic ones (``GASEOUS_RPC_URL``).
    """
    prefix = name.upper()

    def _pick(key: str, default: str) -> str:
        return _get_env(f"{prefix}_{key}") or _get_env(key) or default

    return NetworkConfig(
        chain_id=chain_id,
        name=name,
        rpc_url=_pick("RPC_URL", default_rpc),
        bundler_url=_pick("BUNDLER_URL", ""),
        entry_point=_pick("ENTRY_POINT", ENTRY_POINT_V06),
        factory_address=_pick("FACTORY_ADDRESS", "0x0000000000000000000000000000000000000000"),
        account_implementation=_pick(
            "ACCOUNT_IMPLEMENTATION", "0x0000000000000000000000000000000000000000"
        ),
        proxy_creation_code=_pick("PROXY_CREATION_CODE", DEFAULT_PROXY_CREATION_CODE),
        paymaster_url=_pick("PAYMASTER_URL", ""),
        is_testnet=is_testnet,
        explorer_url=explorer_url,
    )


def build_default_config() -> GaslessConfig:
    """Build default configuration with all supported networks."""

    networks = {
        "base_sepolia": _build_network_config(
            chain_id=84532,
            name="base_sepolia",
            default_rpc="https://sepolia.base.org",
            explorer_url="https://sepolia.basescan.org",
            is_testnet=True,
        ),
        "base": _build_network_config(
            chain_id=8453,
            name="base",
            default_rpc="https://mainnet.base.org",
            explorer_url="https://basescan.org",
        ),
    }

    timeouts = TimeoutConfig(
        rpc_seconds=float(_get_env("RPC_TIMEOUT_SECONDS", 10.0)),
        bundler_seconds=float(_get_env("BUNDLER_TIMEOUT_SECONDS", 30.0)),
    )
    sponsorship = SponsorshipDefaults(
        daily_limit=_get_env_int("DAILY_LIMIT_WEI", SponsorshipDefaults.daily_limit),
        monthly_limit=_get_env_int("MONTHLY_LIMIT_WEI", SponsorshipDefaults.monthly_limit),
        per_user_limit=_get_env_int("PER_USER_LIMIT_WEI", SponsorshipDefaults.per_user_limit),
    )
    logging_config = LoggingConfig(
        audit_log_path=_get_env("AUDIT_LOG_PATH"),
        mask_addresses=str(_get_env("MASK_ADDRESSES", "false")).lower() in ("1", "true", "yes"),
    )

    return GaslessConfig(
        networks=networks,
        timeouts=timeouts,
        sponsorship=sponsorship,
        logging=logging_config,
        default_network=_get_env("DEFAULT_NETWORK", "base_sepolia"),
    )


# Global configuration instance
_global_config: Optional[GaslessConfig] = None


def get_config() -> GaslessConfig:
    """Get the global configuration instance."""
    global _global_config
    if _global_config is None:
        _global_config = build_default_config()
    return _global_config


def set_config(config: Optional[GaslessConfig]) -> None:
    """Set (or with ``None``, reset) the global configuration instance."""
    global _global_config
    _global_config = config


def get_network_config(name: Optional[str] = None) -> NetworkConfig:
    """Convenience function to get network configuration."""
    return get_config().get_network(name)
