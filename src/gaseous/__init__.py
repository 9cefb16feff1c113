"""gaseous: gasless ERC-4337 operations and paymaster sponsorship quotas."""

from .config import GaslessConfig, NetworkConfig, get_config, set_config
from .errors import (
    AuthorizationError,
    ConfigurationError,
    DenialReason,
    GaslessError,
    LedgerUnavailable,
    MalformedOperation,
    NonceInUseError,
    OutOfGasRejection,
    QuotaDenied,
    RelayRejected,
    RelayUnreachable,
    TransientError,
    ValidationError,
)
from .pipeline import GaslessSender, SubmittedOperation

__version__ = "0.1.0"

__all__ = [
    "GaslessConfig",
    "NetworkConfig",
    "get_config",
    "set_config",
    "AuthorizationError",
    "ConfigurationError",
    "DenialReason",
    "GaslessError",
    "LedgerUnavailable",
    "MalformedOperation",
    "NonceInUseError",
    "OutOfGasRejection",
    "QuotaDenied",
    "RelayRejected",
    "RelayUnreachable",
    "TransientError",
    "ValidationError",
    "GaslessSender",
    "SubmittedOperation",
]
