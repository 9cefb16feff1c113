"""ERC-4337 pipeline: account resolution, building, signing and relay."""

from .user_operation import (
    UserOperation,
    decode_call_targets,
    encode_execute,
    encode_execute_batch,
)
from .account import (
    AccountResolver,
    ResolvedAccount,
    build_account_init_code,
    predict_account_address,
)
from .builder import GasHints, OperationBuilder
from .signing import (
    STATIC_AUTHORIZATION_MESSAGE,
    LocalAccountSigner,
    OperationSigner,
    SigningBinder,
    SigningMode,
)
from .bundler_client import BundlerClient
from .paymaster_client import PaymasterClient, SponsoredUserOperation

__all__ = [
    "UserOperation",
    "decode_call_targets",
    "encode_execute",
    "encode_execute_batch",
    "AccountResolver",
    "ResolvedAccount",
    "build_account_init_code",
    "predict_account_address",
    "GasHints",
    "OperationBuilder",
    "STATIC_AUTHORIZATION_MESSAGE",
    "LocalAccountSigner",
    "OperationSigner",
    "SigningBinder",
    "SigningMode",
    "BundlerClient",
    "PaymasterClient",
    "SponsoredUserOperation",
]
