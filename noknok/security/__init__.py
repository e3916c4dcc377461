"""Security module for noknok.

Provides the ATProto OAuth client, its key handling, and PKCE helpers.
"""

from noknok.security.crypto import (
    ClientSigner,
    InvalidKeyError,
    encode_private_key_multibase,
    generate_private_key_multibase,
    parse_private_key_multibase,
)
from noknok.security.oauth import (
    ATProtoOAuthClient,
    CallbackRejectedError,
    InvalidHandleError,
    OAuthError,
    OAuthGateway,
    ProviderError,
)

__all__ = [
    # Keys
    "ClientSigner",
    "InvalidKeyError",
    "encode_private_key_multibase",
    "generate_private_key_multibase",
    "parse_private_key_multibase",
    # OAuth
    "ATProtoOAuthClient",
    "OAuthGateway",
    "OAuthError",
    "InvalidHandleError",
    "ProviderError",
    "CallbackRejectedError",
]
