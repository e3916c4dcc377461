"""PKCE (RFC 7636) helpers for the authorization code flow."""

import base64
import hashlib
import secrets
from dataclasses import dataclass


@dataclass
class PKCEParams:
    """PKCE verifier and its S256 challenge.

    Attributes:
        verifier: Random code verifier (43-128 unreserved characters)
        challenge: BASE64URL(SHA256(verifier)) without padding
        challenge_method: Always "S256"
    """

    verifier: str
    challenge: str
    challenge_method: str = "S256"


def generate_pkce_verifier(length: int = 64) -> str:
    """Generate a code verifier of ``length`` characters.

    Raises:
        ValueError: If length is not in range [43, 128]
    """
    if not 43 <= length <= 128:
        raise ValueError("PKCE verifier length must be between 43 and 128 characters")
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(length)).rstrip(b"=").decode("ascii")
    return verifier[:length]


def generate_pkce_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_params(verifier_length: int = 64) -> PKCEParams:
    verifier = generate_pkce_verifier(verifier_length)
    return PKCEParams(verifier=verifier, challenge=generate_pkce_challenge(verifier))
