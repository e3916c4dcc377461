"""Key handling for the OAuth client and DPoP proofs.

The client's long-lived signing key arrives as ``OAUTH_KEY``: a multibase
string (``z`` prefix, base58btc) wrapping the multicodec ``p256-priv``
varint followed by the 32-byte private scalar. Every OAuth request also
gets a fresh P-256 key for DPoP, serialized as a private JWK so it can be
stored with the pending request.

All signatures are ES256 JWTs produced through authlib.
"""

import logging
import secrets
import time
from typing import Any, Final

import base58
from authlib.jose import ECKey, jwt
from cryptography.hazmat.primitives.asymmetric import ec

logger = logging.getLogger(__name__)

# Multicodec p256-priv (0x1306) as an unsigned varint
P256_PRIVATE_PREFIX: Final[bytes] = b"\x86\x26"

CLIENT_KEY_ID: Final[str] = "noknok-1"


class InvalidKeyError(ValueError):
    """Raised when OAUTH_KEY cannot be decoded into a P-256 private key."""


def parse_private_key_multibase(value: str) -> ec.EllipticCurvePrivateKey:
    """Decode a multibase ``p256-priv`` key.

    Args:
        value: ``z`` + base58btc(0x86 0x26 || scalar)

    Returns:
        P-256 private key

    Raises:
        InvalidKeyError: On a wrong prefix, codec or length
    """
    value = value.strip()
    if not value.startswith("z"):
        raise InvalidKeyError("OAUTH_KEY must be multibase base58btc (z prefix)")
    try:
        raw = base58.b58decode(value[1:])
    except ValueError as e:
        raise InvalidKeyError(f"OAUTH_KEY is not valid base58: {e}") from e

    if raw[:2] != P256_PRIVATE_PREFIX:
        raise InvalidKeyError("OAUTH_KEY is not a p256-priv multicodec key")
    scalar = raw[2:]
    if len(scalar) != 32:
        raise InvalidKeyError(f"OAUTH_KEY scalar must be 32 bytes, got {len(scalar)}")

    try:
        return ec.derive_private_key(int.from_bytes(scalar, "big"), ec.SECP256R1())
    except ValueError as e:
        raise InvalidKeyError(f"OAUTH_KEY scalar out of range: {e}") from e


def encode_private_key_multibase(key: ec.EllipticCurvePrivateKey) -> str:
    """Inverse of parse_private_key_multibase."""
    scalar = key.private_numbers().private_value.to_bytes(32, "big")
    return "z" + base58.b58encode(P256_PRIVATE_PREFIX + scalar).decode("ascii")


def generate_private_key_multibase() -> str:
    """Generate a fresh OAUTH_KEY value."""
    return encode_private_key_multibase(ec.generate_private_key(ec.SECP256R1()))


def generate_dpop_jwk() -> dict[str, Any]:
    """Generate a P-256 key for DPoP and return it as a private JWK."""
    key = ECKey.generate_key("P-256", is_private=True)
    return key.as_dict(is_private=True)


def public_jwk(private_jwk: dict[str, Any]) -> dict[str, Any]:
    """Strip the private component from an EC JWK."""
    return {k: v for k, v in private_jwk.items() if k in ("kty", "crv", "x", "y")}


class ClientSigner:
    """Signs client assertions with the confidential client's key.

    Example:
        signer = ClientSigner(settings.oauth_key)
        assertion = signer.client_assertion(client_id, issuer)
        jwks = signer.public_jwks()
    """

    def __init__(self, multibase_key: str, key_id: str = CLIENT_KEY_ID) -> None:
        self.key_id = key_id
        self._key = ECKey.import_key(parse_private_key_multibase(multibase_key))

    def public_jwk(self) -> dict[str, Any]:
        jwk = self._key.as_dict(is_private=False)
        jwk.update({"kid": self.key_id, "use": "sig", "alg": "ES256"})
        return jwk

    def public_jwks(self) -> dict[str, Any]:
        return {"keys": [self.public_jwk()]}

    def client_assertion(self, client_id: str, audience: str) -> str:
        """Build a private_key_jwt assertion for the authorization server.

        Args:
            client_id: Client id (issuer and subject of the assertion)
            audience: Authorization server issuer
        """
        now = int(time.time())
        header = {"alg": "ES256", "kid": self.key_id, "typ": "JWT"}
        payload = {
            "iss": client_id,
            "sub": client_id,
            "aud": audience,
            "jti": secrets.token_urlsafe(16),
            "iat": now,
            "exp": now + 60,
        }
        return jwt.encode(header, payload, self._key).decode("ascii")


def dpop_proof(
    private_jwk: dict[str, Any],
    method: str,
    url: str,
    nonce: str = "",
    access_token_hash: str = "",
) -> str:
    """Build a DPoP proof JWT for one HTTP request.

    Args:
        private_jwk: DPoP key as a private JWK
        method: HTTP method
        url: Target URL without query or fragment
        nonce: Server-provided DPoP nonce, if any
        access_token_hash: ``ath`` claim for resource requests

    Returns:
        Compact-serialized proof
    """
    header = {"typ": "dpop+jwt", "alg": "ES256", "jwk": public_jwk(private_jwk)}
    payload: dict[str, Any] = {
        "jti": secrets.token_urlsafe(16),
        "htm": method.upper(),
        "htu": url,
        "iat": int(time.time()),
    }
    if nonce:
        payload["nonce"] = nonce
    if access_token_hash:
        payload["ath"] = access_token_hash
    key = ECKey.import_key(private_jwk)
    return jwt.encode(header, payload, key).decode("ascii")
