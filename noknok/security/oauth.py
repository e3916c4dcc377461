"""ATProto OAuth client for browser login.

Implements the confidential web client profile of ATProto OAuth:

1. Resolve the handle to a DID (``/.well-known/atproto-did`` on the handle's
   host, then the AppView's ``com.atproto.identity.resolveHandle``)
2. Fetch the DID document (PLC directory or ``did:web``) to find the PDS
3. Discover the authorization server from the PDS's protected-resource
   metadata and load its authorization-server metadata
4. Push the authorization request (PAR) with PKCE, a client assertion
   signed with ``OAUTH_KEY`` and a DPoP proof from a per-request key
5. On callback, consume the stored state and exchange the code for tokens

The rest of the gateway only sees the ``OAuthGateway`` protocol: handle
resolution, login start, callback processing, and the two public documents
(client metadata and JWKS).
"""

import logging
import re
import secrets
from collections.abc import Mapping
from datetime import timedelta
from typing import Any, Protocol
from urllib.parse import quote, unquote, urlencode

import httpx

from noknok import __version__
from noknok.config import Settings
from noknok.infra.db.models import OAuthRequest, OAuthSession, as_utc, utcnow
from noknok.infra.db.store import Store
from noknok.security.crypto import ClientSigner, dpop_proof, generate_dpop_jwk
from noknok.security.pkce import generate_pkce_params

logger = logging.getLogger(__name__)

OAUTH_SCOPE = "atproto"
CLIENT_NAME = "noknok"
CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"

# Lifetime of a pending authorization request
REQUEST_TTL = timedelta(minutes=10)

_HANDLE_PATTERN = re.compile(
    r"^([a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?\.)+"
    r"[a-zA-Z]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$"
)


class OAuthError(Exception):
    """Base exception for OAuth failures."""

    pass


class InvalidHandleError(OAuthError):
    """Handle or DID could not be resolved to an identity."""

    pass


class ProviderError(OAuthError):
    """Identity provider discovery or PAR failed."""

    pass


class CallbackRejectedError(OAuthError):
    """Callback parameters or the token response were not acceptable."""

    pass


class OAuthGateway(Protocol):
    """What the HTTP layer needs from an OAuth implementation."""

    async def resolve_handle(self, text: str) -> tuple[str, str]:
        """Return (did, handle) for a handle or DID."""
        ...

    async def start_login(self, text: str) -> str:
        """Return the authorization URL to send the browser to."""
        ...

    async def handle_callback(self, params: Mapping[str, str]) -> tuple[str, str]:
        """Return (did, handle) of the account that authorized."""
        ...

    def client_metadata(self) -> dict[str, Any]: ...

    def public_jwks(self) -> dict[str, Any]: ...


def normalize_handle(text: str) -> str:
    return text.strip().removeprefix("@").removeprefix("at://").lower()


def is_valid_handle(handle: str) -> bool:
    return len(handle) <= 253 and bool(_HANDLE_PATTERN.match(handle))


def _pds_from_document(doc: dict[str, Any]) -> str | None:
    for service in doc.get("service") or []:
        if not isinstance(service, dict):
            continue
        service_id = str(service.get("id", ""))
        if service_id.endswith("#atproto_pds") and service.get("type") == "AtprotoPersonalDataServer":
            endpoint = service.get("serviceEndpoint")
            if isinstance(endpoint, str) and endpoint:
                return endpoint.rstrip("/")
    return None


def _handle_from_document(doc: dict[str, Any]) -> str | None:
    for alias in doc.get("alsoKnownAs") or []:
        if isinstance(alias, str) and alias.startswith("at://"):
            return alias[len("at://") :].lower()
    return None


class ATProtoOAuthClient:
    """Confidential ATProto OAuth client.

    Example:
        client = ATProtoOAuthClient(settings, store)
        url = await client.start_login("alice.bsky.social")
        # ... browser authorizes, comes back to /oauth/callback ...
        did, handle = await client.handle_callback(request.query_params)
    """

    def __init__(
        self,
        settings: Settings,
        store: Store,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            settings: Application settings (PUBLIC_URL, OAUTH_KEY, resolvers)
            store: Store holding pending requests and OAuth sessions
            http_client: Optional HTTP client for testing

        Raises:
            InvalidKeyError: If OAUTH_KEY cannot be decoded
        """
        self.settings = settings
        self.store = store
        self.public_url = settings.public_url
        self.client_id = f"{self.public_url}/.well-known/oauth-client-metadata"
        self.redirect_uri = f"{self.public_url}/oauth/callback"
        self.jwks_uri = f"{self.public_url}/oauth/jwks.json"
        self.signer = ClientSigner(settings.oauth_key)

        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(
            timeout=settings.oauth_http_timeout_seconds,
            headers={"User-Agent": f"noknok/{__version__}"},
        )
        self._handles: dict[str, str] = {}

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    # ========================================
    # Identity resolution
    # ========================================

    async def resolve_handle(self, text: str) -> tuple[str, str]:
        """Resolve a handle (or DID) to (did, canonical handle).

        Raises:
            InvalidHandleError: If the identity cannot be resolved
        """
        ident = normalize_handle(text)
        if ident.startswith("did:"):
            doc = await self.resolve_did(ident)
            handle = _handle_from_document(doc) or ""
            self._remember(ident, handle)
            return ident, handle

        if not is_valid_handle(ident):
            raise InvalidHandleError(f"invalid handle: {text!r}")

        did = await self._resolve_handle_to_did(ident)
        doc = await self.resolve_did(did)
        declared = _handle_from_document(doc)
        if declared and declared != ident:
            logger.warning(
                "Handle not confirmed by DID document",
                extra={"handle": ident, "did": did, "declared": declared},
            )
        handle = declared or ident
        self._remember(did, handle)
        return did, handle

    async def _resolve_handle_to_did(self, handle: str) -> str:
        try:
            response = await self._http.get(f"https://{handle}/.well-known/atproto-did")
            if response.status_code == 200:
                did = response.text.strip().splitlines()[0] if response.text.strip() else ""
                if did.startswith("did:"):
                    return did
        except httpx.HTTPError as e:
            logger.debug(
                "Well-known handle resolution failed",
                extra={"handle": handle, "error": str(e)},
            )

        url = f"{self.settings.handle_resolver_url.rstrip('/')}/xrpc/com.atproto.identity.resolveHandle"
        try:
            response = await self._http.get(url, params={"handle": handle})
        except httpx.HTTPError as e:
            raise InvalidHandleError(f"resolve handle {handle}: {e}") from e
        if response.status_code != 200:
            raise InvalidHandleError(f"resolve handle {handle}: HTTP {response.status_code}")
        try:
            did = str(response.json().get("did", ""))
        except (ValueError, AttributeError) as e:
            raise InvalidHandleError(f"resolve handle {handle}: malformed response") from e
        if not did.startswith("did:"):
            raise InvalidHandleError(f"resolve handle {handle}: no DID returned")
        return did

    async def resolve_did(self, did: str) -> dict[str, Any]:
        """Fetch the DID document for ``did:plc`` or ``did:web``.

        Raises:
            InvalidHandleError: If the DID method is unsupported or the fetch fails
        """
        if did.startswith("did:plc:"):
            url = f"{self.settings.plc_directory_url.rstrip('/')}/{quote(did)}"
        elif did.startswith("did:web:"):
            raw = did[len("did:web:") :]
            if not raw or ":" in raw:
                raise InvalidHandleError(f"unsupported did:web form: {did}")
            url = f"https://{unquote(raw)}/.well-known/did.json"
        else:
            raise InvalidHandleError(f"unsupported DID method: {did}")

        try:
            response = await self._http.get(url)
        except httpx.HTTPError as e:
            raise InvalidHandleError(f"fetch DID document {did}: {e}") from e
        if response.status_code != 200:
            raise InvalidHandleError(f"fetch DID document {did}: HTTP {response.status_code}")
        try:
            doc = response.json()
        except ValueError as e:
            raise InvalidHandleError(f"DID document for {did} is not JSON") from e
        if not isinstance(doc, dict) or doc.get("id") != did:
            raise InvalidHandleError(f"DID document id mismatch for {did}")
        return doc

    def cached_handle(self, did: str) -> str | None:
        return self._handles.get(did)

    def _remember(self, did: str, handle: str) -> None:
        if handle:
            self._handles[did] = handle

    # ========================================
    # Authorization server discovery
    # ========================================

    async def _get_json(self, url: str) -> dict[str, Any]:
        response = await self._http.get(url)
        if response.status_code != 200:
            raise ProviderError(f"GET {url}: HTTP {response.status_code}")
        data = response.json()
        if not isinstance(data, dict):
            raise ProviderError(f"GET {url}: expected a JSON object")
        return data

    async def discover_authorization_server(self, pds_url: str) -> dict[str, Any]:
        """Find the authorization server for a PDS and return its metadata."""
        resource = await self._get_json(f"{pds_url}/.well-known/oauth-protected-resource")
        servers = resource.get("authorization_servers") or []
        if not servers:
            raise ProviderError(f"{pds_url} advertises no authorization server")
        issuer = str(servers[0]).rstrip("/")

        metadata = await self._get_json(f"{issuer}/.well-known/oauth-authorization-server")
        if str(metadata.get("issuer", "")).rstrip("/") != issuer:
            raise ProviderError(f"authorization server issuer mismatch for {issuer}")
        for field in (
            "authorization_endpoint",
            "token_endpoint",
            "pushed_authorization_request_endpoint",
        ):
            if not metadata.get(field):
                raise ProviderError(f"authorization server {issuer} missing {field}")
        return metadata

    # ========================================
    # Login
    # ========================================

    async def start_login(self, text: str) -> str:
        """Begin the authorization flow for a handle, DID or PDS URL.

        Returns:
            Authorization URL carrying ``client_id`` and ``request_uri``

        Raises:
            ProviderError: If resolution, discovery or PAR fails
        """
        did: str | None = None
        handle = ""
        try:
            if text.startswith("https://"):
                pds_url = text.rstrip("/")
            else:
                did, handle = await self.resolve_handle(text)
                doc = await self.resolve_did(did)
                pds_url = _pds_from_document(doc) or ""
                if not pds_url:
                    raise ProviderError(f"no PDS in DID document for {did}")

            metadata = await self.discover_authorization_server(pds_url)
            issuer = str(metadata["issuer"]).rstrip("/")

            pkce = generate_pkce_params()
            state = secrets.token_urlsafe(32)
            dpop_jwk = generate_dpop_jwk()

            form = {
                "response_type": "code",
                "client_id": self.client_id,
                "redirect_uri": self.redirect_uri,
                "scope": OAUTH_SCOPE,
                "state": state,
                "code_challenge": pkce.challenge,
                "code_challenge_method": pkce.challenge_method,
            }
            if handle:
                form["login_hint"] = handle

            par, nonce = await self._dpop_post(
                str(metadata["pushed_authorization_request_endpoint"]),
                form,
                dpop_jwk,
                issuer,
            )
            request_uri = par.get("request_uri")
            if not request_uri:
                raise ProviderError("PAR response missing request_uri")

            await self.store.save_oauth_request(
                OAuthRequest(
                    state=state,
                    issuer=issuer,
                    did=did,
                    handle=handle,
                    pds_url=pds_url,
                    authorization_endpoint=str(metadata["authorization_endpoint"]),
                    token_endpoint=str(metadata["token_endpoint"]),
                    pkce_verifier=pkce.verifier,
                    dpop_jwk=dpop_jwk,
                    dpop_nonce=nonce,
                    expires_at=utcnow() + REQUEST_TTL,
                )
            )
        except ProviderError:
            raise
        except (OAuthError, httpx.HTTPError, ValueError, KeyError) as e:
            raise ProviderError(f"start login for {text!r}: {e}") from e

        logger.info(
            "OAuth login started",
            extra={"handle": handle, "did": did, "issuer": issuer},
        )
        query = urlencode({"client_id": self.client_id, "request_uri": request_uri})
        return f"{metadata['authorization_endpoint']}?{query}"

    async def handle_callback(self, params: Mapping[str, str]) -> tuple[str, str]:
        """Complete the flow started by start_login.

        Args:
            params: Callback query parameters

        Returns:
            Tuple of (did, handle)

        Raises:
            CallbackRejectedError: On provider error, unknown or expired
                state, issuer mismatch, failed exchange or subject mismatch
        """
        if params.get("error"):
            raise CallbackRejectedError(
                f"authorization failed: {params.get('error')} {params.get('error_description', '')}".strip()
            )
        state = params.get("state", "")
        code = params.get("code", "")
        if not state or not code:
            raise CallbackRejectedError("callback missing state or code")

        record = await self.store.pop_oauth_request(state)
        if record is None:
            raise CallbackRejectedError("unknown or already used state")
        if as_utc(record.expires_at) <= utcnow():
            raise CallbackRejectedError("authorization request expired")

        iss = params.get("iss", "")
        if iss and iss.rstrip("/") != record.issuer:
            raise CallbackRejectedError(f"issuer mismatch: {iss}")

        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.redirect_uri,
            "client_id": self.client_id,
            "code_verifier": record.pkce_verifier,
        }
        try:
            token, nonce = await self._dpop_post(
                record.token_endpoint,
                form,
                record.dpop_jwk,
                record.issuer,
                nonce=record.dpop_nonce,
            )
        except (ProviderError, httpx.HTTPError, ValueError) as e:
            raise CallbackRejectedError(f"token exchange failed: {e}") from e

        sub = str(token.get("sub", ""))
        if not sub.startswith("did:"):
            raise CallbackRejectedError("token response subject is not a DID")
        if record.did and sub != record.did:
            raise CallbackRejectedError(f"subject mismatch: expected {record.did}, got {sub}")
        if str(token.get("token_type", "")).lower() != "dpop":
            raise CallbackRejectedError("token is not DPoP-bound")
        if OAUTH_SCOPE not in str(token.get("scope", "")).split():
            raise CallbackRejectedError("token lacks the atproto scope")

        handle = record.handle
        pds_url = record.pds_url
        if not record.did:
            # Login started from a PDS URL; confirm the account belongs to this issuer
            handle, pds_url = await self._confirm_account_issuer(sub, record.issuer)

        expires_at = None
        if token.get("expires_in"):
            try:
                expires_at = utcnow() + timedelta(seconds=int(token["expires_in"]))
            except (TypeError, ValueError, OverflowError) as e:
                raise CallbackRejectedError("token response has an invalid expires_in") from e

        await self.store.save_oauth_session(
            OAuthSession(
                did=sub,
                handle=handle,
                issuer=record.issuer,
                pds_url=pds_url,
                token_endpoint=record.token_endpoint,
                access_token=str(token.get("access_token", "")),
                refresh_token=str(token.get("refresh_token", "")),
                scope=str(token.get("scope", "")),
                dpop_jwk=record.dpop_jwk,
                dpop_nonce=nonce,
                expires_at=expires_at,
            )
        )

        if not handle:
            handle = self.cached_handle(sub) or ""
        self._remember(sub, handle)
        logger.info("OAuth callback completed", extra={"did": sub, "handle": handle})
        return sub, handle

    async def _confirm_account_issuer(self, did: str, issuer: str) -> tuple[str, str]:
        try:
            doc = await self.resolve_did(did)
            pds_url = _pds_from_document(doc) or ""
            metadata = await self.discover_authorization_server(pds_url)
        except (OAuthError, httpx.HTTPError, ValueError) as e:
            raise CallbackRejectedError(f"could not verify account {did}: {e}") from e
        if str(metadata["issuer"]).rstrip("/") != issuer:
            raise CallbackRejectedError(f"account {did} is not served by {issuer}")
        return _handle_from_document(doc) or "", pds_url

    async def _dpop_post(
        self,
        url: str,
        form: dict[str, str],
        dpop_jwk: dict[str, Any],
        audience: str,
        nonce: str = "",
    ) -> tuple[dict[str, Any], str]:
        """POST a client-authenticated form with a DPoP proof.

        Retries once when the server answers ``use_dpop_nonce``.

        Returns:
            Tuple of (JSON body, latest DPoP nonce)
        """
        htu = url.split("?", 1)[0].split("#", 1)[0]
        for attempt in range(2):
            body = {
                **form,
                "client_assertion_type": CLIENT_ASSERTION_TYPE,
                "client_assertion": self.signer.client_assertion(self.client_id, audience),
            }
            headers = {"DPoP": dpop_proof(dpop_jwk, "POST", htu, nonce)}
            response = await self._http.post(url, data=body, headers=headers)
            nonce = response.headers.get("DPoP-Nonce", nonce)

            if response.is_success:
                return response.json(), nonce

            error = ""
            try:
                error = str(response.json().get("error", ""))
            except ValueError:
                pass
            if error == "use_dpop_nonce" and attempt == 0 and nonce:
                logger.debug("Retrying with server DPoP nonce", extra={"url": url})
                continue
            raise ProviderError(f"POST {url}: HTTP {response.status_code} {error}".strip())

        raise ProviderError(f"POST {url}: DPoP nonce retry exhausted")

    # ========================================
    # Public documents
    # ========================================

    def client_metadata(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "client_name": CLIENT_NAME,
            "client_uri": self.public_url,
            "application_type": "web",
            "grant_types": ["authorization_code", "refresh_token"],
            "response_types": ["code"],
            "redirect_uris": [self.redirect_uri],
            "scope": OAUTH_SCOPE,
            "token_endpoint_auth_method": "private_key_jwt",
            "token_endpoint_auth_signing_alg": "ES256",
            "dpop_bound_access_tokens": True,
            "jwks_uri": self.jwks_uri,
        }

    def public_jwks(self) -> dict[str, Any]:
        return self.signer.public_jwks()

