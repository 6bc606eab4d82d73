# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

"""
OIDCClient component orchestrating the Authorization Code and Implicit flows.
"""

import time
from collections.abc import Callable
from functools import partial
from typing import Any

import anyio
import httpx
from opentelemetry import trace
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_oidc.authorization import build_authorization_url, build_end_session_url
from coreason_oidc.config import OIDCClientConfig
from coreason_oidc.exceptions import (
    AuthorizationResponseError,
    ClaimValidationError,
    CoreasonOIDCError,
)
from coreason_oidc.models import AuthenticationResult, RequestContext, TokenResponse
from coreason_oidc.oidc_provider import OIDCProvider
from coreason_oidc.session import SessionStore
from coreason_oidc.state import RequestStateManager, generate_token
from coreason_oidc.token_client import TokenClient
from coreason_oidc.transport import HTTPFetcher, HttpxFetcher, SafeHTTPTransport
from coreason_oidc.utils.logger import logger
from coreason_oidc.validator import IdTokenVerifier, SignatureVerifier

tracer = trace.get_tracer(__name__)

RedirectSink = Callable[[str], None]


class OIDCClient:
    """
    Relying Party flow orchestrator (The Core).

    Each call is evaluated on its own; the flow state persisted in the session
    store is the only memory shared between the two round trips of a login.

    Attributes:
        config (OIDCClientConfig): The immutable client configuration.
        oidc_provider (OIDCProvider): Cached provider metadata and keys.
        token_client (TokenClient): Back-channel endpoint client.
        verifier (IdTokenVerifier): ID Token verifier.
    """

    def __init__(
        self,
        config: OIDCClientConfig,
        fetcher: HTTPFetcher | None = None,
        redirect: RedirectSink | None = None,
        signature_verifier: SignatureVerifier | None = None,
        clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = generate_token,
    ) -> None:
        """
        Initialize the OIDCClient.

        Args:
            config: The configuration object.
            fetcher: HTTP capability (optional). If not provided, an httpx client with
                `SafeHTTPTransport` is created and owned by this instance.
            redirect: Called with the authorization URL when a redirect is required.
            signature_verifier: Authoritative external signature check; the JWKS is not used.
            clock: Current time in seconds.
            token_factory: Source of state, nonce and PKCE verifier values.
        """
        self.config = config
        self._internal_fetcher: HttpxFetcher | None = None

        if fetcher is None:
            # SafeHTTPTransport prevents SSRF and DNS Rebinding
            transport = None if config.unsafe_local_dev else SafeHTTPTransport(verify=config.verify_tls)
            client = httpx.Client(transport=transport, timeout=config.http_timeout, verify=config.verify_tls)
            HTTPXClientInstrumentor().instrument_client(client)
            self._internal_fetcher = HttpxFetcher(client)
            fetcher = self._internal_fetcher

        self.fetcher = fetcher
        self.redirect = redirect
        self.token_factory = token_factory
        self.oidc_provider = OIDCProvider(config, fetcher)
        self.token_client = TokenClient(fetcher)
        self.verifier = IdTokenVerifier(config, self.oidc_provider, signature_verifier, clock)

    def __enter__(self) -> "OIDCClient":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()

    def close(self) -> None:
        """Closes the HTTP client if this instance created it."""
        if self._internal_fetcher is not None:
            self._internal_fetcher.close()

    def get_redirect_url(self, request: RequestContext) -> str:
        """The configured redirect URL, or the current request URL without query and fragment."""
        return self.config.redirect_url or request.default_redirect_url()

    def get_well_known_issuer(self) -> str:
        """
        Returns the issuer published in the discovery document.

        Raises:
            DiscoveryError: If discovery fails.
        """
        return str(self.oidc_provider.discover().issuer)

    def _state_manager(self, session: SessionStore, pkce_enabled: bool) -> RequestStateManager:
        return RequestStateManager(
            session=session,
            session_key=self.config.session_key,
            pkce_enabled=pkce_enabled,
            token_factory=self.token_factory,
        )

    def authenticate(self, request: RequestContext, session: SessionStore) -> AuthenticationResult:
        """
        Drives one step of the login, chosen by the shape of the request.

        Without an authorization response a new flow starts: the user agent is sent to
        the IdP and an unauthenticated result is returned. With `code` (or `id_token`
        when the implicit flow is allowed) the response is validated and the verified
        claims are returned.

        Emits an OpenTelemetry span `oidc.authenticate`.

        Args:
            request: The current HTTP request.
            session: The session store of the current user agent.

        Returns:
            AuthenticationResult: `authenticated=True` with claims, or `False` with the redirect URL.

        Raises:
            AuthorizationResponseError: If the IdP returned an error or unusable token parameters.
            StateMismatchError: If the callback state is missing, reused or wrong.
            TokenRequestError: If the code exchange fails.
            InvalidTokenError: If the ID Token is rejected.
            DiscoveryError: If provider metadata or keys are unavailable.
            ConfigurationError: If required configuration is missing.
        """
        with tracer.start_as_current_span("oidc.authenticate") as span:
            params = request.params
            try:
                if params.get("error"):
                    span.set_attribute("oidc.flow", "error")
                    # Only a state comparison may consume the pending flow
                    logger.warning(f"Authorization response carries error '{params['error']}'")
                    raise AuthorizationResponseError(params["error"], params.get("error_description"))

                if params.get("code"):
                    span.set_attribute("oidc.flow", "code")
                    result = self._complete_code_flow(params, session)
                elif params.get("id_token") and self.config.allow_implicit_flow:
                    span.set_attribute("oidc.flow", "implicit")
                    result = self._complete_implicit_flow(params, session)
                else:
                    span.set_attribute("oidc.flow", "redirect")
                    result = self._request_authorization(request, session)
            except CoreasonOIDCError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            span.set_status(Status(StatusCode.OK))
            return result

    def _request_authorization(self, request: RequestContext, session: SessionStore) -> AuthenticationResult:
        metadata = self.oidc_provider.metadata(required=("authorization_endpoint",))

        pkce_enabled = self.config.pkce_enabled
        methods = metadata.code_challenge_methods_supported
        if pkce_enabled and methods is not None and "S256" not in methods:
            logger.warning(f"Provider does not support S256 PKCE (supports {methods}), sending no challenge")
            pkce_enabled = False

        flow_state = self._state_manager(session, pkce_enabled).begin(self.get_redirect_url(request))
        url = build_authorization_url(metadata, self.config, flow_state)

        logger.info(f"Redirecting to authorization endpoint {metadata.authorization_endpoint}")
        if self.redirect is not None:
            self.redirect(url)
        return AuthenticationResult(authenticated=False, redirect_url=url)

    def _complete_code_flow(self, params: dict[str, str], session: SessionStore) -> AuthenticationResult:
        flow_state = self._state_manager(session, self.config.pkce_enabled).validate_callback(params.get("state"))

        metadata = self.oidc_provider.metadata(required=("token_endpoint",))
        tokens = self.token_client.exchange_code(metadata, self.config, params["code"], flow_state)

        # exchange_code guarantees the ID Token
        claims = self.verifier.verify(
            str(tokens.id_token),
            expected_nonce=flow_state.nonce,
            nonce_required=self.config.implicit_response,
            access_token=tokens.access_token,
        )
        return AuthenticationResult(authenticated=True, claims=claims, tokens=tokens)

    def _complete_implicit_flow(self, params: dict[str, str], session: SessionStore) -> AuthenticationResult:
        flow_state = self._state_manager(session, self.config.pkce_enabled).validate_callback(params.get("state"))

        access_token = params.get("access_token")
        claims = self.verifier.verify(
            params["id_token"],
            expected_nonce=flow_state.nonce,
            nonce_required=self.config.implicit_response,
            access_token=access_token,
            at_hash_required=self.config.implicit_response,
        )
        try:
            tokens = TokenResponse(
                id_token=params["id_token"],
                access_token=access_token,
                token_type=params.get("token_type"),
                expires_in=params.get("expires_in") or None,
            )
        except ValidationError as e:
            raise AuthorizationResponseError("invalid_response", f"Invalid token parameters: {e}") from e
        return AuthenticationResult(authenticated=True, claims=claims, tokens=tokens)

    def refresh_token(self, refresh_token: str, scopes: list[str] | None = None) -> TokenResponse:
        """
        Obtains new tokens with a refresh token. A returned ID Token is verified
        (without nonce) before the response is handed back.

        Raises:
            TokenRequestError: If the provider rejects the refresh token.
            InvalidTokenError: If a returned ID Token is rejected.
        """
        metadata = self.oidc_provider.metadata(required=("token_endpoint",))
        tokens = self.token_client.refresh(metadata, self.config, refresh_token, scopes)
        if tokens.id_token:
            self.verifier.verify(tokens.id_token, access_token=tokens.access_token)
        return tokens

    def request_userinfo(self, access_token: str, expected_sub: str | None = None) -> dict[str, Any]:
        """
        Fetches UserInfo claims. With `expected_sub` the response must belong to the
        same subject as the ID Token (OIDC Core 5.3.2).

        Raises:
            UserInfoError: If the request fails.
            ClaimValidationError: If the subject differs.
        """
        metadata = self.oidc_provider.metadata(required=("userinfo_endpoint",))
        userinfo = self.token_client.fetch_userinfo(metadata, access_token)
        if expected_sub is not None and userinfo.get("sub") != expected_sub:
            logger.warning("UserInfo subject does not match the ID Token subject")
            raise ClaimValidationError("sub", "UserInfo 'sub' does not match the ID Token")
        return userinfo

    def introspect_token(self, token: str, token_type_hint: str | None = None) -> dict[str, Any]:
        """Introspects a token at the provider (RFC 7662)."""
        metadata = self.oidc_provider.metadata(required=("introspection_endpoint",))
        return self.token_client.introspect(metadata, self.config, token, token_type_hint)

    def revoke_token(self, token: str, token_type_hint: str | None = None) -> None:
        """Revokes a token at the provider (RFC 7009)."""
        metadata = self.oidc_provider.metadata(required=("revocation_endpoint",))
        self.token_client.revoke(metadata, self.config, token, token_type_hint)

    def sign_out(
        self,
        id_token_hint: str | None = None,
        post_logout_redirect_uri: str | None = None,
        state: str | None = None,
    ) -> str:
        """
        Builds the RP-initiated logout URL and hands it to the redirect sink.

        Raises:
            ConfigurationError: If the provider publishes no end session endpoint.
        """
        metadata = self.oidc_provider.metadata(required=("end_session_endpoint",))
        url = build_end_session_url(metadata, id_token_hint, post_logout_redirect_uri, state)
        if self.redirect is not None:
            self.redirect(url)
        return url


class OIDCClientAsync:
    """
    Async facade over OIDCClient. Every blocking call runs in a worker thread.
    Handles resources via async context manager.
    """

    def __init__(self, config: OIDCClientConfig, **kwargs: Any) -> None:
        """
        Initialize the OIDCClientAsync.

        Args:
            config: The configuration object.
            **kwargs: Forwarded to `OIDCClient`.
        """
        self._client = OIDCClient(config, **kwargs)

    @property
    def config(self) -> OIDCClientConfig:
        return self._client.config

    async def __aenter__(self) -> "OIDCClientAsync":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await anyio.to_thread.run_sync(self._client.close)

    async def authenticate(self, request: RequestContext, session: SessionStore) -> AuthenticationResult:
        """See `OIDCClient.authenticate`."""
        return await anyio.to_thread.run_sync(self._client.authenticate, request, session)

    async def get_well_known_issuer(self) -> str:
        return await anyio.to_thread.run_sync(self._client.get_well_known_issuer)

    async def refresh_token(self, refresh_token: str, scopes: list[str] | None = None) -> TokenResponse:
        return await anyio.to_thread.run_sync(self._client.refresh_token, refresh_token, scopes)

    async def request_userinfo(self, access_token: str, expected_sub: str | None = None) -> dict[str, Any]:
        return await anyio.to_thread.run_sync(self._client.request_userinfo, access_token, expected_sub)

    async def introspect_token(self, token: str, token_type_hint: str | None = None) -> dict[str, Any]:
        return await anyio.to_thread.run_sync(self._client.introspect_token, token, token_type_hint)

    async def revoke_token(self, token: str, token_type_hint: str | None = None) -> None:
        await anyio.to_thread.run_sync(self._client.revoke_token, token, token_type_hint)

    async def sign_out(
        self,
        id_token_hint: str | None = None,
        post_logout_redirect_uri: str | None = None,
        state: str | None = None,
    ) -> str:
        return await anyio.to_thread.run_sync(
            partial(self._client.sign_out, id_token_hint, post_logout_redirect_uri, state)
        )

    def get_redirect_url(self, request: RequestContext) -> str:
        return self._client.get_redirect_url(request)


__all__ = ["OIDCClient", "OIDCClientAsync", "RedirectSink"]
