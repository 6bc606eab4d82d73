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
TokenClient component for the token, UserInfo, introspection and revocation endpoints.
"""

from typing import Any
from urllib.parse import quote_plus

import httpx
from opentelemetry import trace
from pydantic import ValidationError

from coreason_oidc.config import OIDCClientConfig
from coreason_oidc.exceptions import (
    ConfigurationError,
    CoreasonOIDCError,
    OversizedResponseError,
    TokenRequestError,
    UserInfoError,
)
from coreason_oidc.models import FlowState, ProviderMetadata, TokenResponse
from coreason_oidc.transport import HTTPFetcher, read_json
from coreason_oidc.utils.logger import logger

tracer = trace.get_tracer(__name__)


class TokenClient:
    """
    Talks to the provider's back-channel endpoints.

    Attributes:
        fetcher (HTTPFetcher): The HTTP capability used for all requests.
    """

    def __init__(self, fetcher: HTTPFetcher) -> None:
        self.fetcher = fetcher

    def _client_auth(
        self, metadata: ProviderMetadata, config: OIDCClientConfig, data: dict[str, str]
    ) -> tuple[str, str] | None:
        """
        Adds `client_id` and client authentication to `data` and returns Basic credentials, if any.

        Without an explicit method, `client_secret_basic` is used when the provider
        advertises it and `client_secret_post` otherwise.
        """
        data["client_id"] = config.client_id
        secret = config.secret_value()
        if secret is None:
            return None

        method = config.token_endpoint_auth_method
        if method is None:
            supported = metadata.token_endpoint_auth_methods_supported or []
            method = "client_secret_basic" if "client_secret_basic" in supported else "client_secret_post"

        if method == "client_secret_basic":
            # RFC 6749 2.3.1: both parts are form-url-encoded before Basic encoding
            return quote_plus(config.client_id), quote_plus(secret)

        data["client_secret"] = secret
        return None

    def _post(
        self,
        endpoint: str,
        data: dict[str, str],
        auth: tuple[str, str] | None,
    ) -> tuple[httpx.Response, Any]:
        try:
            response = self.fetcher.post(
                endpoint, data=data, headers={"Accept": "application/json"}, auth=auth
            )
        except (httpx.HTTPError, CoreasonOIDCError) as e:
            logger.error(f"Request to {endpoint} failed: {e}")
            raise TokenRequestError("request_failed", str(e)) from e

        try:
            body = read_json(response) if response.content else {}
        except OversizedResponseError as e:
            raise TokenRequestError("invalid_response", "Response too large", response.status_code) from e
        except ValueError as e:
            if response.is_success:
                raise TokenRequestError("invalid_response", "Response is not JSON", response.status_code) from e
            body = {}

        if isinstance(body, dict) and body.get("error"):
            logger.warning(f"Endpoint {endpoint} returned error '{body['error']}' (HTTP {response.status_code})")
            raise TokenRequestError(str(body["error"]), body.get("error_description"), response.status_code)

        if not response.is_success:
            logger.warning(f"Endpoint {endpoint} returned HTTP {response.status_code}")
            raise TokenRequestError("http_error", f"HTTP {response.status_code}", response.status_code)

        return response, body

    def _request_tokens(
        self,
        metadata: ProviderMetadata,
        config: OIDCClientConfig,
        data: dict[str, str],
        expect_id_token: bool,
    ) -> TokenResponse:
        if not metadata.token_endpoint:
            raise ConfigurationError("The token endpoint is unknown: run discovery or configure it")

        auth = self._client_auth(metadata, config, data)
        _, body = self._post(metadata.token_endpoint, data, auth)

        try:
            tokens = TokenResponse(**body)
        except (TypeError, ValidationError) as e:
            raise TokenRequestError("invalid_response", f"Invalid token response: {e}") from e

        if expect_id_token and not tokens.id_token:
            raise TokenRequestError("missing_id_token", "The token response does not contain an ID Token")

        return tokens

    def exchange_code(
        self,
        metadata: ProviderMetadata,
        config: OIDCClientConfig,
        code: str,
        flow_state: FlowState,
        expect_id_token: bool = True,
    ) -> TokenResponse:
        """
        Exchanges an authorization code for tokens.

        Args:
            metadata: Provider metadata holding `token_endpoint`.
            config: The client configuration.
            code: The authorization code from the callback.
            flow_state: The validated flow state (redirect URI and PKCE verifier).
            expect_id_token: Fail when the response carries no ID Token.

        Returns:
            TokenResponse: The parsed token response.

        Raises:
            TokenRequestError: If the provider rejects the request or the response is unusable.
            ConfigurationError: If the token endpoint is unknown.
        """
        with tracer.start_as_current_span("oidc.exchange_code"):
            data = {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": flow_state.redirect_uri or config.redirect_url or "",
            }
            if flow_state.code_verifier:
                data["code_verifier"] = flow_state.code_verifier

            tokens = self._request_tokens(metadata, config, data, expect_id_token)
            logger.info("Authorization code exchanged for tokens")
            return tokens

    def refresh(
        self,
        metadata: ProviderMetadata,
        config: OIDCClientConfig,
        refresh_token: str,
        scopes: list[str] | None = None,
    ) -> TokenResponse:
        """
        Uses a refresh token to obtain new tokens. An ID Token is optional here.

        Raises:
            TokenRequestError: If the provider rejects the refresh token.
        """
        data = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        if scopes:
            data["scope"] = " ".join(scopes)
        return self._request_tokens(metadata, config, data, expect_id_token=False)

    def fetch_userinfo(self, metadata: ProviderMetadata, access_token: str) -> dict[str, Any]:
        """
        Fetches the UserInfo claims with the access token as Bearer credential.

        Raises:
            ConfigurationError: If the provider does not publish a UserInfo endpoint.
            UserInfoError: If the request fails or the body is not a JSON object.
        """
        endpoint = metadata.userinfo_endpoint
        if not endpoint:
            raise ConfigurationError("The provider does not publish a 'userinfo_endpoint'")

        try:
            response = self.fetcher.get(
                endpoint, headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"}
            )
            response.raise_for_status()
            body = read_json(response)
        except (httpx.HTTPError, CoreasonOIDCError, ValueError) as e:
            logger.warning(f"Error fetching userinfo: {e}")
            raise UserInfoError(f"Failed to fetch userinfo from {endpoint}: {e}") from e

        if not isinstance(body, dict):
            raise UserInfoError("UserInfo response is not a JSON object")
        return body

    def introspect(
        self,
        metadata: ProviderMetadata,
        config: OIDCClientConfig,
        token: str,
        token_type_hint: str | None = None,
    ) -> dict[str, Any]:
        """
        Queries the introspection endpoint (RFC 7662).

        Raises:
            ConfigurationError: If the provider does not publish an introspection endpoint.
            TokenRequestError: If the provider rejects the request.
        """
        if not metadata.introspection_endpoint:
            raise ConfigurationError("The provider does not publish an 'introspection_endpoint'")

        data = {"token": token}
        if token_type_hint:
            data["token_type_hint"] = token_type_hint
        auth = self._client_auth(metadata, config, data)
        _, body = self._post(metadata.introspection_endpoint, data, auth)
        if not isinstance(body, dict):
            raise TokenRequestError("invalid_response", "Introspection response is not a JSON object")
        return body

    def revoke(
        self,
        metadata: ProviderMetadata,
        config: OIDCClientConfig,
        token: str,
        token_type_hint: str | None = None,
    ) -> None:
        """
        Revokes a token at the revocation endpoint (RFC 7009).

        Raises:
            ConfigurationError: If the provider does not publish a revocation endpoint.
            TokenRequestError: If the provider rejects the request.
        """
        if not metadata.revocation_endpoint:
            raise ConfigurationError("The provider does not publish a 'revocation_endpoint'")

        data = {"token": token}
        if token_type_hint:
            data["token_type_hint"] = token_type_hint
        auth = self._client_auth(metadata, config, data)
        self._post(metadata.revocation_endpoint, data, auth)
        logger.info("Token revoked")
