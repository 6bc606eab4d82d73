# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import socket
import time
from collections.abc import Callable
from typing import Any, Dict, Generator, List
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs

import httpx
import pytest
from authlib.jose import JsonWebKey, jwt

from coreason_oidc.config import OIDCClientConfig
from coreason_oidc.transport import HttpxFetcher

PROVIDER_URL = "https://idp.example.com"
ISSUER = "https://idp.example.com"
CLIENT_ID = "my-client"
CLIENT_SECRET = "my-client-secret"
REDIRECT_URL = "https://rp.example.com/callback"
DISCOVERY_URL = f"{PROVIDER_URL}/.well-known/openid-configuration"
AUTHORIZATION_ENDPOINT = f"{PROVIDER_URL}/authorize"
TOKEN_ENDPOINT = f"{PROVIDER_URL}/token"
JWKS_URI = f"{PROVIDER_URL}/jwks"
USERINFO_ENDPOINT = f"{PROVIDER_URL}/userinfo"


@pytest.fixture(autouse=True)
def mock_dns_resolution() -> Generator[MagicMock, None, None]:
    """
    Globally patches socket.getaddrinfo to return a safe public IP by default.

    Tests that need to verify SSRF logic should explicitly configure this mock's return value.
    """
    safe_response = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("8.8.8.8", 443))]

    with patch("socket.getaddrinfo", return_value=safe_response) as mock:
        yield mock


class FakeIdP:
    """
    Identity Provider double served through httpx.MockTransport.

    Routes are keyed by URL without query string. Every request is recorded.
    """

    def __init__(self, jwks: Dict[str, Any]) -> None:
        self.discovery: Dict[str, Any] = {
            "issuer": ISSUER,
            "authorization_endpoint": AUTHORIZATION_ENDPOINT,
            "token_endpoint": TOKEN_ENDPOINT,
            "jwks_uri": JWKS_URI,
            "userinfo_endpoint": USERINFO_ENDPOINT,
            "end_session_endpoint": f"{PROVIDER_URL}/logout",
            "introspection_endpoint": f"{PROVIDER_URL}/introspect",
            "revocation_endpoint": f"{PROVIDER_URL}/revoke",
            "token_endpoint_auth_methods_supported": ["client_secret_basic", "client_secret_post"],
            "code_challenge_methods_supported": ["S256"],
        }
        self.jwks = jwks
        self.requests: List[httpx.Request] = []
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {
            DISCOVERY_URL: lambda request: httpx.Response(200, json=self.discovery),
            JWKS_URI: lambda request: httpx.Response(200, json=self.jwks),
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        url = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        route = self.routes.get(url)
        if route is None:
            return httpx.Response(404, json={"detail": "not found"})
        return route(request)

    def fetcher(self) -> HttpxFetcher:
        return HttpxFetcher(httpx.Client(transport=httpx.MockTransport(self.handler)))

    def requests_to(self, url: str) -> List[httpx.Request]:
        return [r for r in self.requests if str(r.url).split("?")[0] == url]

    def token_response(self, body: Dict[str, Any], status_code: int = 200) -> None:
        self.routes[TOKEN_ENDPOINT] = lambda request: httpx.Response(status_code, json=body)


def form_of(request: httpx.Request) -> Dict[str, str]:
    return {k: v[0] for k, v in parse_qs(request.content.decode("utf-8")).items()}


@pytest.fixture(scope="session")
def rsa_key() -> Any:
    return JsonWebKey.generate_key("RSA", 2048, is_private=True)


@pytest.fixture
def jwks(rsa_key: Any) -> Dict[str, Any]:
    # Public half only, with the thumbprint as kid
    return {"keys": [rsa_key.as_dict()]}


@pytest.fixture
def idp(jwks: Dict[str, Any]) -> FakeIdP:
    return FakeIdP(jwks)


@pytest.fixture
def config() -> OIDCClientConfig:
    return OIDCClientConfig(
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        provider_url=PROVIDER_URL,
        redirect_url=REDIRECT_URL,
    )


@pytest.fixture
def make_id_token(rsa_key: Any) -> Callable[..., str]:
    """
    Factory for signed ID Tokens with valid default claims.

    `drop` removes claims, `headers` replaces the JWS header, `key` the signing key.
    """

    def _make(
        claims: Dict[str, Any] | None = None,
        headers: Dict[str, Any] | None = None,
        key: Any = None,
        drop: tuple[str, ...] = (),
    ) -> str:
        now = int(time.time())
        payload: Dict[str, Any] = {
            "iss": ISSUER,
            "aud": CLIENT_ID,
            "sub": "user-123",
            "exp": now + 300,
            "iat": now,
        }
        payload.update(claims or {})
        for name in drop:
            payload.pop(name, None)
        token = jwt.encode(headers or {"alg": "RS256"}, payload, key if key is not None else rsa_key, check=False)
        return token.decode("utf-8")  # type: ignore[no-any-return]

    return _make
