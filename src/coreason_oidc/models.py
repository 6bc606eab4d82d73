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
Data models for the coreason-oidc package.
"""

from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field

from coreason_oidc.exceptions import ClaimValidationError

# JWK key type expected for each JWS algorithm family
_KTY_BY_ALG_PREFIX = {"RS": "RSA", "PS": "RSA", "ES": "EC", "Ed": "OKP"}


class ProviderMetadata(BaseModel):
    """
    OIDC Configuration from .well-known/openid-configuration, merged with manual overrides.

    Unknown provider fields are kept and readable through `get`.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    issuer: str | None = Field(default=None, description="The OIDC issuer URL.")
    authorization_endpoint: str | None = None
    token_endpoint: str | None = None
    jwks_uri: str | None = Field(default=None, description="The URL to the JWKS.")
    userinfo_endpoint: str | None = None
    end_session_endpoint: str | None = None
    introspection_endpoint: str | None = None
    revocation_endpoint: str | None = None
    response_types_supported: list[str] | None = None
    scopes_supported: list[str] | None = None
    token_endpoint_auth_methods_supported: list[str] | None = None
    code_challenge_methods_supported: list[str] | None = None
    id_token_signing_alg_values_supported: list[str] | None = None

    def get(self, name: str, default: Any = None) -> Any:
        value = self.model_dump().get(name)
        return default if value is None else value


class JWKSet(BaseModel):
    """
    The provider's published JSON Web Key Set.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    keys: tuple[dict[str, Any], ...] = ()

    def find_candidates(self, kid: str | None, alg: str) -> list[dict[str, Any]]:
        """
        Returns the keys that may have signed a token.

        With a `kid` only exact matches qualify. Without one, keys declaring the same `alg`
        come first, followed by keys of the matching key type that declare no `alg`.
        Encryption keys are never candidates.
        """
        signing_keys = [key for key in self.keys if key.get("use", "sig") == "sig"]
        if kid:
            return [key for key in signing_keys if key.get("kid") == kid]

        kty = _KTY_BY_ALG_PREFIX.get(alg[:2])
        by_alg = [key for key in signing_keys if key.get("alg") == alg]
        by_kty = [key for key in signing_keys if "alg" not in key and key.get("kty") == kty]
        return by_alg + by_kty


class FlowState(BaseModel):
    """
    Per-flow anti-forgery material. Lives only in the session store and is consumed once.
    """

    model_config = ConfigDict(frozen=True)

    state: str
    nonce: str
    code_verifier: str | None = None
    redirect_uri: str | None = None


class TokenResponse(BaseModel):
    """
    Response from the token endpoint.

    Attributes:
        id_token (str | None): The compact ID Token.
        access_token (str | None): The access token issued by the authorization server.
        refresh_token (str | None): The refresh token, if issued.
        token_type (str | None): The type of the token (e.g. "Bearer").
        expires_in (int | None): The lifetime in seconds of the access token.
        scope (str | None): The granted scopes when they differ from the requested ones.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id_token: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None
    token_type: str | None = None
    expires_in: int | None = None
    scope: str | None = None

    def __repr__(self) -> str:
        # Tokens are credentials and MUST NOT end up in logs
        return (
            f"TokenResponse(id_token={'<REDACTED>' if self.id_token else None}, "
            f"access_token={'<REDACTED>' if self.access_token else None}, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"token_type={self.token_type!r}, expires_in={self.expires_in!r}, scope={self.scope!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


class IdTokenClaims(Mapping[str, Any]):
    """
    Immutable mapping of verified ID Token claims.

    The typed accessors raise `ClaimValidationError` naming the claim when it is absent
    or has the wrong shape, instead of handing `None` to the caller.
    """

    def __init__(self, claims: Mapping[str, Any]) -> None:
        self._claims = MappingProxyType(dict(claims))

    def __getitem__(self, key: str) -> Any:
        return self._claims[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._claims)

    def __len__(self) -> int:
        return len(self._claims)

    def __repr__(self) -> str:
        return f"IdTokenClaims(claims={sorted(self._claims)!r})"

    def require(self, name: str) -> Any:
        value = self._claims.get(name)
        if value is None:
            raise ClaimValidationError(name, f"Missing claim: '{name}'")
        return value

    def require_str(self, name: str) -> str:
        value = self.require(name)
        if not isinstance(value, str):
            raise ClaimValidationError(name, f"Claim '{name}' must be a string")
        return value

    def require_number(self, name: str) -> int | float:
        value = self.require(name)
        # bool is an int subclass but never a valid NumericDate
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ClaimValidationError(name, f"Claim '{name}' must be a number")
        return value

    def get_str(self, name: str) -> str | None:
        value = self._claims.get(name)
        if value is None:
            return None
        if not isinstance(value, str):
            raise ClaimValidationError(name, f"Claim '{name}' must be a string")
        return value

    def audiences(self) -> tuple[str, ...]:
        """Returns `aud` as a tuple whether the token carries a string or an array."""
        aud = self.require("aud")
        if isinstance(aud, str):
            return (aud,)
        if isinstance(aud, list) and all(isinstance(item, str) for item in aud):
            return tuple(aud)
        raise ClaimValidationError("aud", "Claim 'aud' must be a string or an array of strings")

    def to_dict(self) -> dict[str, Any]:
        return dict(self._claims)


class RequestContext(BaseModel):
    """
    The parts of the current HTTP request that the flow reads.

    Attributes:
        url (str): The full request URL.
        query (dict[str, str]): Query string parameters.
        form (dict[str, str]): Form body parameters (e.g. `response_mode=form_post`).
    """

    model_config = ConfigDict(frozen=True)

    url: str = ""
    query: dict[str, str] = Field(default_factory=dict)
    form: dict[str, str] = Field(default_factory=dict)

    @property
    def params(self) -> dict[str, str]:
        return {**self.query, **self.form}

    def default_redirect_url(self) -> str:
        """
        Scheme, host and path of the current request. Query and fragment are dropped.
        """
        parts = urlsplit(self.url)
        scheme = parts.scheme or "http"
        return f"{scheme}://{parts.netloc}{parts.path or '/'}"


class AuthenticationResult(BaseModel):
    """
    Outcome of one `authenticate` call.

    Attributes:
        authenticated (bool): True once the ID Token has been verified.
        claims (IdTokenClaims | None): Verified claims, only when authenticated.
        tokens (TokenResponse | None): Tokens of the exchange, only when authenticated.
        redirect_url (str | None): The authorization URL the user agent was sent to.
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    authenticated: bool
    claims: IdTokenClaims | None = None
    tokens: TokenResponse | None = None
    redirect_url: str | None = None
