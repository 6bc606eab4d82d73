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
Configuration for the coreason-oidc package.
"""

from collections.abc import Callable
from typing import Annotated, Any, Literal

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

OPENID_SCOPE = "openid"

DEFAULT_ALLOWED_ALGORITHMS = [
    "RS256",
    "RS384",
    "RS512",
    "PS256",
    "PS384",
    "PS512",
    "ES256",
    "ES384",
    "ES512",
    "EdDSA",
    "HS256",
    "HS384",
    "HS512",
]

IssuerValidator = Callable[[str], bool]


def _dedupe(values: list[str]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return list(seen)


def _split_list(v: Any) -> Any:
    """Accepts space or comma separated strings (e.g. from the environment) as lists."""
    if isinstance(v, str):
        return v.replace(",", " ").split()
    return v


class OIDCClientConfig(BaseSettings):
    """
    Relying Party configuration. Built once and immutable during a flow.

    Attributes:
        client_id (str): The OIDC Client ID registered at the provider.
        client_secret (SecretStr | None): Secret for confidential clients.
        redirect_url (str | None): Callback URL. Derived from the current request when unset.
        provider_url (str | None): Base URL of the provider, used for discovery.
        issuer (str | None): Expected `iss`. Defaults to the discovered issuer.
        scopes (list[str]): Requested scopes, deduplicated, always containing `openid`.
        response_types (list[str]): Requested response types. Defaults to `["code"]`.
        allow_implicit_flow (bool): Accept an `id_token` delivered directly on the callback.
        issuer_validator (IssuerValidator | None): Predicate that replaces exact issuer matching.
        well_known_config_parameters (dict[str, str]): Extra query parameters for discovery.
        provider_metadata (dict[str, Any]): Manually configured metadata. Wins over discovery.
        extra_authorization_params (dict[str, str]): Additional authorization request parameters.
        pkce_enabled (bool): Send an S256 PKCE challenge.
        clock_skew_leeway (int): Acceptable clock skew in seconds for time based claims.
        allowed_algorithms (list[str]): Accepted ID Token signing algorithms.
        token_endpoint_auth_method (str | None): Client authentication at the token endpoint.
        session_key (str): Session key under which the flow state is persisted.
        http_timeout (float): Timeout in seconds for all IdP network operations.
        verify_tls (bool): Verify TLS certificates of the provider.
        unsafe_local_dev (bool): Allow plain HTTP and private network providers.
        pii_salt (SecretStr): Salt for anonymizing subjects in logs and traces.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_OIDC_",
        case_sensitive=False,
        frozen=True,
    )

    client_id: str = ""
    client_secret: SecretStr | None = None
    unsafe_local_dev: bool = False
    redirect_url: str | None = None
    provider_url: str | None = None
    issuer: str | None = None
    scopes: Annotated[list[str], NoDecode] = Field(default_factory=lambda: [OPENID_SCOPE])
    response_types: Annotated[list[str], NoDecode] = Field(default_factory=lambda: ["code"])
    allow_implicit_flow: bool = False
    issuer_validator: IssuerValidator | None = Field(default=None, exclude=True)
    well_known_config_parameters: dict[str, str] = Field(default_factory=dict)
    provider_metadata: dict[str, Any] = Field(default_factory=dict)
    extra_authorization_params: dict[str, str] = Field(default_factory=dict)
    pkce_enabled: bool = True
    clock_skew_leeway: int = Field(default=0, ge=0)
    allowed_algorithms: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_ALLOWED_ALGORITHMS)
    )
    token_endpoint_auth_method: Literal["client_secret_basic", "client_secret_post"] | None = None
    session_key: str = "coreason_oidc.flow"
    http_timeout: float = Field(default=10.0, gt=0, description="Timeout in seconds for all IdP network operations.")
    verify_tls: bool = True
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")

    @field_validator("scopes", mode="before")
    @classmethod
    def parse_scopes(cls, v: Any) -> Any:
        return _split_list(v)

    @field_validator("scopes", mode="after")
    @classmethod
    def ensure_openid_scope(cls, v: list[str]) -> list[str]:
        """
        Deduplicates scopes keeping their order and appends `openid` when absent.
        ["custom"] becomes ["custom", "openid"].
        """
        scopes = _dedupe(v)
        if OPENID_SCOPE not in scopes:
            scopes.append(OPENID_SCOPE)
        return scopes

    @field_validator("response_types", mode="before")
    @classmethod
    def parse_response_types(cls, v: Any) -> Any:
        return _split_list(v)

    @field_validator("response_types", mode="after")
    @classmethod
    def ensure_response_types(cls, v: list[str]) -> list[str]:
        response_types = _dedupe(v)
        if not response_types:
            raise ValueError("At least one response type is required.")
        return response_types

    @field_validator("allowed_algorithms", mode="before")
    @classmethod
    def parse_allowed_algorithms(cls, v: Any) -> Any:
        return _split_list(v)

    @field_validator("allowed_algorithms", mode="after")
    @classmethod
    def reject_none_algorithm(cls, v: list[str]) -> list[str]:
        """Unsigned tokens are never acceptable."""
        if any(alg.lower() == "none" for alg in v):
            raise ValueError("The 'none' algorithm cannot be allowed.")
        if not v:
            raise ValueError("At least one signing algorithm must be allowed.")
        return _dedupe(v)

    @field_validator("provider_url", "issuer", mode="after")
    @classmethod
    def validate_https(cls, v: str | None, info: ValidationInfo) -> str | None:
        """
        Ensures that provider URLs use HTTPS, unless strictly opted out for local dev.
        """
        if v and v.startswith("http://") and not info.data.get("unsafe_local_dev", False):
            raise ValueError("HTTPS is required for production. Set 'unsafe_local_dev=True' only for local testing.")
        return v

    @property
    def implicit_response(self) -> bool:
        """True when the requested response types deliver an ID Token from the authorization endpoint."""
        return "id_token" in self.response_types

    def secret_value(self) -> str | None:
        if self.client_secret is None:
            return None
        return self.client_secret.get_secret_value() or None
