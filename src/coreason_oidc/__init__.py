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
OpenID Connect Relying Party client: discovery, authorization requests, code exchange and ID Token verification.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .client import OIDCClient, OIDCClientAsync
from .config import OIDCClientConfig
from .exceptions import (
    AuthorizationResponseError,
    ClaimValidationError,
    ConfigurationError,
    CoreasonOIDCError,
    DiscoveryError,
    InvalidTokenError,
    MissingNonceError,
    StateMismatchError,
    TokenRequestError,
)
from .models import AuthenticationResult, IdTokenClaims, ProviderMetadata, RequestContext, TokenResponse
from .oidc_provider import OIDCProvider
from .session import MemorySessionStore, SessionStore
from .validator import IdTokenVerifier

__all__ = [
    "AuthenticationResult",
    "AuthorizationResponseError",
    "ClaimValidationError",
    "ConfigurationError",
    "CoreasonOIDCError",
    "DiscoveryError",
    "IdTokenClaims",
    "IdTokenVerifier",
    "InvalidTokenError",
    "MemorySessionStore",
    "MissingNonceError",
    "OIDCClient",
    "OIDCClientAsync",
    "OIDCClientConfig",
    "OIDCProvider",
    "ProviderMetadata",
    "RequestContext",
    "SessionStore",
    "StateMismatchError",
    "TokenRequestError",
    "TokenResponse",
]
