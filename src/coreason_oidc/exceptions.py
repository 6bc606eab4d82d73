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
Custom exceptions for the coreason-oidc package.
"""


class CoreasonOIDCError(Exception):
    """Base exception for all coreason-oidc errors."""


class ConfigurationError(CoreasonOIDCError):
    """Raised when required configuration is missing or inconsistent. Not retryable."""


class DiscoveryError(CoreasonOIDCError):
    """Raised when provider metadata or signing keys are unreachable or malformed."""


class OversizedResponseError(DiscoveryError):
    """Raised when an HTTP response is too large."""


class SecurityError(CoreasonOIDCError):
    """Raised when a request targets a prohibited network address."""


class StateMismatchError(CoreasonOIDCError):
    """
    Raised when the callback state is missing, already consumed, or does not match.
    Indicates a possible CSRF or replay attempt.
    """


class AuthorizationResponseError(CoreasonOIDCError):
    """Raised when the IdP redirects back with an `error` parameter."""

    def __init__(self, error: str, error_description: str | None = None) -> None:
        self.error = error
        self.error_description = error_description
        message = f"{error}: {error_description}" if error_description else error
        super().__init__(message)


class TokenRequestError(CoreasonOIDCError):
    """Raised when the token endpoint rejects the grant or returns an unusable response."""

    def __init__(
        self,
        error: str,
        error_description: str | None = None,
        status_code: int | None = None,
    ) -> None:
        self.error = error
        self.error_description = error_description
        self.status_code = status_code
        message = f"{error}: {error_description}" if error_description else error
        super().__init__(message)


class UserInfoError(CoreasonOIDCError):
    """Raised when the UserInfo endpoint cannot be queried."""


class InvalidTokenError(CoreasonOIDCError):
    """Raised when an ID Token is rejected. No claims are exposed after this error."""


class MalformedTokenError(InvalidTokenError):
    """Raised when the token is not a three-segment compact JWS with JSON header and payload."""


class SignatureError(InvalidTokenError):
    """Raised when the signature cannot be verified or the algorithm is not accepted."""


class ClaimValidationError(InvalidTokenError):
    """
    Raised when a claim check fails.

    Attributes:
        claim (str): The name of the claim that failed.
    """

    def __init__(self, claim: str, message: str) -> None:
        self.claim = claim
        super().__init__(message)


class MissingNonceError(ClaimValidationError):
    """Raised when the response type mandates a nonce and the ID Token carries none."""

    def __init__(self, message: str = "ID Token is missing the required 'nonce' claim") -> None:
        super().__init__("nonce", message)
