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
IdTokenVerifier component for validating ID Token signatures and claims.
"""

import base64
import binascii
import hashlib
import hmac
import json
import time
from collections.abc import Callable, Mapping
from typing import Any

from authlib.jose import JsonWebKey, JsonWebSignature, JWTClaims
from authlib.jose.errors import (
    BadSignatureError,
    ExpiredTokenError,
    InvalidClaimError,
    JoseError,
    MissingClaimError,
)
from authlib.jose.errors import InvalidTokenError as JoseInvalidTokenError
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from coreason_oidc.config import OIDCClientConfig
from coreason_oidc.exceptions import (
    ClaimValidationError,
    ConfigurationError,
    InvalidTokenError,
    MalformedTokenError,
    MissingNonceError,
    SignatureError,
)
from coreason_oidc.models import IdTokenClaims
from coreason_oidc.oidc_provider import OIDCProvider
from coreason_oidc.utils.logger import logger

tracer = trace.get_tracer(__name__)

# (token, protected header) -> whether the signature is valid
SignatureVerifier = Callable[[str, Mapping[str, Any]], bool]

_HASH_BY_SIZE = {"256": hashlib.sha256, "384": hashlib.sha384, "512": hashlib.sha512}


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _b64url_encode(value: bytes) -> str:
    return base64.urlsafe_b64encode(value).rstrip(b"=").decode("ascii")


def decode_segments(token: str) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Splits a compact JWS and decodes its header and payload without verifying anything.

    Raises:
        MalformedTokenError: If the token does not have three segments or a segment is not base64url JSON.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise MalformedTokenError(f"Token must have 3 segments, got {len(parts)}")

    decoded = []
    for name, segment in zip(("header", "payload"), parts[:2], strict=True):
        try:
            value = json.loads(_b64url_decode(segment))
        except (binascii.Error, ValueError) as e:
            raise MalformedTokenError(f"Token {name} is not valid base64url JSON") from e
        if not isinstance(value, dict):
            raise MalformedTokenError(f"Token {name} is not a JSON object")
        decoded.append(value)

    return decoded[0], decoded[1]


def token_hash(value: str, alg: str) -> str | None:
    """
    Left-most half of the hash of `value` (OIDC Core 3.1.3.6), using the hash size of `alg`.
    Returns None for algorithms without a defined hash.
    """
    hash_fn = hashlib.sha512 if alg == "EdDSA" else _HASH_BY_SIZE.get(alg[-3:])
    if hash_fn is None:
        return None
    digest = hash_fn(value.encode("utf-8")).digest()
    return _b64url_encode(digest[: len(digest) // 2])


class IdTokenVerifier:
    """
    Decodes, signature-verifies and validates the claims of ID Tokens.

    Attributes:
        config (OIDCClientConfig): The client configuration (client ID, leeway, algorithms).
        oidc_provider (OIDCProvider): Source of the issuer and the JWKS.
        signature_verifier (SignatureVerifier | None): Authoritative external verifier; skips JWKS.
        clock (Callable[[], float]): Current time in seconds.
    """

    def __init__(
        self,
        config: OIDCClientConfig,
        oidc_provider: OIDCProvider,
        signature_verifier: SignatureVerifier | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.oidc_provider = oidc_provider
        self.signature_verifier = signature_verifier
        self.clock = clock
        self.jws = JsonWebSignature(algorithms=self.config.allowed_algorithms)

    def _anonymize(self, value: str) -> str:
        return hmac.new(
            self.config.pii_salt.get_secret_value().encode("utf-8"),
            value.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _verify_signature(self, token: str, header: Mapping[str, Any]) -> None:
        alg = header.get("alg")
        if not isinstance(alg, str) or alg.lower() == "none":
            raise SignatureError("Unsigned tokens are not accepted")
        if alg not in self.config.allowed_algorithms:
            raise SignatureError(f"Signing algorithm '{alg}' is not accepted")

        if self.signature_verifier is not None:
            if not self.signature_verifier(token, header):
                raise SignatureError("Unable to verify signature")
            return

        if alg.startswith("HS"):
            # OIDC Core 10.1: MAC keys are the octets of the client secret
            secret = self.config.secret_value()
            if secret is None:
                raise SignatureError(f"Token signed with {alg} but no client secret is configured")
            self._deserialize(token, secret.encode("utf-8"))
            return

        kid = header.get("kid") if isinstance(header.get("kid"), str) else None
        candidates = self.oidc_provider.get_jwks().find_candidates(kid, alg)
        if not candidates:
            raise SignatureError(f"No key in the JWKS matches kid={kid or 'none'} alg={alg}")

        for candidate in candidates:
            try:
                key = JsonWebKey.import_key({**candidate, "alg": candidate.get("alg", alg)})
                self._deserialize(token, key)
                return
            except SignatureError:
                logger.debug(f"Key candidate failed verification (kid={candidate.get('kid', 'none')})")
            except (JoseError, KeyError, ValueError, TypeError) as e:
                logger.debug(f"Key candidate could not be used (kid={candidate.get('kid', 'none')}): {e}")

        raise SignatureError(f"Unable to verify signature with {len(candidates)} candidate key(s)")

    def _deserialize(self, token: str, key: Any) -> None:
        try:
            self.jws.deserialize_compact(token, key)
        except BadSignatureError as e:
            raise SignatureError("Unable to verify signature") from e
        except (JoseError, ValueError) as e:
            raise SignatureError(f"Signature verification failed: {e}") from e

    def _claims_options(self) -> dict[str, Any]:
        if self.config.issuer_validator is not None:
            issuer_validator = self.config.issuer_validator
            iss_option: dict[str, Any] = {
                "essential": True,
                "validate": lambda _claims, value: isinstance(value, str) and issuer_validator(value),
            }
        else:
            iss_option = {"essential": True, "value": self.oidc_provider.get_issuer()}

        return {
            "iss": iss_option,
            "aud": {"essential": True, "value": self.config.client_id},
            "sub": {"essential": True, "validate": lambda _claims, value: isinstance(value, str)},
            "exp": {"essential": True},
            "iat": {"essential": True},
        }

    def _validate_registered_claims(self, claims: JWTClaims) -> None:
        now = self.clock()
        leeway = self.config.clock_skew_leeway

        try:
            claims.validate(now=now, leeway=leeway)
        except MissingClaimError as e:
            claim = next(
                name for name, option in claims.options.items() if option.get("essential") and name not in claims
            )
            raise ClaimValidationError(claim, f"Missing claim: '{claim}'") from e
        except InvalidClaimError as e:
            raise ClaimValidationError(e.claim_name, self._invalid_claim_message(e.claim_name)) from e
        except ExpiredTokenError as e:
            raise ClaimValidationError("exp", "Token has expired") from e
        except JoseInvalidTokenError as e:
            # nbf is checked before iat
            nbf = claims.get("nbf")
            claim = "nbf" if isinstance(nbf, (int, float)) and nbf > now + leeway else "iat"
            raise ClaimValidationError(claim, e.description) from e

    def _invalid_claim_message(self, claim: str) -> str:
        if claim == "iss":
            if self.config.issuer_validator is not None:
                return "Issuer rejected by the issuer validator"
            return f"Invalid issuer: expected '{self.oidc_provider.get_issuer()}'"
        if claim == "aud":
            return "Invalid audience: client ID is not an audience of the token"
        return f"Invalid claim '{claim}'"

    def _validate_authorized_party(self, claims: IdTokenClaims) -> None:
        audiences = claims.audiences()
        azp = claims.get_str("azp")
        if len(audiences) > 1 and azp is not None and azp != self.config.client_id:
            raise ClaimValidationError("azp", "Invalid authorized party")

    def _validate_nonce(self, claims: IdTokenClaims, expected_nonce: str | None, nonce_required: bool) -> None:
        nonce = claims.get_str("nonce")
        if nonce is None:
            # A present-but-null nonce counts as absent
            if nonce_required:
                raise MissingNonceError()
            return

        if expected_nonce is None or not hmac.compare_digest(nonce.encode(), expected_nonce.encode()):
            raise ClaimValidationError("nonce", "Nonce does not match the authentication request")

    def _validate_at_hash(
        self, claims: IdTokenClaims, alg: str, access_token: str | None, at_hash_required: bool
    ) -> None:
        if not access_token:
            return

        at_hash = claims.get_str("at_hash")
        if at_hash is None:
            if at_hash_required:
                raise ClaimValidationError("at_hash", "Missing claim: 'at_hash'")
            return

        expected = token_hash(access_token, alg)
        if expected is None:
            logger.debug(f"No at_hash hash function for alg {alg}, skipping check")
            return
        if not hmac.compare_digest(at_hash.encode(), expected.encode()):
            raise ClaimValidationError("at_hash", "Access token hash does not match 'at_hash'")

    def verify(
        self,
        id_token: str,
        expected_nonce: str | None = None,
        nonce_required: bool = False,
        access_token: str | None = None,
        at_hash_required: bool = False,
    ) -> IdTokenClaims:
        """
        Verifies an ID Token and returns its claims.

        Emits an OpenTelemetry span `oidc.verify_id_token`.

        Args:
            id_token: The compact JWT.
            expected_nonce: The nonce of the validated flow state.
            nonce_required: The response type mandates a nonce (implicit/hybrid).
            access_token: Access token issued together with the ID Token.
            at_hash_required: The response type mandates `at_hash` when an access token is present.

        Returns:
            IdTokenClaims: The immutable, verified claims.

        Raises:
            MalformedTokenError: If the token cannot be decoded.
            SignatureError: If the signature is invalid or the algorithm is not accepted.
            ClaimValidationError: If any claim check fails (`MissingNonceError` for a missing nonce).
            DiscoveryError: If the JWKS or issuer cannot be obtained.
            ConfigurationError: If the client ID or issuer is not configured.
        """
        with tracer.start_as_current_span("oidc.verify_id_token") as span:
            if not self.config.client_id:
                raise ConfigurationError("The client ID has not been set")

            try:
                header, payload = decode_segments(id_token.strip())
                self._verify_signature(id_token.strip(), header)

                self._validate_registered_claims(JWTClaims(payload, header, options=self._claims_options()))

                claims = IdTokenClaims(payload)
                self._validate_authorized_party(claims)
                self._validate_nonce(claims, expected_nonce, nonce_required)
                self._validate_at_hash(claims, str(header["alg"]), access_token, at_hash_required)
            except ClaimValidationError as e:
                logger.warning(f"Validation failed: claim '{e.claim}': {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise
            except InvalidTokenError as e:
                logger.error(f"Validation failed: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                raise

            user_hash = self._anonymize(str(claims["sub"]))
            logger.info(f"ID Token validated for user {user_hash}")
            span.set_attribute("enduser.id", user_hash)
            span.set_status(Status(StatusCode.OK))
            return claims
