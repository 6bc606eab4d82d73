# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import pytest
from pydantic import ValidationError

from coreason_oidc.exceptions import ClaimValidationError
from coreason_oidc.models import (
    FlowState,
    IdTokenClaims,
    JWKSet,
    ProviderMetadata,
    RequestContext,
    TokenResponse,
)


class TestRequestContext:
    def test_default_redirect_url_drops_query_and_fragment(self) -> None:
        request = RequestContext(url="http://domain.test/path/index.php?query=1#fragment")
        assert request.default_redirect_url() == "http://domain.test/path/index.php"

    def test_default_redirect_url_of_empty_request(self) -> None:
        assert RequestContext().default_redirect_url() == "http:///"

    def test_default_redirect_url_keeps_port(self) -> None:
        request = RequestContext(url="https://rp.example.com:8443/cb?x=1")
        assert request.default_redirect_url() == "https://rp.example.com:8443/cb"

    def test_form_parameters_win(self) -> None:
        request = RequestContext(query={"state": "q", "code": "c"}, form={"state": "f"})
        assert request.params == {"state": "f", "code": "c"}


class TestProviderMetadata:
    def test_unknown_fields_are_kept(self) -> None:
        metadata = ProviderMetadata(issuer="https://idp", check_session_iframe="https://idp/check")
        assert metadata.get("check_session_iframe") == "https://idp/check"
        assert metadata.get("missing", "default") == "default"

    def test_is_frozen(self) -> None:
        metadata = ProviderMetadata(issuer="https://idp")
        with pytest.raises(ValidationError):
            metadata.issuer = "https://other"  # type: ignore[misc]


class TestJWKSet:
    keys = (
        {"kty": "RSA", "kid": "a", "alg": "RS256", "n": "n", "e": "AQAB"},
        {"kty": "RSA", "kid": "b", "n": "n", "e": "AQAB"},
        {"kty": "EC", "kid": "c", "crv": "P-256", "x": "x", "y": "y"},
        {"kty": "RSA", "kid": "enc", "use": "enc", "n": "n", "e": "AQAB"},
    )

    def test_kid_selects_exact_match(self) -> None:
        candidates = JWKSet(keys=self.keys).find_candidates("b", "RS256")
        assert [key["kid"] for key in candidates] == ["b"]

    def test_unknown_kid_has_no_candidates(self) -> None:
        assert JWKSet(keys=self.keys).find_candidates("zzz", "RS256") == []

    def test_without_kid_alg_matches_come_first(self) -> None:
        candidates = JWKSet(keys=self.keys).find_candidates(None, "RS256")
        assert [key["kid"] for key in candidates] == ["a", "b"]

    def test_without_kid_key_type_follows_alg(self) -> None:
        candidates = JWKSet(keys=self.keys).find_candidates(None, "ES256")
        assert [key["kid"] for key in candidates] == ["c"]

    def test_encryption_keys_are_never_candidates(self) -> None:
        assert JWKSet(keys=self.keys).find_candidates("enc", "RS256") == []


class TestTokenResponse:
    def test_repr_redacts_tokens(self) -> None:
        tokens = TokenResponse(id_token="header.payload.sig", access_token="at-secret", token_type="Bearer")
        text = repr(tokens)

        assert "at-secret" not in text
        assert "header.payload.sig" not in text
        assert "<REDACTED>" in text
        assert str(tokens) == text

    def test_extra_fields_ignored(self) -> None:
        tokens = TokenResponse(access_token="at", expires_in=60, unexpected="value")  # type: ignore[call-arg]
        assert tokens.expires_in == 60


class TestIdTokenClaims:
    def test_is_read_only_mapping(self) -> None:
        claims = IdTokenClaims({"sub": "user", "aud": "client"})

        assert claims["sub"] == "user"
        assert len(claims) == 2
        assert set(claims) == {"sub", "aud"}
        with pytest.raises(TypeError):
            claims["sub"] = "other"  # type: ignore[index]

    def test_source_mutation_does_not_leak(self) -> None:
        source = {"sub": "user"}
        claims = IdTokenClaims(source)
        source["sub"] = "changed"
        assert claims["sub"] == "user"

    def test_require_missing_claim(self) -> None:
        with pytest.raises(ClaimValidationError) as exc_info:
            IdTokenClaims({}).require("sub")
        assert exc_info.value.claim == "sub"

    def test_require_str_rejects_non_string(self) -> None:
        with pytest.raises(ClaimValidationError, match="must be a string"):
            IdTokenClaims({"sub": 42}).require_str("sub")

    def test_require_number_rejects_bool(self) -> None:
        with pytest.raises(ClaimValidationError, match="must be a number"):
            IdTokenClaims({"exp": True}).require_number("exp")

    def test_null_claim_counts_as_absent(self) -> None:
        claims = IdTokenClaims({"nonce": None})
        assert claims.get_str("nonce") is None

    def test_audiences(self) -> None:
        assert IdTokenClaims({"aud": "a"}).audiences() == ("a",)
        assert IdTokenClaims({"aud": ["a", "b"]}).audiences() == ("a", "b")
        with pytest.raises(ClaimValidationError):
            IdTokenClaims({"aud": ["a", 1]}).audiences()

    def test_repr_hides_values(self) -> None:
        claims = IdTokenClaims({"sub": "secret-user", "email": "a@b.c"})
        assert "secret-user" not in repr(claims)
        assert claims.to_dict() == {"sub": "secret-user", "email": "a@b.c"}


def test_flow_state_is_frozen() -> None:
    flow_state = FlowState(state="s", nonce="n")
    with pytest.raises(ValidationError):
        flow_state.state = "other"  # type: ignore[misc]
