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
Builders for the URLs the user agent is redirected to.
"""

from urllib.parse import urlencode

from coreason_oidc.config import OIDCClientConfig
from coreason_oidc.exceptions import ConfigurationError
from coreason_oidc.models import FlowState, ProviderMetadata
from coreason_oidc.state import code_challenge


def _append_query(endpoint: str, params: dict[str, str]) -> str:
    separator = "&" if "?" in endpoint else "?"
    return f"{endpoint}{separator}{urlencode(params)}"


def build_authorization_url(metadata: ProviderMetadata, config: OIDCClientConfig, flow_state: FlowState) -> str:
    """
    Composes the authorization endpoint URL for a new flow. No network I/O.

    Extra authorization parameters never override the protocol parameters.

    Args:
        metadata: Provider metadata holding `authorization_endpoint`.
        config: The client configuration.
        flow_state: The freshly minted flow state.

    Returns:
        str: The URL to redirect the user agent to.

    Raises:
        ConfigurationError: If the authorization endpoint or the client ID is unknown.
    """
    if not metadata.authorization_endpoint:
        raise ConfigurationError("The authorization endpoint is unknown: run discovery or configure it")
    if not config.client_id:
        raise ConfigurationError("The client ID has not been set")

    params = {
        "response_type": " ".join(config.response_types),
        "client_id": config.client_id,
        "redirect_uri": flow_state.redirect_uri or config.redirect_url or "",
        "scope": " ".join(config.scopes),
        "state": flow_state.state,
        "nonce": flow_state.nonce,
    }
    if not params["redirect_uri"]:
        del params["redirect_uri"]

    if flow_state.code_verifier:
        params["code_challenge"] = code_challenge(flow_state.code_verifier)
        params["code_challenge_method"] = "S256"

    for key, value in config.extra_authorization_params.items():
        params.setdefault(key, value)

    return _append_query(metadata.authorization_endpoint, params)


def build_end_session_url(
    metadata: ProviderMetadata,
    id_token_hint: str | None = None,
    post_logout_redirect_uri: str | None = None,
    state: str | None = None,
) -> str:
    """
    Composes the RP-initiated logout URL.

    Raises:
        ConfigurationError: If the provider does not publish an end session endpoint.
    """
    if not metadata.end_session_endpoint:
        raise ConfigurationError("The provider does not publish an 'end_session_endpoint'")

    params: dict[str, str] = {}
    if id_token_hint:
        params["id_token_hint"] = id_token_hint
    if post_logout_redirect_uri:
        params["post_logout_redirect_uri"] = post_logout_redirect_uri
    if state:
        params["state"] = state

    if not params:
        return metadata.end_session_endpoint
    return _append_query(metadata.end_session_endpoint, params)
