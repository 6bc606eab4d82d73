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
Request State Manager: mints and validates the anti-forgery values of one flow.
"""

import base64
import hashlib
import hmac
import secrets
from collections.abc import Callable

from coreason_oidc.exceptions import ConfigurationError, StateMismatchError
from coreason_oidc.models import FlowState
from coreason_oidc.session import SessionStore
from coreason_oidc.utils.logger import logger


def generate_token() -> str:
    """32 bytes of CSPRNG output, base64url encoded."""
    return secrets.token_urlsafe(32)


def code_challenge(code_verifier: str) -> str:
    """S256 PKCE challenge (RFC 7636): base64url(SHA-256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class RequestStateManager:
    """
    Persists `FlowState` in the session store and consumes it exactly once.

    Attributes:
        session (SessionStore): The store for the current user agent.
        session_key (str): Key under which the flow state is stored.
        pkce_enabled (bool): Whether to mint a PKCE code verifier.
    """

    def __init__(
        self,
        session: SessionStore,
        session_key: str,
        pkce_enabled: bool = True,
        token_factory: Callable[[], str] = generate_token,
    ) -> None:
        self.session = session
        self.session_key = session_key
        self.pkce_enabled = pkce_enabled
        self.token_factory = token_factory

    def begin(self, redirect_uri: str | None = None) -> FlowState:
        """
        Mints a fresh FlowState and stores it, replacing any earlier one.

        Raises:
            ConfigurationError: If the token source produced identical state and nonce.
        """
        state = self.token_factory()
        nonce = self.token_factory()
        if not state or state == nonce:
            raise ConfigurationError("State and nonce must be distinct random values")

        flow_state = FlowState(
            state=state,
            nonce=nonce,
            code_verifier=self.token_factory() if self.pkce_enabled else None,
            redirect_uri=redirect_uri,
        )
        self.session.put(self.session_key, flow_state)
        return flow_state

    def validate_callback(self, received_state: str | None) -> FlowState:
        """
        Consumes the stored FlowState and checks it against the returned `state`.

        The stored value is removed before comparison, so a replayed or duplicated
        callback always fails.

        Raises:
            StateMismatchError: If no flow is pending or the state differs.
        """
        flow_state = self.session.take_and_delete(self.session_key)
        if flow_state is None:
            logger.warning("Callback received without a pending authentication flow")
            raise StateMismatchError("No pending authentication flow for this session")

        if not received_state or not hmac.compare_digest(received_state.encode(), flow_state.state.encode()):
            logger.warning("Callback state does not match the pending authentication flow")
            raise StateMismatchError("Unable to determine state")

        return flow_state
