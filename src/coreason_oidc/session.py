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
Session storage for per-flow state.
"""

import threading
from typing import Protocol

from coreason_oidc.models import FlowState


class SessionStore(Protocol):
    """
    Protocol for the store holding the in-flight `FlowState` between the two round trips.

    `take_and_delete` must be atomic: under concurrent callbacks only one caller
    may receive the stored value.
    """

    def put(self, key: str, flow_state: FlowState) -> None: ...

    def take_and_delete(self, key: str) -> FlowState | None: ...


class MemorySessionStore:
    """
    In-memory implementation of SessionStore.
    One instance per user session. Not suitable for distributed systems.
    """

    def __init__(self) -> None:
        self._data: dict[str, FlowState] = {}
        self._lock = threading.Lock()

    def put(self, key: str, flow_state: FlowState) -> None:
        with self._lock:
            self._data[key] = flow_state

    def take_and_delete(self, key: str) -> FlowState | None:
        with self._lock:
            return self._data.pop(key, None)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data
