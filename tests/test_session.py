# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

import threading

from coreason_oidc.models import FlowState
from coreason_oidc.session import MemorySessionStore


def test_take_and_delete_returns_value_once() -> None:
    store = MemorySessionStore()
    flow_state = FlowState(state="s", nonce="n")
    store.put("key", flow_state)

    assert "key" in store
    assert store.take_and_delete("key") == flow_state
    assert "key" not in store
    assert store.take_and_delete("key") is None


def test_put_replaces_previous_value() -> None:
    store = MemorySessionStore()
    store.put("key", FlowState(state="old", nonce="n1"))
    store.put("key", FlowState(state="new", nonce="n2"))

    taken = store.take_and_delete("key")
    assert taken is not None
    assert taken.state == "new"


def test_concurrent_take_yields_single_winner() -> None:
    store = MemorySessionStore()
    store.put("key", FlowState(state="s", nonce="n"))
    results: list[FlowState | None] = []
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        results.append(store.take_and_delete("key"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len([r for r in results if r is not None]) == 1
