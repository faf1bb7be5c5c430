"""
tests/test_purge.py -- Unit tests for the background expired-token purge loop.

The loop runs with a zero interval against a stand-in store so each tick
happens immediately. asyncio.run drives it; no event-loop plugin is needed.
"""

from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from api.main import _purge_loop


class FlakyStore:
    """purge_expired fails on the first call and succeeds afterwards."""

    def __init__(self) -> None:
        self.calls = 0

    def purge_expired(self, now):
        self.calls += 1
        if self.calls == 1:
            raise OperationalError("DELETE FROM refresh_tokens", {}, Exception("database is locked"))
        return 2, 3


def _app_with(store) -> SimpleNamespace:
    return SimpleNamespace(state=SimpleNamespace(auth_service=SimpleNamespace(store=store)))


async def _run_until(store: FlakyStore, calls: int) -> None:
    task = asyncio.create_task(_purge_loop(_app_with(store), 0))
    while store.calls < calls:
        await asyncio.sleep(0.01)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task


def test_failed_purge_is_logged_and_retried(caplog):
    store = FlakyStore()
    with caplog.at_level("INFO", logger="authgate.api"):
        # The third call starts only after the second one has been logged.
        asyncio.run(asyncio.wait_for(_run_until(store, 3), timeout=5))
    assert "Expired token purge failed" in caplog.text
    assert "Purged 2 refresh and 3 ephemeral expired token(s)" in caplog.text
    assert store.calls >= 3


def test_cancel_stops_the_loop():
    store = FlakyStore()
    store.calls = 1  # skip the failing call

    async def run() -> None:
        task = asyncio.create_task(_purge_loop(_app_with(store), 3600))
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())
    assert store.calls == 1, "Cancelled during the sleep, before any purge"
