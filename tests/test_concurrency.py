"""Concurrent refresh and login behaviour against the in-memory store.

Each worker thread drives the async service through its own event loop, the
same way concurrent requests reach a synchronous store from worker threads.
"""

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor

from authcore.service.errors import RevokedOrExpiredError

PASSWORD = "password1"


def _race(workers, fn):
    barrier = threading.Barrier(workers)

    def run(_):
        barrier.wait()
        try:
            return ("ok", fn())
        except Exception as exc:
            return ("error", exc)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        return list(pool.map(run, range(workers)))


class TestConcurrentRefresh:
    """Two redemptions of one refresh token: exactly one wins."""

    def test_same_token_refreshed_twice(self, auth_service):
        result = asyncio.run(auth_service.register("u@x.com", PASSWORD, "Uma"))

        outcomes = _race(2, lambda: asyncio.run(auth_service.refresh(result.refresh_token)))

        wins = [value for status, value in outcomes if status == "ok"]
        losses = [value for status, value in outcomes if status == "error"]
        assert len(wins) == 1
        assert len(losses) == 1
        assert isinstance(losses[0], RevokedOrExpiredError)
        assert wins[0].refresh_token != result.refresh_token

    def test_many_concurrent_redemptions(self, auth_service, store):
        result = asyncio.run(auth_service.register("u@x.com", PASSWORD, "Uma"))

        outcomes = _race(8, lambda: asyncio.run(auth_service.refresh(result.refresh_token)))

        wins = [value for status, value in outcomes if status == "ok"]
        assert len(wins) == 1
        assert all(
            isinstance(value, RevokedOrExpiredError)
            for status, value in outcomes
            if status == "error"
        )
        active = [
            s for s in store.list_sessions_for_user(result.identity.id) if s.is_active()
        ]
        assert [s.refresh_token for s in active] == [wins[0].refresh_token]


class TestConcurrentLogin:
    """Concurrent logins may leave more than one active session; logout_all clears them."""

    def test_concurrent_logins_then_logout_all(self, auth_service, store):
        result = asyncio.run(auth_service.register("u@x.com", PASSWORD, "Uma"))
        user_id = result.identity.id

        outcomes = _race(4, lambda: asyncio.run(auth_service.login("u@x.com", PASSWORD)))
        assert all(status == "ok" for status, _ in outcomes)

        active = [s for s in store.list_sessions_for_user(user_id) if s.is_active()]
        # Revoke-then-create without a lock: at least one, at most one per login
        assert 1 <= len(active) <= 4

        asyncio.run(auth_service.logout_all(user_id))
        assert [s for s in store.list_sessions_for_user(user_id) if s.is_active()] == []
