import asyncio

import httpx

from watcher import BugWatcher


def _transport(calls, fail_paths=()):
    def handler(request):
        calls.append((request.url.path, request.headers.get("Authorization")))
        if request.url.path in fail_paths:
            return httpx.Response(500, json={"success": False})
        if request.url.path == "/api/bugs":
            return httpx.Response(200, json={"data": {"bugs": [{"bug_id": "ABC-001"}], "pagination": {"total_items": 1}}})
        if request.url.path.startswith("/api/github/activity/"):
            return httpx.Response(200, json={"data": {"counts": {"forks": 0, "pull_requests": 1}}})
        return httpx.Response(200, json={"data": {"bug_id": request.url.path.rsplit("/", 1)[-1], "status": "open"}})
    return httpx.MockTransport(handler)


def _watcher(calls, **kwargs):
    client = httpx.AsyncClient(base_url="http://tracker.test", transport=_transport(calls, **kwargs))
    return BugWatcher("http://tracker.test", "tok", poll_interval=0.01, client=client), client


def test_poll_once_notifies_bug_and_list_listeners():
    async def run_test():
        calls = []
        watcher, client = _watcher(calls)
        seen_bug, seen_list = [], []
        watcher.subscribe_bug("ABC-001", seen_bug.append)
        watcher.subscribe_bug_list(seen_list.append)

        await watcher.poll_once()

        assert seen_bug == [{"bug": {"bug_id": "ABC-001", "status": "open"}, "github": {"counts": {"forks": 0, "pull_requests": 1}}}]
        assert seen_list[0]["bugs"][0]["bug_id"] == "ABC-001"
        assert {path for path, _ in calls} == {"/api/bugs/ABC-001", "/api/github/activity/ABC-001", "/api/bugs"}
        assert all(auth == "Bearer tok" for _, auth in calls)
        await client.aclose()

    asyncio.run(run_test())


def test_unsubscribe_stops_notifications():
    async def run_test():
        calls = []
        watcher, client = _watcher(calls)
        seen = []
        unsubscribe = watcher.subscribe_bug("ABC-001", seen.append)
        unsubscribe_list = watcher.subscribe_bug_list(seen.append)
        unsubscribe()
        unsubscribe_list()

        await watcher.poll_once()

        assert seen == []
        assert calls == []
        await client.aclose()

    asyncio.run(run_test())


def test_failing_listener_does_not_block_others():
    async def run_test():
        watcher, client = _watcher([])
        seen = []

        def broken(_payload):
            raise RuntimeError("boom")

        async def async_listener(payload):
            seen.append(payload["bug"]["bug_id"])

        watcher.subscribe_bug("ABC-001", broken)
        watcher.subscribe_bug("ABC-001", async_listener)
        await watcher.poll_once()

        assert seen == ["ABC-001"]
        await client.aclose()

    asyncio.run(run_test())


def test_http_errors_are_logged_not_raised():
    async def run_test():
        watcher, client = _watcher([], fail_paths=("/api/bugs/ABC-001",))
        seen = []
        watcher.subscribe_bug("ABC-001", seen.append)
        watcher.subscribe_bug_list(seen.append)

        await watcher.poll_once()

        assert len(seen) == 1
        assert "bugs" in seen[0]
        await client.aclose()

    asyncio.run(run_test())


def test_run_polls_until_stopped():
    async def run_test():
        watcher, client = _watcher([])
        rounds = []

        def listener(payload):
            rounds.append(payload)
            if len(rounds) == 3:
                watcher.stop()

        watcher.subscribe_bug_list(listener)
        await asyncio.wait_for(watcher.run(), timeout=2)

        assert len(rounds) == 3
        await watcher.aclose()
        # a client passed in is left for the caller to close
        assert not client.is_closed
        await client.aclose()

    asyncio.run(run_test())


def test_owned_client_is_closed():
    async def run_test():
        watcher = BugWatcher("http://tracker.test/", "tok")
        assert watcher.client.base_url.host == "tracker.test"
        await watcher.aclose()
        assert watcher.client.is_closed

    asyncio.run(run_test())


def test_watcher_built_outside_a_loop_runs_in_several_loops():
    watcher, client = _watcher([])
    watcher.stop()
    rounds = []

    def listener(payload):
        rounds.append(payload)
        watcher.stop()

    watcher.subscribe_bug_list(listener)

    async def run_once():
        await asyncio.wait_for(watcher.run(), timeout=2)

    asyncio.run(run_once())
    asyncio.run(run_once())
    asyncio.run(client.aclose())

    assert len(rounds) == 2
