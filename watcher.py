"""
Bug watcher

Client-side poller that keeps listeners up to date with a bug, its GitHub
activity, and the bug list. All state lives on the BugWatcher instance;
create one per session and close it when done.

    watcher = BugWatcher("http://localhost:8000", token, poll_interval=30)
    unsubscribe = watcher.subscribe_bug("PROJ-001", on_bug)
    await watcher.run()
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

Listener = Callable[[Dict[str, Any]], Any]


class BugWatcher:
    def __init__(self, base_url: str, token: str, poll_interval: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.poll_interval = poll_interval
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=15.0)
        self.headers = {"Authorization": f"Bearer {token}"}
        self._bug_listeners: Dict[str, List[Listener]] = {}
        self._list_listeners: List[Listener] = []
        self._stopped: Optional[asyncio.Event] = None

    # -----------------------------
    # Subscriptions
    # -----------------------------
    def subscribe_bug(self, identifier: str, callback: Listener) -> Callable[[], None]:
        """Watch one bug. The callback receives {"bug": ..., "github": ...}."""
        self._bug_listeners.setdefault(identifier, []).append(callback)

        def unsubscribe() -> None:
            listeners = self._bug_listeners.get(identifier, [])
            if callback in listeners:
                listeners.remove(callback)
            if not listeners:
                self._bug_listeners.pop(identifier, None)

        return unsubscribe

    def subscribe_bug_list(self, callback: Listener) -> Callable[[], None]:
        """Watch the bug list. The callback receives the list payload ({bugs, pagination})."""
        self._list_listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._list_listeners:
                self._list_listeners.remove(callback)

        return unsubscribe

    # -----------------------------
    # Polling
    # -----------------------------
    async def _get(self, path: str) -> Dict[str, Any]:
        response = await self.client.get(path, headers=self.headers)
        response.raise_for_status()
        return response.json().get("data") or {}

    async def _notify(self, listeners: List[Listener], payload: Dict[str, Any]) -> None:
        for listener in list(listeners):
            try:
                result = listener(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error("Watcher listener %r failed: %s", listener, e)

    async def poll_once(self) -> None:
        """Fetch every watched bug (with its GitHub activity) and the bug list once."""
        for identifier in list(self._bug_listeners):
            try:
                bug = await self._get(f"/api/bugs/{identifier}")
                github = await self._get(f"/api/github/activity/{identifier}")
            except httpx.HTTPError as e:
                logger.warning("Polling bug %s failed: %s", identifier, e)
                continue
            await self._notify(self._bug_listeners.get(identifier, []), {"bug": bug, "github": github})

        if self._list_listeners:
            try:
                bugs = await self._get("/api/bugs")
            except httpx.HTTPError as e:
                logger.warning("Polling bug list failed: %s", e)
                return
            await self._notify(self._list_listeners, bugs)

    async def run(self) -> None:
        """Poll every `poll_interval` seconds until stop() is called."""
        # one event per run, bound to the running loop
        self._stopped = stopped = asyncio.Event()
        logger.info("Bug watcher started (interval %.1fs)", self.poll_interval)
        while not stopped.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(stopped.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Bug watcher stopped")

    def stop(self) -> None:
        if self._stopped is not None:
            self._stopped.set()

    async def aclose(self) -> None:
        self.stop()
        if self._owns_client:
            await self.client.aclose()
