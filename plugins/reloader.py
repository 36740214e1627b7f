"""Plugin reload coordination and the remote hot-reload timer.

``PluginReloader`` is the only path that syncs the remote checkout and
rebuilds the registry.  It holds one asyncio lock so a scheduler tick, a
manual ``.reload`` and a reconnect can never run git against the working
copy at the same time: manual reloads wait their turn, background ones are
dropped when a reload is already running.

``HotReloadScheduler`` polls the remote branch every
``config.HOT_RELOAD_INTERVAL`` seconds and rebuilds only when the upstream
commit differs from the checked-out one.
"""
from __future__ import annotations

import asyncio
import logging

import config
from plugins.base import CommandRegistry
from plugins.remote import RemotePluginSource

log = logging.getLogger(__name__)


class PluginReloader:
    """Single-flight sync + rebuild."""

    def __init__(self, registry: CommandRegistry, remote: RemotePluginSource):
        self.registry = registry
        self.remote = remote
        self._lock = asyncio.Lock()
        self.reload_count = 0

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    async def reload(self, *, wait: bool = True) -> int | None:
        """Sync the remote checkout, then rebuild the registry.

        Returns the number of loaded commands, or None when ``wait`` is
        False and another reload is already in progress.
        """
        if not wait and self._lock.locked():
            log.debug("Reload already in progress, skipping")
            return None
        async with self._lock:
            await self.remote.sync()
            return self._rebuild()

    async def check_and_rebuild(self) -> str | None:
        """Compare the checkout with upstream and pull + rebuild when behind.

        The fetch, the comparison and the pull all hold the reload lock, so
        no other reload touches the working copy in between.  Returns None
        when a reload is already running, otherwise ``"reloaded"``,
        ``"unchanged"`` or ``"failed"``.  Git errors propagate.
        """
        if self._lock.locked():
            return None
        provider = self.remote.provider
        async with self._lock:
            if not provider.has_working_copy():
                # Initial clone failed earlier; try again from scratch.
                await self.remote.sync()
                self._rebuild()
                return "reloaded" if provider.has_working_copy() else "failed"

            latest = await provider.upstream_revision()
            current = await provider.current_revision()
            if latest == current:
                return "unchanged"

            log.info("New plugin updates found (%s -> %s), pulling & reloading...", current[:8], latest[:8])
            await provider.pull()
            self._rebuild()
            return "reloaded"

    def _rebuild(self) -> int:
        log.info("Loading all plugins...")
        count = self.registry.rebuild()
        self.reload_count += 1
        log.info("Loaded %d total commands.", count)
        return count


class HotReloadScheduler:
    """Periodic check of the remote plugin repository."""

    def __init__(self, reloader: PluginReloader, interval: float | None = None):
        self.reloader = reloader
        self.interval = interval or config.HOT_RELOAD_INTERVAL
        self._task: asyncio.Task | None = None
        self.last_status = "idle"

    @property
    def provider(self):
        return self.reloader.remote.provider

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Start the timer on the running loop. Returns False if already running."""
        if self.running:
            return False
        self._task = asyncio.get_running_loop().create_task(self._run(), name="hot-reload")
        log.info("Hot reload started (every %ss)", self.interval)
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.tick()

    async def tick(self) -> str:
        """One check of the remote branch. Never raises."""
        try:
            status = await self._check()
        except asyncio.CancelledError:
            raise
        except Exception:
            log.error("Hot reload failed", exc_info=True)
            status = "failed"
        self.last_status = status
        return status

    async def _check(self) -> str:
        provider = self.provider
        if not provider.configured:
            return "disabled"
        log.debug("Checking for plugin updates...")
        status = await self.reloader.check_and_rebuild()
        if status is None:
            log.debug("Reload in progress, skipping hot reload tick")
            return "busy"
        return status
