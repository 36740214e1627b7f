"""Remote plugin repository sync.

The remote source is a git working copy of ``config.PLUGIN_REPO`` kept at
``config.REMOTE_PLUGIN_DIR``; plugin files are read from its ``plugins/``
subdirectory.  Every git call runs as an asyncio subprocess with a timeout,
so a hung network operation fails the sync instead of blocking it forever.

Sync policy (``ensure_synced``):
  - no repo configured: no-op
  - working copy present: fast-forward pull, on failure delete it and re-clone
  - working copy absent: clone (token embedded as inline URL credentials)
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path

import config
from plugins.base import LoadResult, PluginSource
from plugins.loader import load_plugins

log = logging.getLogger(__name__)

_GIT_ENV = {
    # Never block on a credential prompt for a private repo without a token.
    "GIT_TERMINAL_PROMPT": "0",
}


class RemoteSyncError(RuntimeError):
    """A git operation against the remote plugin repository failed."""


def authenticated_url(repo_url: str, token: str = "") -> str:
    """Embed ``token`` as inline credentials in an https URL."""
    if not token or not repo_url.startswith("https://"):
        return repo_url
    return repo_url.replace("https://", f"https://{token}@", 1)


def _redact(text: str, token: str) -> str:
    return text.replace(token, "***") if token else text


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    await proc.wait()


async def _agit(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float = 60,
    secret: str = "",
) -> str:
    """Run a git command asynchronously and return stdout."""
    shown = _redact(" ".join(args), secret)
    try:
        proc = await asyncio.create_subprocess_exec(
            "git", *args,
            stdout=subprocess.PIPE, stderr=subprocess.PIPE,
            cwd=cwd, env={**os.environ, **_GIT_ENV},
        )
    except FileNotFoundError as exc:
        raise RemoteSyncError("git executable not found") from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        log.warning("Git command timed out, killing process: git %s (timeout=%ss)", shown, timeout)
        await _kill(proc)
        raise RemoteSyncError(f"git {shown} timed out after {timeout}s")
    except BaseException:
        # Cancelled mid-command (e.g. shutdown); never leave git running on the checkout.
        await _kill(proc)
        raise
    if proc.returncode != 0:
        detail = _redact(stderr.decode(errors="replace").strip(), secret)
        raise RemoteSyncError(f"git {shown} failed: {detail}")
    return stdout.decode().strip()


class RemoteSourceProvider(ABC):
    """Something that can materialize and track a remote plugin checkout."""

    @property
    @abstractmethod
    def configured(self) -> bool:
        ...

    @property
    @abstractmethod
    def plugin_dir(self) -> Path:
        """Directory holding the remote plugin files."""
        ...

    @abstractmethod
    def has_working_copy(self) -> bool:
        ...

    @abstractmethod
    async def ensure_synced(self) -> bool:
        """Clone or update the working copy. Logs failures, never raises."""
        ...

    @abstractmethod
    async def current_revision(self) -> str:
        ...

    @abstractmethod
    async def upstream_revision(self) -> str:
        """Fetch the tracked branch and return its latest commit id."""
        ...

    @abstractmethod
    async def pull(self) -> None:
        ...


class GitRemoteSource(RemoteSourceProvider):
    """Remote plugins from a git repository, driven through the git CLI."""

    def __init__(
        self,
        repo_url: str | None = None,
        token: str | None = None,
        work_dir: Path | None = None,
        branch: str | None = None,
        subdir: str | None = None,
        timeout: float | None = None,
    ):
        self.repo_url = config.PLUGIN_REPO if repo_url is None else repo_url
        self.token = config.GITHUB_TOKEN if token is None else token
        self.work_dir = work_dir or config.REMOTE_PLUGIN_DIR
        self.branch = branch or config.PLUGIN_BRANCH
        self.subdir = config.REMOTE_PLUGIN_SUBDIR if subdir is None else subdir
        self.timeout = timeout or config.GIT_TIMEOUT

    @property
    def configured(self) -> bool:
        return bool(self.repo_url)

    @property
    def plugin_dir(self) -> Path:
        return self.work_dir / self.subdir if self.subdir else self.work_dir

    def has_working_copy(self) -> bool:
        return (self.work_dir / ".git").exists()

    async def _git(self, args: list[str], cwd: Path | None = None) -> str:
        return await _agit(args, cwd=cwd, timeout=self.timeout, secret=self.token)

    async def clone(self) -> None:
        url = authenticated_url(self.repo_url, self.token)
        self.work_dir.parent.mkdir(parents=True, exist_ok=True)
        await self._git(["clone", "--branch", self.branch, url, str(self.work_dir)])

    async def pull(self) -> None:
        await self._git(["pull", "--ff-only", "origin", self.branch], cwd=self.work_dir)

    async def current_revision(self) -> str:
        return await self._git(["rev-parse", "HEAD"], cwd=self.work_dir)

    async def upstream_revision(self) -> str:
        await self._git(["fetch", "origin", self.branch], cwd=self.work_dir)
        return await self._git(["rev-parse", f"origin/{self.branch}"], cwd=self.work_dir)

    def _remove_working_copy(self) -> None:
        shutil.rmtree(self.work_dir, ignore_errors=True)

    async def ensure_synced(self) -> bool:
        if not self.configured:
            log.info("No remote plugin repo configured.")
            return False

        if self.work_dir.exists():
            if self.has_working_copy():
                try:
                    log.info("Pulling latest remote plugins...")
                    await self.pull()
                    return True
                except RemoteSyncError as exc:
                    log.warning("Pull failed, cloning fresh: %s", exc)
            else:
                log.warning("%s is not a git checkout, cloning fresh", self.work_dir)
            await asyncio.to_thread(self._remove_working_copy)

        try:
            log.info("Cloning remote plugins...")
            await self.clone()
        except RemoteSyncError as exc:
            log.error("Failed to clone remote plugins: %s", exc)
            return False

        log.info("Remote plugins cloned successfully.")
        return True

    def __repr__(self) -> str:
        return f"<GitRemoteSource {_redact(self.repo_url, self.token) or '(unset)'}@{self.branch}>"


class RemotePluginSource(PluginSource):
    """Plugins from the remote checkout, scanned like a local directory."""

    origin = "remote"

    def __init__(self, provider: RemoteSourceProvider):
        self.provider = provider

    async def sync(self) -> bool:
        try:
            return await self.provider.ensure_synced()
        except Exception:
            log.error("Remote plugin sync failed", exc_info=True)
            return False

    def load(self) -> list[LoadResult]:
        if not self.provider.configured:
            return []
        return load_plugins(self.provider.plugin_dir, self.origin)

    def __repr__(self) -> str:
        return f"<RemotePluginSource {self.provider!r}>"
