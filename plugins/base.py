"""Plugin descriptor, per-file load result and the command registry.

Provides:
  - ``PluginDescriptor``: one loaded command handler (name, aliases, execute)
  - ``LoadResult``: outcome of constructing one plugin file
  - ``PluginSource``: anything that can produce load results (local dir, remote repo)
  - ``CommandRegistry``: alias -> descriptor lookup, rebuilt as a whole

The registry never mutates its live mapping.  ``rebuild()`` builds a fresh
dict from every source, wraps it read-only and publishes it with one
reference assignment, so a dispatch running mid-rebuild sees either the old
snapshot or the new one.
"""
from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class PluginDescriptor:
    """A loaded command handler."""

    name: str
    aliases: tuple[str, ...]
    execute: Callable[..., Any]
    origin: str = "local"
    path: Path | None = None

    def __post_init__(self):
        if not self.aliases:
            raise ValueError(f"Plugin '{self.name}' declares no aliases")
        if not callable(self.execute):
            raise TypeError(f"Plugin '{self.name}' execute is not callable")

    def get_info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "aliases": list(self.aliases),
            "origin": self.origin,
            "path": str(self.path) if self.path else "",
        }

    def __repr__(self) -> str:
        return f"<Plugin {self.name} [{', '.join(self.aliases)}] ({self.origin})>"


@dataclass(frozen=True)
class LoadResult:
    """Outcome of loading one plugin file: a descriptor or an error message."""

    path: Path
    plugin: PluginDescriptor | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.plugin is not None and self.error is None


class PluginSource(ABC):
    """A place plugins come from."""

    origin: str = "local"

    @abstractmethod
    def load(self) -> list[LoadResult]:
        """Scan the source and return one result per discovered file."""
        ...


class CommandRegistry:
    """Alias -> PluginDescriptor mapping published as an immutable snapshot.

    The global instance lives on the bot; tests build their own.
    """

    def __init__(self, sources: Iterable[PluginSource] = ()):
        self._sources: list[PluginSource] = list(sources)
        self._snapshot: Mapping[str, PluginDescriptor] = MappingProxyType({})
        self._rebuild_lock = threading.Lock()
        self.last_rebuild: float | None = None
        self.last_errors: list[LoadResult] = []

    @property
    def sources(self) -> list[PluginSource]:
        return list(self._sources)

    def add_source(self, source: PluginSource) -> None:
        self._sources.append(source)

    def rebuild(self) -> int:
        """Reload every source in order and swap in the new mapping.

        Sources are applied in registration order (local before remote), so
        an alias declared twice ends up pointing at the later plugin.
        Returns the number of aliases in the published snapshot.
        """
        with self._rebuild_lock:
            commands: dict[str, PluginDescriptor] = {}
            errors: list[LoadResult] = []

            for source in self._sources:
                try:
                    results = source.load()
                except Exception:
                    log.error("Plugin source %s failed to load", source, exc_info=True)
                    continue

                for result in results:
                    if not result.ok:
                        errors.append(result)
                        continue
                    plugin = result.plugin
                    for alias in plugin.aliases:
                        key = alias.lower()
                        previous = commands.get(key)
                        if previous is not None and previous is not plugin:
                            log.debug(
                                "Alias '%s' from %s overrides %s",
                                key, plugin.name, previous.name,
                            )
                        commands[key] = plugin

            self._snapshot = MappingProxyType(commands)
            self.last_rebuild = time.time()
            self.last_errors = errors

        if errors:
            log.warning(
                "Failed to load %d plugin(s): %s",
                len(errors),
                "; ".join(f"{r.path.name}: {r.error}" for r in errors),
            )
        log.info("Loaded %d commands from %d plugins", len(commands), len(self.plugins()))
        return len(commands)

    def lookup(self, alias: str) -> PluginDescriptor | None:
        """Case-insensitive lookup; ``None`` when the alias is unknown."""
        if not alias:
            return None
        return self._snapshot.get(alias.lower())

    def snapshot(self) -> Mapping[str, PluginDescriptor]:
        """The currently published read-only mapping."""
        return self._snapshot

    def plugins(self) -> list[PluginDescriptor]:
        """Unique descriptors in the current snapshot, sorted by name."""
        seen: dict[int, PluginDescriptor] = {}
        for plugin in self._snapshot.values():
            seen.setdefault(id(plugin), plugin)
        return sorted(seen.values(), key=lambda p: p.name)

    def __contains__(self, alias: str) -> bool:
        return self.lookup(alias) is not None

    def __len__(self) -> int:
        return len(self._snapshot)

    def __repr__(self) -> str:
        return f"<CommandRegistry [{len(self._snapshot)} commands]>"
