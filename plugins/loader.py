"""Plugin discovery and construction.

Scans a directory for Python files and turns each into a
``PluginDescriptor``.  A plugin file looks like::

    name = "echo"                  # optional, defaults to the file stem
    command = ["echo", "say"]      # str or list of str

    async def execute(session, message, args, toolbox):
        ...

Discovery rules:
  1. Only ``.py`` files in the directory (non-recursive), sorted by name
  2. Files starting with ``_`` are skipped
  3. Each file is imported fresh on every load, so edits are picked up
  4. A file that fails to import or has no callable ``execute`` becomes an
     error ``LoadResult``; the rest of the batch still loads
"""
from __future__ import annotations

import hashlib
import importlib.util
import logging
import re
import sys
from pathlib import Path
from typing import Any

import config
from plugins.base import LoadResult, PluginDescriptor, PluginSource

log = logging.getLogger(__name__)

_MODULE_PREFIX = "sourav_plugin"
_UNSAFE_CHARS_RE = re.compile(r"[^0-9a-zA-Z_]")


def discover_plugins(plugin_dir: Path | None = None) -> list[Path]:
    """List plugin files in load order without importing them."""
    target_dir = plugin_dir or config.LOCAL_PLUGIN_DIR
    if not target_dir.exists():
        log.debug("Plugin directory does not exist: %s", target_dir)
        return []
    if not target_dir.is_dir():
        log.warning("Plugin path is not a directory: %s", target_dir)
        return []

    return [
        path
        for path in sorted(target_dir.glob("*.py"))
        if not path.name.startswith("_") and path.is_file()
    ]


def module_name_for(py_file: Path, origin: str) -> str:
    # Path digest: sanitized stems can collide (a-b.py vs a_b.py).
    stem = _UNSAFE_CHARS_RE.sub("_", py_file.stem)
    digest = hashlib.sha1(str(py_file.resolve()).encode()).hexdigest()[:8]
    return f"{_MODULE_PREFIX}_{origin}_{stem}_{digest}"


def _normalize_aliases(command: Any, name: str) -> tuple[str, ...]:
    if command is None:
        raw: list[Any] = []
    elif isinstance(command, str):
        raw = [command]
    elif isinstance(command, (list, tuple)):
        raw = list(command)
    else:
        raise TypeError(f"command must be a string or a list of strings, got {type(command).__name__}")

    aliases: list[str] = []
    for value in raw:
        if not isinstance(value, str):
            raise TypeError(f"command entries must be strings, got {type(value).__name__}")
        alias = value.strip().lower()
        if alias and alias not in aliases:
            aliases.append(alias)

    if not aliases:
        aliases.append(name.lower())
    return tuple(aliases)


def build_descriptor(module: Any, py_file: Path, origin: str) -> PluginDescriptor:
    """Construct a descriptor from an imported plugin module."""
    execute = getattr(module, "execute", None)
    if not callable(execute):
        raise TypeError("plugin has no callable execute()")

    name = getattr(module, "name", None) or py_file.stem
    if not isinstance(name, str):
        raise TypeError(f"name must be a string, got {type(name).__name__}")

    return PluginDescriptor(
        name=name,
        aliases=_normalize_aliases(getattr(module, "command", None), name),
        execute=execute,
        origin=origin,
        path=py_file,
    )


def _import_module(py_file: Path, module_name: str):
    # Drop the previous import so a reload re-executes the file from disk.
    sys.modules.pop(module_name, None)

    spec = importlib.util.spec_from_file_location(module_name, str(py_file))
    if spec is None or spec.loader is None:
        raise ImportError(f"invalid module spec for {py_file.name}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise
    return module


def load_plugin_file(py_file: Path, origin: str = "local") -> LoadResult:
    """Import one plugin file; never raises."""
    module_name = module_name_for(py_file, origin)
    try:
        module = _import_module(py_file, module_name)
        plugin = build_descriptor(module, py_file, origin)
    except Exception as exc:
        sys.modules.pop(module_name, None)
        log.error("Failed to load plugin %s", py_file, exc_info=True)
        return LoadResult(path=py_file, error=f"{type(exc).__name__}: {exc}")

    log.info("Loaded plugin: %s [%s]", plugin.name, ", ".join(plugin.aliases))
    return LoadResult(path=py_file, plugin=plugin)


def load_plugins(plugin_dir: Path | None = None, origin: str = "local") -> list[LoadResult]:
    """Load every plugin file in a directory, in discovery order."""
    return [load_plugin_file(path, origin) for path in discover_plugins(plugin_dir)]


class LocalPluginSource(PluginSource):
    """Plugins shipped in a local directory."""

    origin = "local"

    def __init__(self, plugin_dir: Path | None = None):
        self.plugin_dir = plugin_dir or config.LOCAL_PLUGIN_DIR

    def load(self) -> list[LoadResult]:
        results = load_plugins(self.plugin_dir, self.origin)
        log.debug("Local plugin scan of %s: %d file(s)", self.plugin_dir, len(results))
        return results

    def __repr__(self) -> str:
        return f"<LocalPluginSource {self.plugin_dir}>"
