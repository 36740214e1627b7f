"""Command plugin system.

Plugins are plain Python files exporting ``command`` and ``execute``.  They
are loaded from the local ``commands/`` directory and, when
``PLUGIN_REPO`` is set, from the ``plugins/`` directory of a git checkout
that is polled for new commits and hot-reloaded.
"""
from plugins.base import CommandRegistry, LoadResult, PluginDescriptor, PluginSource
from plugins.loader import LocalPluginSource, discover_plugins, load_plugin_file, load_plugins
from plugins.reloader import HotReloadScheduler, PluginReloader
from plugins.remote import GitRemoteSource, RemotePluginSource, RemoteSourceProvider, RemoteSyncError

__all__ = [
    "CommandRegistry",
    "GitRemoteSource",
    "HotReloadScheduler",
    "LoadResult",
    "LocalPluginSource",
    "PluginDescriptor",
    "PluginReloader",
    "PluginSource",
    "RemotePluginSource",
    "RemoteSourceProvider",
    "RemoteSyncError",
    "discover_plugins",
    "load_plugin_file",
    "load_plugins",
]
