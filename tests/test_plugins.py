"""Tests for the command plugin system.

Tests cover:
  - PluginDescriptor validation
  - Plugin discovery and loading from files
  - CommandRegistry rebuild, lookup and duplicate aliases
  - Snapshot publication during rebuild
"""
from __future__ import annotations

import sys
import tempfile
import textwrap
import unittest
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from plugins.base import CommandRegistry, LoadResult, PluginDescriptor, PluginSource
from plugins.loader import (
    LocalPluginSource,
    discover_plugins,
    load_plugin_file,
    load_plugins,
    module_name_for,
)


def _noop(session, message, args, toolbox):
    return None


def write_plugin(directory: Path, filename: str, command, name: str | None = None, reply: str = "ok"):
    lines = []
    if name is not None:
        lines.append(f"name = {name!r}")
    if command is not None:
        lines.append(f"command = {command!r}")
    lines.append(textwrap.dedent(f"""
        async def execute(session, message, args, toolbox):
            return {reply!r}
    """))
    path = directory / filename
    path.write_text("\n".join(lines))
    return path


class StaticSource(PluginSource):
    """A source returning prebuilt descriptors."""

    def __init__(self, plugins, origin="local"):
        self.plugins = plugins
        self.origin = origin
        self.calls = 0

    def load(self):
        self.calls += 1
        return [LoadResult(path=Path(f"{p.name}.py"), plugin=p) for p in self.plugins]


class TestPluginDescriptor(unittest.TestCase):
    def test_requires_aliases(self):
        with self.assertRaises(ValueError):
            PluginDescriptor(name="x", aliases=(), execute=_noop)

    def test_requires_callable(self):
        with self.assertRaises(TypeError):
            PluginDescriptor(name="x", aliases=("x",), execute="nope")

    def test_get_info_and_repr(self):
        plugin = PluginDescriptor(name="echo", aliases=("echo", "say"), execute=_noop, origin="remote")
        info = plugin.get_info()
        self.assertEqual(info["aliases"], ["echo", "say"])
        self.assertEqual(info["origin"], "remote")
        self.assertIn("echo", repr(plugin))

    def test_load_result_ok(self):
        plugin = PluginDescriptor(name="x", aliases=("x",), execute=_noop)
        self.assertTrue(LoadResult(path=Path("x.py"), plugin=plugin).ok)
        self.assertFalse(LoadResult(path=Path("x.py"), error="boom").ok)


class TestPluginDiscovery(unittest.TestCase):
    def test_discover_empty_dir(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            self.assertEqual(discover_plugins(Path(tmpdir)), [])

    def test_discover_skips_private_and_non_python(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            root = Path(tmpdir)
            (root / "b_plugin.py").write_text("")
            (root / "a_plugin.py").write_text("")
            (root / "_private.py").write_text("")
            (root / "notes.txt").write_text("")
            result = discover_plugins(root)
            self.assertEqual([p.name for p in result], ["a_plugin.py", "b_plugin.py"])

    def test_discover_nonexistent_dir(self):
        self.assertEqual(discover_plugins(Path("/nonexistent/path")), [])

    def test_module_name_is_origin_scoped(self):
        path = Path("my-plugin.py")
        self.assertNotEqual(module_name_for(path, "local"), module_name_for(path, "remote"))
        self.assertTrue(module_name_for(path, "local").isidentifier())

    def test_module_names_distinct_after_sanitizing(self):
        self.assertNotEqual(
            module_name_for(Path("a-b.py"), "local"),
            module_name_for(Path("a_b.py"), "local"),
        )


class TestPluginLoading(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.dir = Path(self._tmp.name)

    def test_load_single_command(self):
        path = write_plugin(self.dir, "ping.py", "ping")
        result = load_plugin_file(path)
        self.assertTrue(result.ok)
        self.assertEqual(result.plugin.name, "ping")
        self.assertEqual(result.plugin.aliases, ("ping",))
        self.assertEqual(result.plugin.origin, "local")

    def test_load_command_list_lowercased(self):
        path = write_plugin(self.dir, "echo.py", ["Echo", "SAY", "echo"], name="Echo Plugin")
        result = load_plugin_file(path)
        self.assertEqual(result.plugin.name, "Echo Plugin")
        self.assertEqual(result.plugin.aliases, ("echo", "say"))

    def test_missing_command_falls_back_to_name(self):
        path = write_plugin(self.dir, "Status.py", None)
        result = load_plugin_file(path)
        self.assertEqual(result.plugin.name, "Status")
        self.assertEqual(result.plugin.aliases, ("status",))

    def test_missing_execute_is_error(self):
        path = self.dir / "broken.py"
        path.write_text("command = 'broken'\n")
        result = load_plugin_file(path)
        self.assertFalse(result.ok)
        self.assertIn("execute", result.error)
        self.assertNotIn(module_name_for(path, "local"), sys.modules)

    def test_bad_command_type_is_error(self):
        path = self.dir / "weird.py"
        path.write_text("command = 42\nasync def execute(*a):\n    pass\n")
        result = load_plugin_file(path)
        self.assertFalse(result.ok)
        self.assertIn("TypeError", result.error)

    def test_import_error_does_not_block_batch(self):
        write_plugin(self.dir, "a_good.py", "good")
        (self.dir / "b_bad.py").write_text("raise RuntimeError('plugin exploded')\n")
        (self.dir / "c_syntax.py").write_text("def execute(:\n")
        write_plugin(self.dir, "d_other.py", "other")

        results = load_plugins(self.dir)

        self.assertEqual([r.path.name for r in results], ["a_good.py", "b_bad.py", "c_syntax.py", "d_other.py"])
        self.assertEqual([r.ok for r in results], [True, False, False, True])
        self.assertIn("plugin exploded", results[1].error)

    def test_reload_picks_up_edits(self):
        path = write_plugin(self.dir, "greet.py", "hello")
        first = load_plugin_file(path)
        write_plugin(self.dir, "greet.py", ["hi", "hey"])
        second = load_plugin_file(path)
        self.assertEqual(first.plugin.aliases, ("hello",))
        self.assertEqual(second.plugin.aliases, ("hi", "hey"))

    def test_similar_file_names_both_stay_imported(self):
        first = load_plugin_file(write_plugin(self.dir, "a-b.py", "dash"))
        second = load_plugin_file(write_plugin(self.dir, "a_b.py", "under"))
        self.assertTrue(first.ok and second.ok)
        self.assertIn(module_name_for(first.path, "local"), sys.modules)
        self.assertIn(module_name_for(second.path, "local"), sys.modules)
        self.assertEqual(first.plugin.aliases, ("dash",))

    def test_sync_execute_allowed(self):
        path = self.dir / "sync_cmd.py"
        path.write_text("command = 'sync'\ndef execute(session, message, args, toolbox):\n    return args\n")
        result = load_plugin_file(path)
        self.assertTrue(result.ok)
        self.assertEqual(result.plugin.execute(None, None, ["a"], None), ["a"])


class TestCommandRegistry(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.local_dir = Path(self._tmp.name) / "local"
        self.remote_dir = Path(self._tmp.name) / "remote"
        self.local_dir.mkdir()
        self.remote_dir.mkdir()

    def _registry(self):
        remote = LocalPluginSource(self.remote_dir)
        remote.origin = "remote"
        return CommandRegistry([LocalPluginSource(self.local_dir), remote])

    def test_empty_registry(self):
        registry = CommandRegistry()
        self.assertEqual(len(registry), 0)
        self.assertEqual(registry.rebuild(), 0)
        self.assertIsNone(registry.lookup("ping"))

    def test_one_entry_per_alias(self):
        write_plugin(self.local_dir, "ping.py", "ping")
        write_plugin(self.local_dir, "echo.py", ["echo", "say"])
        registry = self._registry()

        count = registry.rebuild()

        self.assertEqual(count, 3)
        self.assertEqual(set(registry.snapshot()), {"ping", "echo", "say"})
        self.assertIs(registry.lookup("echo"), registry.lookup("say"))
        self.assertEqual(registry.lookup("ping").name, "ping")
        self.assertEqual(len(registry.plugins()), 2)

    def test_lookup_is_case_insensitive(self):
        write_plugin(self.local_dir, "ping.py", "ping")
        registry = self._registry()
        registry.rebuild()
        self.assertIsNotNone(registry.lookup("PING"))
        self.assertIn("Ping", registry)

    def test_lookup_unknown_returns_none(self):
        registry = self._registry()
        registry.rebuild()
        self.assertIsNone(registry.lookup("nothing"))
        self.assertIsNone(registry.lookup(""))
        self.assertNotIn("nothing", registry)

    def test_duplicate_alias_remote_wins(self):
        write_plugin(self.local_dir, "ping.py", "ping", name="local-ping")
        write_plugin(self.remote_dir, "ping.py", "ping", name="remote-ping")
        registry = self._registry()

        registry.rebuild()

        plugin = registry.lookup("ping")
        self.assertEqual(plugin.name, "remote-ping")
        self.assertEqual(plugin.origin, "remote")

    def test_duplicate_alias_later_local_file_wins(self):
        write_plugin(self.local_dir, "a.py", "dup", name="first")
        write_plugin(self.local_dir, "b.py", "dup", name="second")
        registry = self._registry()
        registry.rebuild()
        self.assertEqual(registry.lookup("dup").name, "second")

    def test_failed_plugins_recorded(self):
        write_plugin(self.local_dir, "good.py", "good")
        (self.local_dir / "bad.py").write_text("raise ValueError('nope')\n")
        registry = self._registry()

        self.assertEqual(registry.rebuild(), 1)
        self.assertEqual([r.path.name for r in registry.last_errors], ["bad.py"])
        self.assertIsNotNone(registry.last_rebuild)

    def test_rebuild_drops_removed_plugins(self):
        path = write_plugin(self.local_dir, "gone.py", "gone")
        registry = self._registry()
        registry.rebuild()
        self.assertIn("gone", registry)

        path.unlink()
        registry.rebuild()
        self.assertNotIn("gone", registry)

    def test_rebuild_publishes_new_snapshot(self):
        first = PluginDescriptor(name="one", aliases=("one",), execute=_noop)
        source = StaticSource([first])
        registry = CommandRegistry([source])
        registry.rebuild()
        old = registry.snapshot()

        second = PluginDescriptor(name="two", aliases=("two",), execute=_noop)
        source.plugins = [first, second]
        registry.rebuild()

        self.assertIsNot(registry.snapshot(), old)
        self.assertEqual(set(old), {"one"})
        self.assertEqual(set(registry.snapshot()), {"one", "two"})
        with self.assertRaises(TypeError):
            registry.snapshot()["three"] = second  # type: ignore[index]

    def test_old_snapshot_served_while_rebuilding(self):
        plugin = PluginDescriptor(name="ping", aliases=("ping",), execute=_noop)
        registry = CommandRegistry()
        seen_during_rebuild = []

        class ProbingSource(PluginSource):
            def load(self_inner):
                seen_during_rebuild.append(registry.lookup("ping"))
                return [LoadResult(path=Path("ping.py"), plugin=plugin)]

        registry.add_source(ProbingSource())
        registry.rebuild()
        registry.rebuild()

        # First rebuild starts from empty; the second still sees the old entry.
        self.assertIsNone(seen_during_rebuild[0])
        self.assertIs(seen_during_rebuild[1], plugin)

    def test_source_exception_skips_source(self):
        class ExplodingSource(PluginSource):
            def load(self):
                raise OSError("disk gone")

        plugin = PluginDescriptor(name="ok", aliases=("ok",), execute=_noop)
        registry = CommandRegistry([ExplodingSource(), StaticSource([plugin])])
        self.assertEqual(registry.rebuild(), 1)
        self.assertIn("ok", registry)


if __name__ == "__main__":
    unittest.main()
