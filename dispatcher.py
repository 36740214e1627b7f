"""Inbound message -> command plugin dispatch.

One inbound WhatsApp message produces at most one command invocation:
text is pulled from the message, checked for the command prefix, split
into a command and args, and routed through the registry.  Unknown
commands are dropped silently.  A failing handler is logged and answered
with a short error reply; it never takes the dispatcher down.
"""
from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

import httpx

import config
from plugins.base import CommandRegistry
from plugins.reloader import PluginReloader

log = logging.getLogger(__name__)

RELOADING_TEXT = "♻️ Reloading all plugins..."
RELOADED_TEXT = "✅ Plugins reloaded successfully!"


@dataclass
class InboundMessage:
    """A WhatsApp message as handed to the dispatcher and to plugins."""

    chat_jid: str
    sender_jid: str = ""
    msg_id: str = ""
    sender_name: str = ""
    is_from_me: bool = False
    is_group: bool = False
    message: Any = None   # waE2E.Message payload, None when the event carried none
    raw: Any = None       # original neonize event, used for quoting and media
    received_at: float = field(default_factory=time.time)


@dataclass
class Toolbox:
    """Shared capabilities passed to every plugin."""

    http: httpx.AsyncClient | None = None
    download_media: Callable[[Any], bytes] | None = None
    registry: CommandRegistry | None = None
    prefix: str = "."


def _field_text(message: Any, *path: str) -> str:
    node = message
    for attr in path:
        node = getattr(node, attr, None)
        if node is None:
            return ""
    return node if isinstance(node, str) else ""


def extract_body(message: Any) -> str:
    """First non-empty text among plain, extended, image caption, video caption."""
    if message is None:
        return ""
    for path in (
        ("conversation",),
        ("extendedTextMessage", "text"),
        ("imageMessage", "caption"),
        ("videoMessage", "caption"),
    ):
        text = _field_text(message, *path)
        if text:
            return text
    return ""


def parse_command(body: str, prefix: str = ".") -> tuple[str, list[str]] | None:
    """Split ``.cmd a b`` into ``("cmd", ["a", "b"])``; None if not a command."""
    if not prefix or not body.startswith(prefix):
        return None
    parts = body[len(prefix):].split()
    if not parts:
        return None
    return parts[0].lower(), parts[1:]


class MessageDispatcher:
    """Routes prefixed chat commands to plugin handlers."""

    def __init__(
        self,
        registry: CommandRegistry,
        reloader: PluginReloader,
        session: Any,
        toolbox: Toolbox | None = None,
        prefix: str | None = None,
    ):
        self.registry = registry
        self.reloader = reloader
        self.session = session
        self.prefix = prefix or config.COMMAND_PREFIX
        self.toolbox = toolbox or Toolbox(registry=registry, prefix=self.prefix)
        self.handled = 0
        self.failed = 0

    async def dispatch(self, inbound: InboundMessage) -> str | None:
        """Process one inbound message. Returns the command run, if any."""
        if inbound.message is None:
            return None

        body = extract_body(inbound.message)
        parsed = parse_command(body, self.prefix)
        if parsed is None:
            return None
        cmd, args = parsed

        if cmd == config.RELOAD_COMMAND:
            await self._reload(inbound)
            return cmd

        plugin = self.registry.lookup(cmd)
        if plugin is None:
            log.debug("Unknown command ignored: %s", cmd)
            return None

        log.info("[CMD] Executing: %s (from %s in %s)", cmd, inbound.sender_jid, inbound.chat_jid)
        start = time.monotonic()
        try:
            result = plugin.execute(self.session, inbound, args, self.toolbox)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            self.failed += 1
            log.error("Command %s error", cmd, exc_info=True)
            self._send_error(inbound, exc)
            return cmd

        self.handled += 1
        log.info(
            "Command executed successfully: %s (%.1fms)",
            cmd, (time.monotonic() - start) * 1000,
        )
        return cmd

    async def _reload(self, inbound: InboundMessage) -> None:
        self._send(inbound.chat_jid, RELOADING_TEXT)
        try:
            await self.reloader.reload()
        except Exception:
            log.error("Manual plugin reload failed", exc_info=True)
        self._send(inbound.chat_jid, RELOADED_TEXT)

    def _send(self, chat_jid: str, text: str) -> None:
        try:
            self.session.send_message(chat_jid, text)
        except Exception:
            log.error("Failed to send message to %s", chat_jid, exc_info=True)

    def _send_error(self, inbound: InboundMessage, exc: Exception) -> None:
        try:
            self.session.reply(inbound, f"⚠️ Error: {exc}")
        except Exception:
            log.error("Failed to send error notice to %s", inbound.chat_jid, exc_info=True)
