import logging
import threading
import time
from typing import Callable
from urllib.parse import quote

import config
from dispatcher import InboundMessage
from neonize import NewClient
from neonize.exc import SendMessageError
from neonize.proto.Neonize_pb2 import Connected, Disconnected, LoggedOut, Message as MessageEv
from neonize.utils.jid import Jid2String, build_jid

log = logging.getLogger(__name__)

_RECONNECT_THROTTLE_SECONDS = 30.0


def qr_image_url(qr_data: str) -> str:
    """Render a pairing code as a hosted QR image URL."""
    return config.QR_IMAGE_URL.format(data=quote(qr_data, safe=""))


class WhatsAppClient:
    """Neonize WhatsApp session wrapper.

    Runs synchronously (call connect() from a thread).
    Fires callbacks from the neonize thread; the caller is responsible
    for thread-safe bridging (e.g. loop.call_soon_threadsafe).
    """

    def __init__(
        self,
        auth_dir,
        message_callback: Callable[[InboundMessage], None] | None = None,
        qr_callback: Callable[[str | None], None] | None = None,
        connected_callback: Callable[[], None] | None = None,
    ):
        auth_dir.mkdir(parents=True, exist_ok=True)
        self.session_db = auth_dir / config.SESSION_DB.name
        self.client = NewClient(str(self.session_db))
        self._message_callback = message_callback
        self._qr_callback = qr_callback
        self._connected_callback = connected_callback
        self.connected = False
        self.logged_out = False
        self.running = True
        self._reconnect_lock = threading.Lock()
        self._last_reconnect_kick = 0.0
        self._setup_events()

    def _setup_events(self):
        @self.client.event.qr
        def on_qr(client: NewClient, data_qr: bytes):
            url = qr_image_url(data_qr.decode() if isinstance(data_qr, bytes) else str(data_qr))
            log.info("Scan your QR here: %s", url)
            self._emit_qr(url)

        @self.client.event(Connected)
        def on_connected(client: NewClient, event: Connected):
            self.connected = True
            log.info("%s connected successfully (device: %s)", config.BOT_NAME, client.me)
            self._emit_qr(None)
            if self._connected_callback:
                try:
                    self._connected_callback()
                except Exception:
                    log.error("Connected callback failed", exc_info=True)

        @self.client.event(Disconnected)
        def on_disconnected(client: NewClient, event: Disconnected):
            self.connected = False
            log.warning("WhatsApp connection closed")

        @self.client.event(LoggedOut)
        def on_logged_out(client: NewClient, event: LoggedOut):
            self._handle_logged_out(event)

        @self.client.event(MessageEv)
        def on_message(client: NewClient, event: MessageEv):
            try:
                self._handle_message_event(event)
            except Exception:
                log.error("Error handling WhatsApp message", exc_info=True)

    def _emit_qr(self, url: str | None):
        if self._qr_callback:
            try:
                self._qr_callback(url)
            except Exception:
                log.error("QR callback failed", exc_info=True)

    def _handle_logged_out(self, event):
        self.connected = False
        self.logged_out = True
        log.error(
            "Logged out (reason: %s). Delete '%s' and restart to pair again.",
            getattr(event, "Reason", "unknown"),
            config.AUTH_DIR,
        )

    def _handle_message_event(self, event: MessageEv):
        source = event.Info.MessageSource
        message = event.Message if event.HasField("Message") else None

        inbound = InboundMessage(
            chat_jid=Jid2String(source.Chat),
            sender_jid=Jid2String(source.Sender),
            msg_id=event.Info.ID,
            sender_name=event.Info.Pushname or "",
            is_from_me=source.IsFromMe,
            is_group=source.IsGroup,
            message=message,
            raw=event,
        )
        log.debug("Message %s from %s in %s", inbound.msg_id, inbound.sender_jid, inbound.chat_jid)

        if self._message_callback:
            self._message_callback(inbound)

    # --- Outbound ---

    @staticmethod
    def _parse_jid(jid_str: str):
        """Convert 'user@server' string back to a neonize JID protobuf."""
        if not isinstance(jid_str, str) or "@" not in jid_str:
            return None
        user, server = jid_str.split("@", 1)
        if not user or not server:
            return None
        return build_jid(user, server)

    def _handle_send_error(self, exc: Exception, chat_jid: str):
        if "websocket not connected" in str(exc).lower():
            self.connected = False
            self._request_reconnect("send failed: websocket not connected")
        log.error("Failed to send message to %s", chat_jid, exc_info=True)

    def send_message(self, chat_jid: str, text: str) -> str | None:
        """Send a text message. Returns the message ID."""
        jid = self._parse_jid(chat_jid)
        if jid is None:
            log.warning("Skipping send to non-WhatsApp target: %s", chat_jid)
            return None
        try:
            resp = self.client.send_message(jid, text)
        except SendMessageError as exc:
            self._handle_send_error(exc, chat_jid)
            return None
        except Exception:
            log.error("Failed to send message to %s", chat_jid, exc_info=True)
            return None
        return resp.ID if resp is not None and resp.ID else None

    def reply(self, inbound: InboundMessage, text: str) -> str | None:
        """Send ``text`` to the originating chat, quoting the inbound message."""
        if inbound.raw is None:
            return self.send_message(inbound.chat_jid, text)
        try:
            resp = self.client.reply_message(text, quoted=inbound.raw)
        except SendMessageError as exc:
            self._handle_send_error(exc, inbound.chat_jid)
            return None
        except Exception:
            log.error("Failed to reply in %s", inbound.chat_jid, exc_info=True)
            return None
        return resp.ID if resp is not None and resp.ID else None

    def download_media(self, message) -> bytes:
        """Download the media attached to a message payload."""
        if isinstance(message, InboundMessage):
            message = message.message
        return self.client.download_any(message)

    # --- Connection lifecycle ---

    def _request_reconnect(self, reason: str):
        """Kick the socket so connect() re-establishes it, at most once per window."""
        with self._reconnect_lock:
            now = time.monotonic()
            if now - self._last_reconnect_kick < _RECONNECT_THROTTLE_SECONDS:
                return
            self._last_reconnect_kick = now
        log.warning("Requesting WhatsApp reconnect: %s", reason)
        try:
            self.client.disconnect()
        except Exception:
            log.debug("Disconnect during reconnect request failed", exc_info=True)

    def connect(self):
        """Blocking. Run in a background thread.

        Re-establishes the session whenever it drops, unless the device
        was logged out or stop() was called.
        """
        while self.running and not self.logged_out:
            log.info("Connecting to WhatsApp...")
            try:
                self.client.connect()
            except Exception:
                log.error("WhatsApp session crashed", exc_info=True)
            self.connected = False

            if not self.running or self.logged_out:
                break
            log.warning("WhatsApp session ended; reconnecting in %.0fs", config.RECONNECT_DELAY)
            time.sleep(config.RECONNECT_DELAY)

        if self.logged_out:
            log.error("Session logged out; not reconnecting.")

    def stop(self):
        self.running = False
        try:
            self.client.disconnect()
        except Exception:
            log.debug("Disconnect on stop failed", exc_info=True)
