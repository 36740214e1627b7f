import asyncio
import logging
import signal
import sys
import threading

import httpx
import uvicorn

import config
from dispatcher import InboundMessage, MessageDispatcher, Toolbox
from plugins import (
    CommandRegistry,
    GitRemoteSource,
    HotReloadScheduler,
    LocalPluginSource,
    PluginReloader,
    RemotePluginSource,
)
from web import QRState, create_app
from whatsapp import WhatsAppClient

log = logging.getLogger("sourav")


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
def setup_logging():
    config.LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.DEBUG if config.DEBUG_MODE else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(config.LOG_DIR / "bot.log"),
        ],
    )
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Process-level error handlers (log, never exit)
# ---------------------------------------------------------------------------
def _log_uncaught(exc_type, exc, tb):
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc, tb)
        return
    log.critical("Uncaught exception", exc_info=(exc_type, exc, tb))


def _log_uncaught_thread(args: threading.ExceptHookArgs):
    if args.exc_type is SystemExit:
        return
    name = args.thread.name if args.thread else "?"
    log.critical(
        "Uncaught exception in thread %s", name,
        exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
    )


def _loop_exception_handler(loop: asyncio.AbstractEventLoop, context: dict):
    exc = context.get("exception")
    if exc is not None:
        log.error("Unhandled error in event loop: %s", context.get("message"), exc_info=exc)
    else:
        log.error("Unhandled event loop error: %s", context.get("message"))


def install_crash_handlers():
    sys.excepthook = _log_uncaught
    threading.excepthook = _log_uncaught_thread


# ---------------------------------------------------------------------------
# Bot core
# ---------------------------------------------------------------------------
class Bot:
    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.loop: asyncio.AbstractEventLoop | None = None
        self.qr = QRState()
        self.remote = RemotePluginSource(GitRemoteSource())
        self.registry = CommandRegistry([LocalPluginSource(), self.remote])
        self.reloader = PluginReloader(self.registry, self.remote)
        self.scheduler = HotReloadScheduler(self.reloader)
        self.wa: WhatsAppClient | None = None
        self.dispatcher: MessageDispatcher | None = None
        self.http: httpx.AsyncClient | None = None
        self.web_server: uvicorn.Server | None = None
        self.running = True
        self._tasks: set[asyncio.Task] = set()

    # --- WhatsApp callbacks (run on neonize thread) ---

    def _on_whatsapp_message(self, inbound: InboundMessage):
        """Thread-safe bridge: push message to the async queue."""
        if self.loop:
            self.loop.call_soon_threadsafe(self.queue.put_nowait, inbound)

    def _on_connected(self):
        if self.loop:
            self.loop.call_soon_threadsafe(self._handle_connected)

    # --- Loop-side handlers ---

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _handle_connected(self):
        if self.scheduler.start():
            return
        # Reconnected after a drop: refresh plugins unless a reload is running.
        self._spawn(self.reloader.reload(wait=False))

    async def _dispatch(self, inbound: InboundMessage):
        try:
            await self.dispatcher.dispatch(inbound)
        except Exception:
            log.error("Error dispatching message in %s", inbound.chat_jid, exc_info=True)

    async def _heartbeat(self, interval: float | None = None):
        interval = interval or config.HEARTBEAT_INTERVAL
        while self.running:
            await asyncio.sleep(interval)
            log.info("💓 Heartbeat: %s still running...", config.BOT_NAME)

    async def _serve_web(self):
        server_config = uvicorn.Config(
            create_app(self),
            host=config.WEB_HOST,
            port=config.PORT,
            log_level="debug" if config.DEBUG_MODE else "warning",
        )
        self.web_server = uvicorn.Server(server_config)
        log.info("Keep-alive server running on port %d", config.PORT)
        try:
            await self.web_server.serve()
        except SystemExit:
            # uvicorn exits on bind failure; the bot keeps running without it.
            log.error("Status server on port %d failed to start", config.PORT)

    # --- Main loop ---

    async def run(self):
        self.loop = asyncio.get_running_loop()
        self.loop.set_exception_handler(_loop_exception_handler)

        log.info("%s starting up", config.BOT_NAME)
        await self.reloader.reload()

        self.http = httpx.AsyncClient(timeout=config.HTTP_TIMEOUT, follow_redirects=True)
        self.wa = WhatsAppClient(
            config.AUTH_DIR,
            message_callback=self._on_whatsapp_message,
            qr_callback=self.qr.set,
            connected_callback=self._on_connected,
        )
        self.dispatcher = MessageDispatcher(
            self.registry,
            self.reloader,
            self.wa,
            Toolbox(
                http=self.http,
                download_media=self.wa.download_media,
                registry=self.registry,
                prefix=config.COMMAND_PREFIX,
            ),
        )

        self._spawn(self._serve_web())
        self._spawn(self._heartbeat())

        # Start WhatsApp in background thread (neonize is synchronous)
        wa_thread = threading.Thread(target=self.wa.connect, daemon=True, name="whatsapp")
        wa_thread.start()
        log.info("Waiting for WhatsApp connection. Open /qr to pair if needed.")

        while self.running:
            try:
                inbound = await asyncio.wait_for(self.queue.get(), timeout=config.POLL_INTERVAL)
                self._spawn(self._dispatch(inbound))
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                log.error("Error in main loop", exc_info=True)

        await self.close()

    async def close(self):
        await self.scheduler.stop()
        if self.wa:
            self.wa.stop()
        if self.web_server:
            self.web_server.should_exit = True
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        if self.http:
            await self.http.aclose()
        log.info("%s shut down.", config.BOT_NAME)

    def shutdown(self, *_args):
        log.info("Shutdown signal received...")
        self.running = False


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------
def main():
    setup_logging()
    install_crash_handlers()

    bot = Bot()

    # Handle graceful shutdown
    signal.signal(signal.SIGINT, bot.shutdown)
    signal.signal(signal.SIGTERM, bot.shutdown)

    try:
        asyncio.run(bot.run())
    except KeyboardInterrupt:
        log.info("Interrupted.")


if __name__ == "__main__":
    main()
