"""Keep-alive and QR status surface.

FastAPI app with three read-only endpoints:
  GET /        liveness text (for uptime pingers)
  GET /qr      HTML page showing the latest pairing QR
  GET /health  connection + plugin state as JSON
"""

import html
import logging
import threading

from fastapi import FastAPI
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

import config

log = logging.getLogger(__name__)

_QR_PAGE = """<html>
  <head>
    <title>{title} QR</title>
    <style>
      body {{
        display: flex;
        flex-direction: column;
        align-items: center;
        justify-content: center;
        height: 100vh;
        font-family: Arial, sans-serif;
        background: #1a1a1a;
        color: #fff;
      }}
      h2 {{ margin-bottom: 20px; font-size: 2em; }}
      img {{ border: 4px solid #4caf50; border-radius: 12px; }}
    </style>
  </head>
  <body>
    <h2>📱 Scan this QR with WhatsApp</h2>
    <img src="{src}" alt="WhatsApp QR Code">
  </body>
</html>
"""

QR_NOT_READY_TEXT = "⏳ QR not ready yet, please wait..."


class QRState:
    """Latest pairing QR image URL, written from the WhatsApp thread."""

    def __init__(self):
        self._lock = threading.Lock()
        self._url: str | None = None

    def set(self, url: str | None) -> None:
        with self._lock:
            self._url = url

    def get(self) -> str | None:
        with self._lock:
            return self._url


def create_app(bot) -> FastAPI:
    """Create the status app wired to the bot instance."""
    app = FastAPI(title=config.BOT_NAME, docs_url=None, redoc_url=None)

    @app.get("/", response_class=PlainTextResponse)
    async def index():
        return f"✅ {config.BOT_NAME} is running and alive!"

    @app.get("/qr", response_class=HTMLResponse)
    async def qr():
        url = bot.qr.get()
        if not url:
            return HTMLResponse(QR_NOT_READY_TEXT)
        return HTMLResponse(
            _QR_PAGE.format(
                title=html.escape(config.BOT_NAME),
                src=html.escape(url, quote=True),
            )
        )

    @app.get("/health")
    async def health():
        wa = bot.wa
        scheduler = bot.scheduler
        return JSONResponse({
            "connected": bool(wa and wa.connected),
            "logged_out": bool(wa and wa.logged_out),
            "commands": len(bot.registry),
            "plugins": [p.get_info() for p in bot.registry.plugins()],
            "hot_reload": scheduler.last_status if scheduler else "idle",
        })

    return app
