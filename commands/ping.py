"""Latency check."""
import time

command = "ping"


async def execute(session, message, args, toolbox):
    elapsed = (time.time() - message.received_at) * 1000
    session.reply(message, f"🏓 Pong! ({elapsed:.0f}ms)")
