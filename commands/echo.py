command = ["echo", "say"]


async def execute(session, message, args, toolbox):
    if not args:
        session.reply(message, f"Usage: {toolbox.prefix}echo <text>")
        return
    session.send_message(message.chat_jid, " ".join(args))
