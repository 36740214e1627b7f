"""Lists every loaded command, grouped by plugin."""

name = "menu"
command = ["menu", "help"]


async def execute(session, message, args, toolbox):
    registry = toolbox.registry
    if registry is None or not len(registry):
        session.reply(message, "No commands loaded.")
        return

    lines = ["*Commands*", ""]
    for plugin in registry.plugins():
        aliases = ", ".join(f"{toolbox.prefix}{alias}" for alias in plugin.aliases)
        lines.append(f"- {plugin.name}: {aliases}")
    lines.append("")
    lines.append(f"{toolbox.prefix}reload - reload all plugins")
    session.send_message(message.chat_jid, "\n".join(lines))
