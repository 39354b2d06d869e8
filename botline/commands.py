"""Chat commands (/help, /status, /start ...) and their dispatcher."""

import inspect
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Union

from botline.agents import AgentRegistry
from botline.bus import MessageBus
from botline.errors import CommandError
from botline.models import MiddlewareContext, Reply
from botline.scheduler import HeartbeatScheduler

logger = logging.getLogger("botline.commands")

CommandFunc = Callable[[list[str], MiddlewareContext], Union[Reply, str, Awaitable[Union[Reply, str]]]]

AGENT_START_EVENT = "agent:start"
DEFAULT_BUFFER_COUNT = 5


class CommandHandler:
    """Maps command names to handler functions.

    Handler failures are contained here: the caller always gets a Reply.
    """

    def __init__(self):
        self._commands: dict[str, CommandFunc] = {}

    def register(self, name: str, handler: CommandFunc) -> None:
        self._commands[name] = handler
        logger.debug("command_registered command=/%s", name)

    def has_command(self, name: Optional[str]) -> bool:
        return name in self._commands

    @property
    def names(self) -> list[str]:
        return sorted(self._commands)

    async def execute(self, name: str, args: list[str], context: MiddlewareContext) -> Reply:
        handler = self._commands.get(name)
        if handler is None:
            return Reply(text=f"Unknown command: /{name}\n\nUse /help to see available commands.")

        try:
            result = handler(args, context)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            err = CommandError(name, e)
            logger.error("command_failed command=/%s error=%s", name, e)
            return Reply(text=err.user_message)

        if isinstance(result, Reply):
            return result
        return Reply(text=str(result))


def _fmt_time(value: Optional[datetime]) -> str:
    if value is None:
        return "Never"
    return value.strftime("%Y-%m-%d %H:%M:%S %Z").strip()


HELP_TEXT = """**Botline Commands**

**Available Commands:**
• `/help` - Show this help message
• `/status` - Show system status and uptime
• `/agents` - List registered CLI agents
• `/start <agent> <task>` - Start an agent job
• `/buffer [count]` - Show recent messages
• `/timer <on|off|status>` - Control the credit keeper

**Direct Messages:**
Any message that doesn't start with `/` will be forwarded to the default AI agent.

**Examples:**
`/status` - Check system status
`/agents` - See all registered agents
`/start claude-cli review recent commits` - Start a task
`/timer status` - Check credit keeper status"""


class BuiltinCommands:
    """The commands every Botline instance answers."""

    def __init__(
        self,
        bus: MessageBus,
        registry: AgentRegistry,
        scheduler: HeartbeatScheduler,
        started_at: Optional[float] = None,
    ):
        self.bus = bus
        self.registry = registry
        self.scheduler = scheduler
        self.started_at = started_at if started_at is not None else time.monotonic()

    def install(self, handler: CommandHandler) -> None:
        handler.register("help", self.help)
        handler.register("status", self.status)
        handler.register("agents", self.agents)
        handler.register("start", self.start)
        handler.register("buffer", self.buffer)
        handler.register("timer", self.timer)

    async def help(self, args: list[str], context: MiddlewareContext) -> Reply:
        return Reply(text=HELP_TEXT)

    async def status(self, args: list[str], context: MiddlewareContext) -> Reply:
        uptime = int(time.monotonic() - self.started_at)
        hours, rest = divmod(uptime, 3600)
        minutes, seconds = divmod(rest, 60)

        agents = self.registry.get_all_agents()
        active = [a for a in agents if a.active]
        stats = self.bus.get_buffer_stats()

        lines = [
            "**Botline Status**",
            "",
            "**System:**",
            f"• Uptime: {hours}h {minutes}m {seconds}s",
            "",
            "**Agents:**",
            f"• Total: {len(agents)}",
            f"• Active: {len(active)}",
            f"• Inactive: {len(agents) - len(active)}",
            "",
            "**Message Buffer:**",
            f"• Messages: {stats['size']}/{stats['max_size']}",
        ]
        if stats["oldest"]:
            lines.append(f"• Oldest: {_fmt_time(stats['oldest'])}")
        if stats["newest"]:
            lines.append(f"• Newest: {_fmt_time(stats['newest'])}")
        lines += ["", "**Active Agents:**"]
        if active:
            lines += [f"• {a.name} - Last seen: {_fmt_time(a.last_seen)}" for a in active]
        else:
            lines.append("• None")
        return Reply(text="\n".join(lines))

    async def agents(self, args: list[str], context: MiddlewareContext) -> Reply:
        agents = self.registry.get_all_agents()
        if not agents:
            return Reply(text="**No agents registered**\n\nAgents can register via POST /agents/register.")

        blocks = []
        for a in agents:
            status = "🟢 Active" if a.active else "🔴 Inactive"
            block = [
                f"**{a.name}** - {status}",
                f"  • Last seen: {_fmt_time(a.last_seen)}",
                f"  • Callback: {a.callback_url}",
            ]
            if a.description:
                block.append(f"  • Description: {a.description}")
            blocks.append("\n".join(block))
        return Reply(text=f"**Registered Agents** ({len(agents)})\n\n" + "\n\n".join(blocks))

    async def start(self, args: list[str], context: MiddlewareContext) -> Reply:
        if len(args) < 2:
            return Reply(
                text="**Usage:** `/start <agent> <task>`\n\nExample: `/start claude-cli review recent commits`"
            )

        agent_name = args[0]
        task = " ".join(args[1:])

        agent = self.registry.get_agent(agent_name)
        if agent is None:
            return Reply(text=f"**Agent not found:** {agent_name}\n\nUse `/agents` to see available agents.")
        if not agent.active:
            return Reply(text=f"**Agent inactive:** {agent_name}\n\nThis agent is currently not active.")

        await self.bus.emit(AGENT_START_EVENT, {"agent": agent_name, "task": task, "context": context})
        return Reply(text=f"**Starting task for {agent_name}**\n\nTask: {task}\n\nThe agent will respond when ready.")

    async def buffer(self, args: list[str], context: MiddlewareContext) -> Reply:
        count = DEFAULT_BUFFER_COUNT
        if args:
            try:
                count = int(args[0])
            except ValueError:
                logger.debug("buffer_count_ignored value=%s", args[0])
            if count < 1:
                count = DEFAULT_BUFFER_COUNT
        messages = self.bus.get_recent_messages(count)
        if not messages:
            return Reply(text="**Message buffer is empty**")

        lines = [f"**Recent Messages** ({len(messages)})", ""]
        for i, entry in enumerate(messages, 1):
            preview = entry.message[:50] + ("..." if len(entry.message) > 50 else "")
            lines.append(f"{i}. [{entry.timestamp.strftime('%H:%M:%S')}] {entry.event}: {preview}")
        return Reply(text="\n".join(lines))

    async def timer(self, args: list[str], context: MiddlewareContext) -> Reply:
        if not args:
            return Reply(
                text="**Usage:** `/timer <on|off|status>`\n\n"
                     "• `/timer on` - Enable the credit keeper\n"
                     "• `/timer off` - Disable the credit keeper\n"
                     "• `/timer status` - Show timer status"
            )

        action = args[0].lower()
        if action in ("on", "enable"):
            self.scheduler.enable()
            return Reply(text="**Credit Keeper Enabled**\n\nPeriodic heartbeat messages will keep the agent's credit cycle running.")
        if action in ("off", "disable"):
            self.scheduler.disable()
            return Reply(text="**Credit Keeper Disabled**\n\nHeartbeat messages have been stopped.")
        if action == "status":
            return Reply(text=self._timer_status_text(self.scheduler.get_status()))
        return Reply(text=f"**Unknown action:** {action}\n\nUse `/timer on`, `/timer off`, or `/timer status`")

    @staticmethod
    def _timer_status_text(status: dict[str, Any]) -> str:
        next_beat = _fmt_time(status["next_heartbeat"]) if status["next_heartbeat"] else "Not scheduled"
        return "\n".join([
            "**Credit Keeper Status**",
            "",
            f"• **Enabled:** {'✅ Yes' if status['enabled'] else '❌ No'}",
            f"• **Running:** {'✅ Yes' if status['running'] else '❌ No'}",
            f"• **Paused:** {'⏸️ Yes (after real message)' if status['paused'] else '▶️ No'}",
            f"• **Next Heartbeat:** {next_beat}",
            f"• **Interval:** {status['interval_minutes']:g} minutes",
            f"• **Cooldown:** {status['cooldown_minutes']:g} minutes",
        ])
