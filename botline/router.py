"""Routes chat messages to commands or agents and delivers the result."""

import logging
from typing import Optional

from botline.adapters import AgentAdapter, PlatformAdapter
from botline.bus import MessageBus
from botline.commands import CommandHandler
from botline.errors import BotlineError, ConfigError
from botline.models import MiddlewareContext, Reply

logger = logging.getLogger("botline.router")

INCOMING_EVENT = "message:incoming"
OUTGOING_EVENT = "message:outgoing"

GENERIC_ERROR_TEXT = "Sorry, I encountered an error processing your message. Please try again."


class MessageRouter:
    """Top-level orchestrator between platform adapters and agents."""

    def __init__(self, bus: MessageBus, commands: CommandHandler):
        self.bus = bus
        self.commands = commands
        self._platforms: dict[str, PlatformAdapter] = {}
        self._agents: dict[str, AgentAdapter] = {}
        self.default_agent: Optional[str] = None

    # --- Registration ---

    def register_platform(self, name: str, adapter: PlatformAdapter) -> None:
        self._platforms[name] = adapter
        logger.info("platform_registered platform=%s", name)

    def register_agent(self, name: str, adapter: AgentAdapter) -> None:
        self._agents[name] = adapter
        logger.info("agent_adapter_registered agent=%s", name)

    def unregister_agent(self, name: str) -> bool:
        if name not in self._agents:
            return False
        del self._agents[name]
        if self.default_agent == name:
            self.default_agent = None
            logger.warning("default_agent_cleared agent=%s", name)
        return True

    def set_default_agent(self, name: str) -> None:
        if name not in self._agents:
            raise ConfigError(f"Agent {name} not registered")
        self.default_agent = name
        logger.info("default_agent_set agent=%s", name)

    def get_platforms(self) -> list[str]:
        return list(self._platforms)

    def get_agents(self) -> list[str]:
        return list(self._agents)

    def get_agent(self, name: str) -> Optional[AgentAdapter]:
        return self._agents.get(name)

    # --- Routing ---

    def _resolve_agent(self, context: MiddlewareContext) -> tuple[str, AgentAdapter]:
        name = context.agent or self.default_agent
        if not name:
            raise ConfigError("No agent specified and no default agent set")
        agent = self._agents.get(name)
        if agent is None:
            raise ConfigError(f"Agent {name} not found")
        return name, agent

    async def _deliver(self, platform_name: str, reply: Reply, context: MiddlewareContext) -> None:
        platform = self._platforms.get(platform_name)
        if platform is not None:
            await platform.send_message(reply, context)

    async def route_message(
        self,
        platform_name: str,
        message: str,
        context: Optional[MiddlewareContext] = None,
    ) -> Optional[Reply]:
        """Run a platform message through the bus and answer it.

        Returns:
            The reply delivered to the platform, or None if a middleware
            dropped the message.

        Raises:
            BotlineError: Middleware rejections and ConfigError when no agent
                can take the message. Agent adapter errors propagate as-is.
        """
        if context is None:
            context = MiddlewareContext()
        if context.platform is None:
            context.platform = platform_name
        logger.debug("routing platform=%s preview=%s", platform_name, str(message)[:50])

        try:
            if not await self.bus.publish(INCOMING_EVENT, message, context):
                return None

            if context.is_command and self.commands.has_command(context.command):
                reply = await self.commands.execute(context.command, context.args, context)
                await self._deliver(platform_name, reply, context)
                return reply

            agent_name, agent = self._resolve_agent(context)
            logger.info("forwarding platform=%s agent=%s", platform_name, agent_name)
            reply = await agent.send_message(message, context)
            if reply.agent is None:
                reply.agent = agent_name

            outgoing = MiddlewareContext(
                platform=platform_name,
                user=context.user,
                agent=agent_name,
                channel=context.channel,
                thread_id=context.thread_id,
                outgoing=True,
            )
            await self.bus.publish(OUTGOING_EVENT, reply.text, outgoing)
            await self._deliver(platform_name, reply, context)
            return reply
        except Exception as e:
            logger.error("routing_failed platform=%s error=%s", platform_name, e)
            raise

    async def handle_incoming(
        self,
        platform_name: str,
        message: str,
        context: Optional[MiddlewareContext] = None,
    ) -> Optional[Reply]:
        """Entry point for platform adapters: never raises into the adapter.

        On failure the platform gets a short apology instead of the error.
        """
        if context is None:
            context = MiddlewareContext()
        try:
            return await self.route_message(platform_name, message, context)
        except BotlineError as e:
            reply = Reply(text=e.user_message)
        except Exception:
            logger.exception("unexpected_routing_error platform=%s", platform_name)
            reply = Reply(text=GENERIC_ERROR_TEXT)

        try:
            await self._deliver(platform_name, reply, context)
        except Exception as e:
            logger.error("error_reply_failed platform=%s error=%s", platform_name, e)
        return reply

    async def broadcast(self, text: str) -> list[str]:
        """Send ``text`` to every platform that supports broadcasts.

        Returns:
            Names of the platforms that accepted the message
        """
        delivered = []
        for name, platform in self._platforms.items():
            broadcast = getattr(platform, "broadcast_message", None)
            if broadcast is None:
                continue
            try:
                await broadcast(text)
            except Exception as e:
                logger.error("broadcast_failed platform=%s error=%s", name, e)
                continue
            delivered.append(name)
        return delivered
