"""Adapter interfaces for chat platforms and agents, plus the built-in agents.

Platform integrations (Slack, Telegram) and AI vendor clients live outside
this package; they only need to satisfy the protocols below.
"""

import logging
from typing import Any, Protocol, runtime_checkable

from botline.agents import AgentRegistry
from botline.communicator import AgentCommunicator
from botline.errors import ConfigError
from botline.models import MiddlewareContext, Reply
from botline.scheduler import KEEPALIVE_MESSAGE, HeartbeatScheduler

logger = logging.getLogger("botline.adapters")


@runtime_checkable
class PlatformAdapter(Protocol):
    """A chat surface messages come from and replies go back to."""

    async def send_message(self, reply: Reply, context: MiddlewareContext) -> None:
        ...


@runtime_checkable
class AgentAdapter(Protocol):
    """Something that answers a message."""

    async def send_message(self, message: str, context: MiddlewareContext) -> Reply:
        ...


def _reply_text(response: Any, default: str) -> str:
    if isinstance(response, dict):
        for key in ("text", "reply", "message"):
            value = response.get(key)
            if isinstance(value, str) and value:
                return value
        return default
    if isinstance(response, str) and response.strip():
        return response
    return default


class CallbackAgent:
    """Forwards chat messages to a registered agent's callback URL.

    Uses the same payload as /reply, so a CLI bridge receives chat messages
    on its stdin. Whatever the callback answers becomes the chat reply.
    """

    def __init__(self, name: str, registry: AgentRegistry, communicator: AgentCommunicator):
        self.name = name
        self.registry = registry
        self.communicator = communicator

    async def send_message(self, message: str, context: MiddlewareContext) -> Reply:
        record = self.registry.get_agent(self.name)
        if record is None:
            raise ConfigError(f"Agent {self.name} not found")
        if not record.active:
            raise ConfigError(f"Agent {self.name} is not active")

        response = await self.communicator.send_reply(
            record.callback_url,
            message,
            username=context.user,
            secret=record.secret,
        )
        return Reply(text=_reply_text(response, f"Message delivered to {self.name}."), agent=self.name)


class HeartbeatAwareAgent:
    """Wraps an agent so real traffic pauses the credit keeper."""

    def __init__(self, agent: AgentAdapter, scheduler: HeartbeatScheduler):
        self.agent = agent
        self.scheduler = scheduler

    async def send_message(self, message: str, context: MiddlewareContext) -> Reply:
        if message != KEEPALIVE_MESSAGE:
            self.scheduler.pause_after_real_message()
        return await self.agent.send_message(message, context)
