"""Built-in middleware for the message bus.

Default order, as installed by install_default_middleware():

1. validation        - rejects empty, non-text or oversized messages
2. logging           - records every message, never fails
3. command detection - marks "/command arg ..." messages
4. access control    - checks agent identity, secret and IP
5. rate limiting     - caps messages per identity per window
"""

import logging

from botline.agents import AgentRegistry
from botline.bus import MessageBus
from botline.errors import AuthError, RateLimitError, ValidationError
from botline.rate_limit import RateLimiter

logger = logging.getLogger("botline.middleware")

MAX_MESSAGE_LENGTH = 10000
COMMAND_SIGIL = "/"


async def validation_middleware(message, context, proceed):
    if not isinstance(message, str):
        raise ValidationError("Invalid message format")
    if not message:
        raise ValidationError("Message cannot be empty")
    if not context.outgoing and len(message) > MAX_MESSAGE_LENGTH:
        raise ValidationError(f"Message too long (max {MAX_MESSAGE_LENGTH} characters)")
    await proceed()


async def logging_middleware(message, context, proceed):
    logger.info(
        "message direction=%s platform=%s user=%s preview=%s",
        "out" if context.outgoing else "in",
        context.platform or context.from_agent or "unknown",
        context.user or "-",
        str(message)[:100],
    )
    await proceed()


async def command_detection_middleware(message, context, proceed):
    if not context.outgoing and message.startswith(COMMAND_SIGIL):
        parts = message.split()
        context.is_command = True
        context.command = parts[0][len(COMMAND_SIGIL):].lower()
        context.args = parts[1:]
        logger.debug("command_detected command=%s args=%s", context.command, context.args)
    await proceed()


def access_control_middleware(registry: AgentRegistry):
    """Build middleware that admits agent messages only from known agents."""

    async def access_control(message, context, proceed):
        if context.type == "agent":
            agent_name = context.from_agent
            if not agent_name or not registry.has_agent(agent_name):
                logger.warning("access_denied reason=unknown_agent agent=%s", agent_name)
                raise AuthError(f"Agent {agent_name} is not registered")

            if not registry.verify_secret(agent_name, context.secret):
                logger.warning("access_denied reason=invalid_secret agent=%s", agent_name)
                raise AuthError("Invalid agent secret", status_code=401)

            if context.ip and not registry.is_ip_allowed(agent_name, context.ip):
                logger.warning("access_denied reason=ip_not_allowed agent=%s ip=%s", agent_name, context.ip)
                raise AuthError("IP address not allowed")

            logger.debug("access_granted agent=%s", agent_name)
        await proceed()

    return access_control


def rate_limit_middleware(limiter: RateLimiter):
    """Build middleware that enforces ``limiter`` per sender identity."""

    async def rate_limit(message, context, proceed):
        if not context.outgoing:
            identity = context.identity
            allowed, _count = limiter.check_and_record(identity)
            if not allowed:
                raise RateLimitError(identity, limiter.max_requests, limiter.window_seconds)
        await proceed()

    return rate_limit


def install_default_middleware(bus: MessageBus, registry: AgentRegistry, limiter: RateLimiter) -> None:
    """Register the built-in middleware on ``bus`` in their fixed order."""
    bus.use(validation_middleware)
    bus.use(logging_middleware)
    bus.use(command_detection_middleware)
    bus.use(access_control_middleware(registry))
    bus.use(rate_limit_middleware(limiter))
