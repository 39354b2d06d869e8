"""Botline HTTP server: agent notify/reply/registration endpoints.

Components are built once by build_services() and handed to the Starlette
app through ``app.state.services``; nothing here is a module-level singleton.
"""

import asyncio
import logging
import re
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

import redis
import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from botline.adapters import CallbackAgent, HeartbeatAwareAgent
from botline.agents import AgentRegistry
from botline.audit import AuditLogger
from botline.bus import MessageBus
from botline.commands import AGENT_START_EVENT, BuiltinCommands, CommandHandler
from botline.communicator import SECRET_HEADER, AgentCommunicator
from botline.config import Settings
from botline.errors import (
    BotlineError,
    DeliveryError,
    RedisConnectionError,
    agent_inactive,
    agent_not_found,
    invalid_request,
)
from botline.middleware import install_default_middleware
from botline.models import MiddlewareContext
from botline.rate_limit import DEFAULT_REGISTER_LIMIT, RateLimiter
from botline.router import MessageRouter
from botline.scheduler import HeartbeatScheduler

logger = logging.getLogger("botline.server")

NOTIFY_EVENT = "agent:notify"
HEARTBEAT_CONTEXT_USER = "credit-keeper"

# Validation patterns
AGENT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]{0,63}$")
MAX_DESCRIPTION_LENGTH = 500

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}


def create_redis_client(redis_url: str, test_connection: bool = False) -> redis.Redis:
    """Create Redis client with improved error handling.

    Raises:
        RedisConnectionError: If connection test fails with actionable message
    """
    client = redis.from_url(redis_url, decode_responses=False)
    if test_connection:
        try:
            client.ping()
        except redis.RedisError as e:
            raise RedisConnectionError(redis_url, e) from e
    return client


@dataclass
class Services:
    """Every long-lived component, constructed once per process."""
    settings: Settings
    bus: MessageBus
    registry: AgentRegistry
    limiter: RateLimiter
    register_limiter: RateLimiter
    commands: CommandHandler
    router: MessageRouter
    scheduler: HeartbeatScheduler
    communicator: AgentCommunicator
    audit: AuditLogger
    start_tasks: set = field(default_factory=set)

    def attach_agent(self, name: str) -> None:
        """Make a registry agent routable from chat.

        The configured DEFAULT_AGENT always becomes the default once it is
        attached. Until then the first attached agent stands in for it.
        """
        agent = CallbackAgent(name, self.registry, self.communicator)
        self.router.register_agent(name, HeartbeatAwareAgent(agent, self.scheduler))

        configured = self.settings.default_agent
        if configured == name:
            self.router.set_default_agent(name)
        elif self.router.default_agent is None:
            if configured:
                logger.warning("default_agent_unavailable agent=%s using=%s", configured, name)
            self.router.set_default_agent(name)

    def detach_agent(self, name: str) -> None:
        self.router.unregister_agent(name)
        if self.router.default_agent is None:
            remaining = self.router.get_agents()
            if remaining:
                logger.warning("default_agent_removed agent=%s using=%s", name, remaining[0])
                self.router.set_default_agent(remaining[0])

    def load_agents(self) -> int:
        count = self.registry.load()
        for name in self.registry.names():
            self.attach_agent(name)
        if self.router.default_agent is None:
            logger.warning("default_agent_missing reason=no_agents_registered")
        return count

    def start_heartbeat(self) -> None:
        """Hand the keepalive callback to the scheduler.

        Always called at startup, even before any agent is registered, so
        that later registrations and /timer on find a callback in place.
        A heartbeat that fires with no default agent fails and is retried
        on the next interval.
        """
        if self.router.default_agent is None:
            logger.info("credit_keeper_waiting reason=no_default_agent")
        self.scheduler.start(self.send_keepalive)

    async def send_keepalive(self, message: str) -> None:
        agent = self.router.get_agent(self.router.default_agent or "")
        if agent is None:
            raise RuntimeError("No default agent for heartbeat")
        await agent.send_message(
            message, MiddlewareContext(platform=HEARTBEAT_CONTEXT_USER, user=HEARTBEAT_CONTEXT_USER)
        )

    def schedule_start_task(self, event: dict) -> None:
        """Deliver a /start task in the background so the command answers at once."""
        task = asyncio.get_running_loop().create_task(self.deliver_start_task(event))
        self.start_tasks.add(task)
        task.add_done_callback(self.start_tasks.discard)

    async def deliver_start_task(self, event: dict) -> bool:
        """Hand a /start task to the agent's callback. Failures are logged."""
        record = self.registry.get_agent(event["agent"])
        if record is None:
            logger.warning("agent_task_dropped agent=%s reason=unregistered", event["agent"])
            return False
        context = event.get("context") or MiddlewareContext()
        try:
            await self.communicator.send_reply(
                record.callback_url, event["task"], username=context.user, secret=record.secret
            )
        except DeliveryError as e:
            logger.error("agent_task_failed agent=%s error=%s", record.name, e)
            return False
        logger.info("agent_task_delivered agent=%s", record.name)
        return True

    async def aclose(self) -> None:
        self.scheduler.stop()
        pending = list(self.start_tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        await self.communicator.aclose()


def build_services(
    settings: Settings,
    redis_client: redis.Redis,
    communicator: Optional[AgentCommunicator] = None,
) -> Services:
    """Wire the bus, registry, router, commands and scheduler together."""
    bus = MessageBus(settings.buffer_size)
    registry = AgentRegistry(redis_client)
    limiter = RateLimiter(settings.rate_limit_messages, settings.rate_limit_window_seconds)
    install_default_middleware(bus, registry, limiter)

    scheduler = HeartbeatScheduler(
        enabled=settings.credit_keeper_enabled,
        interval_seconds=settings.credit_keeper_interval_minutes * 60,
        cooldown_seconds=settings.credit_keeper_cooldown_minutes * 60,
    )
    commands = CommandHandler()
    BuiltinCommands(bus, registry, scheduler).install(commands)

    services = Services(
        settings=settings,
        bus=bus,
        registry=registry,
        limiter=limiter,
        register_limiter=RateLimiter(*DEFAULT_REGISTER_LIMIT),
        commands=commands,
        router=MessageRouter(bus, commands),
        scheduler=scheduler,
        communicator=communicator or AgentCommunicator(
            max_retries=settings.agent_max_retries,
            retry_delay=settings.agent_retry_delay_seconds,
            timeout=settings.agent_timeout_seconds,
        ),
        audit=AuditLogger(redis_client),
    )
    bus.subscribe(AGENT_START_EVENT, services.schedule_start_task)
    return services


# ============================================================
# Request helpers
# ============================================================

def _get_client_ip(request: Request, behind_proxy: bool) -> str:
    """Get client IP, respecting proxy headers when configured."""
    if behind_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        if forwarded:
            return forwarded.split(",")[0].strip()
        real_ip = request.headers.get("x-real-ip", "")
        if real_ip:
            return real_ip
    return request.client.host if request.client else "unknown"


def SecureJSONResponse(content, status_code=200):
    """JSONResponse with security headers."""
    resp = JSONResponse(content, status_code=status_code)
    for k, v in SECURITY_HEADERS.items():
        resp.headers[k] = v
    return resp


def _error_response(err: BotlineError) -> JSONResponse:
    return SecureJSONResponse(err.to_dict(), status_code=err.status_code)


async def _read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise invalid_request("body", "must be valid JSON") from None
    if not isinstance(body, dict):
        raise invalid_request("body", "must be a JSON object")
    return body


def _require_str(body: dict, field: str) -> str:
    value = body.get(field)
    if not isinstance(value, str) or not value.strip():
        raise invalid_request(field, "is required and must be a non-empty string")
    return value


def _services(request: Request) -> Services:
    return request.app.state.services


# ============================================================
# Endpoints
# ============================================================

async def api_health(request: Request):
    """Report registered platforms and agents."""
    services = _services(request)
    return JSONResponse({
        "status": "ok",
        "platforms": services.router.get_platforms(),
        "agents": services.router.get_agents(),
        "registered_agents": len(services.registry.names()),
    })


async def api_notify(request: Request):
    """Accept a notification from an agent and fan it out to chat platforms.

    Body: {"from": agent name, "message": text}. The X-Agent-Secret header is
    required only for agents registered with a secret.
    """
    services = _services(request)
    registry = services.registry
    ip = _get_client_ip(request, services.settings.behind_proxy)

    try:
        body = await _read_json(request)
        sender = _require_str(body, "from")
        message = _require_str(body, "message")
    except BotlineError as e:
        return _error_response(e)

    secret = request.headers.get(SECRET_HEADER)

    if not registry.has_agent(sender):
        services.audit.access_denied(sender, "unknown_agent", ip)
        return _error_response(agent_not_found(sender, registry.names()))
    if not registry.is_ip_allowed(sender, ip):
        services.audit.access_denied(sender, "ip_not_allowed", ip)
        return SecureJSONResponse({"error": "IP address not allowed"}, status_code=403)
    if not registry.verify_secret(sender, secret):
        services.audit.access_denied(sender, "invalid_secret", ip)
        return SecureJSONResponse({"error": "Invalid agent secret"}, status_code=401)

    try:
        registry.update_last_seen(sender)
    except redis.RedisError as e:
        logger.error("notify_failed agent=%s error=%s", sender, e)
        return SecureJSONResponse({"error": str(e)}, status_code=500)

    context = MiddlewareContext(platform="agent", type="agent", from_agent=sender, ip=ip, secret=secret)
    try:
        await services.bus.publish(NOTIFY_EVENT, message, context)
    except BotlineError as e:
        return _error_response(e)

    await services.router.broadcast(f"🧠 **{sender}**: {message}")
    services.audit.notify(sender, ip)

    return SecureJSONResponse({
        "ok": True,
        "message": "Notification delivered",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })


async def api_reply(request: Request):
    """Deliver a user's reply to an agent's callback URL.

    Body: {"to": agent name, "reply": text, "from": optional sender name}.
    """
    services = _services(request)
    try:
        body = await _read_json(request)
        target = _require_str(body, "to")
        reply = _require_str(body, "reply")
    except BotlineError as e:
        return _error_response(e)
    sender = body.get("from") if isinstance(body.get("from"), str) else None

    record = services.registry.get_agent(target)
    if record is None:
        return _error_response(agent_not_found(target, services.registry.names()))
    if not record.active:
        return _error_response(agent_inactive(target))

    try:
        response = await services.communicator.send_reply(
            record.callback_url, reply, username=sender, secret=record.secret
        )
    except DeliveryError as e:
        services.audit.reply_sent(target, sender or "User", "failed")
        return _error_response(e)

    services.audit.reply_sent(target, sender or "User", "delivered")
    return SecureJSONResponse({
        "ok": True,
        "message": f"Reply sent to {target}",
        "response": response,
    })


async def api_register(request: Request):
    """Register (or re-register) an agent.

    Body: {"name", "callbackUrl", "description"?, "secret"?, "allowedIPs"?}.
    """
    services = _services(request)
    ip = _get_client_ip(request, services.settings.behind_proxy)

    allowed, _count = services.register_limiter.check_and_record(ip)
    if not allowed:
        return SecureJSONResponse({"error": "Rate limit exceeded", "code": "RATE_LIMITED"}, status_code=429)

    try:
        body = await _read_json(request)
        name = _require_str(body, "name")
        callback_url = _require_str(body, "callbackUrl")
        if not AGENT_NAME_PATTERN.match(name):
            raise invalid_request(
                "name", "must be 1-64 characters, alphanumeric with _ . - (no leading special chars)"
            )
        parsed = urlparse(callback_url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise invalid_request("callbackUrl", "must be an http(s) URL")

        description = body.get("description") or ""
        if not isinstance(description, str) or len(description) > MAX_DESCRIPTION_LENGTH:
            raise invalid_request("description", f"must be a string of at most {MAX_DESCRIPTION_LENGTH} characters")
        secret = body.get("secret") or None
        if secret is not None and not isinstance(secret, str):
            raise invalid_request("secret", "must be a string")
        allowed_ips = body.get("allowedIPs") or []
        if not isinstance(allowed_ips, list) or not all(isinstance(i, str) for i in allowed_ips):
            raise invalid_request("allowedIPs", "must be a list of strings")
    except BotlineError as e:
        return _error_response(e)

    try:
        record = services.registry.register(
            name, callback_url, description=description, secret=secret, allowed_ips=allowed_ips
        )
    except redis.RedisError as e:
        logger.error("register_failed agent=%s error=%s", name, e)
        return SecureJSONResponse({"error": str(e)}, status_code=500)

    services.attach_agent(name)
    services.audit.agent_register(name, ip)

    return SecureJSONResponse({
        "ok": True,
        "message": f"Agent {name} registered",
        "agent": {
            "name": record.name,
            "callbackUrl": record.callback_url,
            "active": record.active,
        },
    })


async def api_list_agents(request: Request):
    """List registered agents without their secrets."""
    agents = [a.public_dict() for a in _services(request).registry.get_all_agents()]
    return SecureJSONResponse({"agents": agents, "count": len(agents)})


async def api_unregister(request: Request):
    services = _services(request)
    name = request.path_params["name"]
    try:
        services.registry.unregister(name)
    except KeyError:
        return _error_response(agent_not_found(name, services.registry.names()))
    except redis.RedisError as e:
        logger.error("unregister_failed agent=%s error=%s", name, e)
        return SecureJSONResponse({"error": str(e)}, status_code=500)

    services.detach_agent(name)
    services.audit.agent_unregister(name, _get_client_ip(request, services.settings.behind_proxy))
    return SecureJSONResponse({"ok": True, "message": f"Agent {name} unregistered"})


async def api_set_active(request: Request):
    services = _services(request)
    name = request.path_params["name"]
    try:
        body = await _read_json(request)
    except BotlineError as e:
        return _error_response(e)
    active = body.get("active")
    if not isinstance(active, bool):
        return _error_response(invalid_request("active", "must be true or false"))

    try:
        services.registry.set_active(name, active)
    except KeyError:
        return _error_response(agent_not_found(name, services.registry.names()))
    except redis.RedisError as e:
        logger.error("set_active_failed agent=%s error=%s", name, e)
        return SecureJSONResponse({"error": str(e)}, status_code=500)

    services.audit.agent_active_set(name, active)
    return SecureJSONResponse({"ok": True, "agent": {"name": name, "active": active}})


async def api_audit(request: Request):
    """Query recent audit events, newest first.

    Query params:
        limit: max entries (default 100, capped at 1000)
        event: only return this event type (optional)
    """
    try:
        limit = min(int(request.query_params.get("limit", "100")), 1000)
    except ValueError:
        return _error_response(invalid_request("limit", "must be an integer"))
    if limit < 1:
        return _error_response(invalid_request("limit", "must be at least 1"))
    event_filter = request.query_params.get("event") or None

    entries = _services(request).audit.get_recent(limit=limit, event_filter=event_filter)
    return SecureJSONResponse({"entries": entries, "count": len(entries)})


def create_app(services: Services) -> Starlette:
    """Build the Starlette app serving ``services``."""

    @asynccontextmanager
    async def lifespan(app):
        services.start_heartbeat()
        try:
            yield
        finally:
            await services.aclose()

    app = Starlette(
        routes=[
            Route("/health", api_health, methods=["GET"]),
            Route("/notify", api_notify, methods=["POST"]),
            Route("/reply", api_reply, methods=["POST"]),
            Route("/agents/register", api_register, methods=["POST"]),
            Route("/agents", api_list_agents, methods=["GET"]),
            Route("/agents/{name}", api_unregister, methods=["DELETE"]),
            Route("/agents/{name}/active", api_set_active, methods=["PUT"]),
            Route("/audit", api_audit, methods=["GET"]),
        ],
        lifespan=lifespan,
    )
    app.state.services = services
    return app


def main():
    """Run the Botline server."""
    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    logger.info("Starting Botline on %s:%s", settings.host, settings.port)
    # Redact credentials from Redis URL in logs
    redacted_url = re.sub(r"://[^@]+@", "://***@", settings.redis_url) if "@" in settings.redis_url else settings.redis_url
    logger.info("Redis URL: %s", redacted_url)

    redis_client = create_redis_client(settings.redis_url, test_connection=True)
    logger.info("Redis connection verified")

    services = build_services(settings, redis_client)
    count = services.load_agents()
    logger.info("Agent registry initialized with %d agents", count)
    if not services.router.get_platforms():
        logger.warning("No platform adapters registered; agent notifications will only be buffered.")

    uvicorn.run(create_app(services), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
