"""Tests for message routing between platforms, commands and agents."""

import fakeredis
import pytest

from botline.adapters import CallbackAgent, HeartbeatAwareAgent
from botline.agents import AgentRegistry
from botline.bus import MessageBus
from botline.commands import BuiltinCommands, CommandHandler
from botline.errors import ConfigError, DeliveryError, RateLimitError
from botline.middleware import install_default_middleware
from botline.models import MiddlewareContext, Reply
from botline.rate_limit import RateLimiter
from botline.router import GENERIC_ERROR_TEXT, INCOMING_EVENT, OUTGOING_EVENT, MessageRouter
from botline.scheduler import KEEPALIVE_MESSAGE, HeartbeatScheduler, Phase


class FakePlatform:
    def __init__(self, broadcasts: bool = True, fail: bool = False):
        self.sent: list[tuple[Reply, MiddlewareContext]] = []
        self.broadcasts: list[str] = []
        self.fail = fail
        if not broadcasts:
            self.broadcast_message = None

    async def send_message(self, reply, context):
        self.sent.append((reply, context))

    async def broadcast_message(self, text):
        if self.fail:
            raise RuntimeError("platform down")
        self.broadcasts.append(text)


class EchoAgent:
    def __init__(self, prefix: str = "echo"):
        self.prefix = prefix
        self.received: list[str] = []

    async def send_message(self, message, context):
        self.received.append(message)
        return Reply(text=f"{self.prefix}: {message}")


class FailingAgent:
    async def send_message(self, message, context):
        raise RuntimeError("model crashed")


@pytest.fixture
def registry():
    registry = AgentRegistry(fakeredis.FakeRedis())
    registry.load()
    return registry


@pytest.fixture
def bus(registry):
    bus = MessageBus()
    install_default_middleware(bus, registry, RateLimiter(30, 60))
    return bus


@pytest.fixture
def router(bus, registry):
    commands = CommandHandler()
    BuiltinCommands(bus, registry, HeartbeatScheduler()).install(commands)
    return MessageRouter(bus, commands)


@pytest.fixture
def platform(router):
    platform = FakePlatform()
    router.register_platform("slack", platform)
    return platform


class TestRegistration:
    """Tests for platform and agent bookkeeping."""

    def test_lists(self, router, platform):
        router.register_agent("a1", EchoAgent())
        assert router.get_platforms() == ["slack"]
        assert router.get_agents() == ["a1"]

    def test_default_agent_must_exist(self, router):
        with pytest.raises(ConfigError):
            router.set_default_agent("ghost")

    def test_unregister_clears_default(self, router):
        router.register_agent("a1", EchoAgent())
        router.set_default_agent("a1")

        assert router.unregister_agent("a1") is True
        assert router.default_agent is None
        assert router.unregister_agent("a1") is False


class TestRouteMessage:
    """Tests for route_message."""

    @pytest.mark.asyncio
    async def test_plain_text_goes_to_default_agent(self, router, platform, bus):
        agent = EchoAgent()
        router.register_agent("a1", agent)
        router.set_default_agent("a1")

        reply = await router.route_message("slack", "hello", MiddlewareContext(user="u1"))

        assert reply.text == "echo: hello"
        assert reply.agent == "a1"
        assert agent.received == ["hello"]
        assert platform.sent[0][0] is reply

    @pytest.mark.asyncio
    async def test_context_agent_overrides_default(self, router, platform):
        first, second = EchoAgent("first"), EchoAgent("second")
        router.register_agent("a1", first)
        router.register_agent("a2", second)
        router.set_default_agent("a1")

        reply = await router.route_message("slack", "hi", MiddlewareContext(user="u1", agent="a2"))

        assert reply.text == "second: hi"
        assert first.received == []

    @pytest.mark.asyncio
    async def test_command_answered_by_handler(self, router, platform):
        agent = EchoAgent()
        router.register_agent("a1", agent)
        router.set_default_agent("a1")

        reply = await router.route_message("slack", "/help", MiddlewareContext(user="u1"))

        assert reply.text.startswith("**Botline Commands**")
        assert agent.received == []
        assert len(platform.sent) == 1

    @pytest.mark.asyncio
    async def test_unknown_command_goes_to_agent(self, router, platform):
        agent = EchoAgent()
        router.register_agent("a1", agent)
        router.set_default_agent("a1")

        reply = await router.route_message("slack", "/summarize today", MiddlewareContext(user="u1"))

        assert reply.text == "echo: /summarize today"

    @pytest.mark.asyncio
    async def test_no_agent_raises_config_error(self, router, platform):
        with pytest.raises(ConfigError, match="No agent specified"):
            await router.route_message("slack", "hi", MiddlewareContext(user="u1"))

    @pytest.mark.asyncio
    async def test_missing_named_agent(self, router, platform):
        with pytest.raises(ConfigError, match="ghost not found"):
            await router.route_message("slack", "hi", MiddlewareContext(user="u1", agent="ghost"))

    @pytest.mark.asyncio
    async def test_publishes_incoming_and_outgoing(self, router, platform, bus):
        router.register_agent("a1", EchoAgent())
        router.set_default_agent("a1")
        incoming, outgoing = [], []
        bus.subscribe(INCOMING_EVENT, lambda m, c: incoming.append((m, c.platform)))
        bus.subscribe(OUTGOING_EVENT, lambda m, c: outgoing.append((m, c.agent, c.outgoing)))

        await router.route_message("slack", "hi", MiddlewareContext(user="u1"))

        assert incoming == [("hi", "slack")]
        assert outgoing == [("echo: hi", "a1", True)]

    @pytest.mark.asyncio
    async def test_dropped_message_returns_none(self, router, platform, bus):
        agent = EchoAgent()
        router.register_agent("a1", agent)
        router.set_default_agent("a1")

        async def swallow(message, context, proceed):
            return None

        bus.use(swallow)
        assert await router.route_message("slack", "hi", MiddlewareContext(user="u1")) is None
        assert agent.received == []
        assert platform.sent == []

    @pytest.mark.asyncio
    async def test_middleware_rejection_propagates(self, router, platform):
        router.register_agent("a1", EchoAgent())
        router.set_default_agent("a1")
        for _ in range(30):
            await router.route_message("slack", "hi", MiddlewareContext(user="u1"))

        with pytest.raises(RateLimitError):
            await router.route_message("slack", "hi", MiddlewareContext(user="u1"))

    @pytest.mark.asyncio
    async def test_unregistered_platform_gets_no_delivery(self, router):
        router.register_agent("a1", EchoAgent())
        router.set_default_agent("a1")
        reply = await router.route_message("discord", "hi", MiddlewareContext(user="u1"))
        assert reply.text == "echo: hi"


class TestHandleIncoming:
    """Tests for the adapter-facing entry point."""

    @pytest.mark.asyncio
    async def test_config_error_apology(self, router, platform):
        reply = await router.handle_incoming("slack", "hi", MiddlewareContext(user="u1"))
        assert reply.text == ConfigError.user_message
        assert platform.sent[0][0] is reply

    @pytest.mark.asyncio
    async def test_rate_limit_apology(self, router, platform):
        router.register_agent("a1", EchoAgent())
        router.set_default_agent("a1")
        for _ in range(30):
            await router.handle_incoming("slack", "hi", MiddlewareContext(user="u1"))

        reply = await router.handle_incoming("slack", "hi", MiddlewareContext(user="u1"))
        assert reply.text == "Rate limit exceeded. Please slow down."

    @pytest.mark.asyncio
    async def test_agent_crash_generic_apology(self, router, platform):
        router.register_agent("a1", FailingAgent())
        router.set_default_agent("a1")

        reply = await router.handle_incoming("slack", "hi", MiddlewareContext(user="u1"))

        assert reply.text == GENERIC_ERROR_TEXT

    @pytest.mark.asyncio
    async def test_validation_apology(self, router, platform):
        reply = await router.handle_incoming("slack", "", MiddlewareContext(user="u1"))
        assert reply.text == "Sorry, that message could not be processed."


class TestBroadcast:
    """Tests for broadcast."""

    @pytest.mark.asyncio
    async def test_skips_platforms_without_broadcast(self, router):
        capable = FakePlatform()
        router.register_platform("slack", capable)
        router.register_platform("sms", FakePlatform(broadcasts=False))

        delivered = await router.broadcast("deploy finished")

        assert delivered == ["slack"]
        assert capable.broadcasts == ["deploy finished"]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, router):
        router.register_platform("broken", FakePlatform(fail=True))
        healthy = FakePlatform()
        router.register_platform("slack", healthy)

        assert await router.broadcast("hi") == ["slack"]
        assert healthy.broadcasts == ["hi"]


class FakeCommunicator:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    async def send_reply(self, url, reply, username=None, secret=None):
        self.calls.append((url, reply, username, secret))
        if self.error:
            raise self.error
        return self.response


class TestCallbackAgents:
    """Tests for the registry-backed agent adapters."""

    @pytest.mark.asyncio
    async def test_forwards_to_callback(self, registry):
        registry.register("a1", "http://127.0.0.1:4000/reply", secret="s")
        comm = FakeCommunicator(response={"reply": "on it"})
        agent = CallbackAgent("a1", registry, comm)

        reply = await agent.send_message("build it", MiddlewareContext(user="alice"))

        assert reply.text == "on it"
        assert reply.agent == "a1"
        assert comm.calls == [("http://127.0.0.1:4000/reply", "build it", "alice", "s")]

    @pytest.mark.asyncio
    async def test_empty_response_acknowledged(self, registry):
        registry.register("a1", "http://127.0.0.1:4000/reply")
        agent = CallbackAgent("a1", registry, FakeCommunicator(response={"ok": True}))
        reply = await agent.send_message("hi", MiddlewareContext())
        assert reply.text == "Message delivered to a1."

    @pytest.mark.asyncio
    async def test_inactive_agent_refused(self, registry):
        registry.register("a1", "http://127.0.0.1:4000/reply")
        registry.set_active("a1", False)
        agent = CallbackAgent("a1", registry, FakeCommunicator())
        with pytest.raises(ConfigError, match="not active"):
            await agent.send_message("hi", MiddlewareContext())

    @pytest.mark.asyncio
    async def test_delivery_error_propagates(self, registry):
        registry.register("a1", "http://127.0.0.1:4000/reply")
        error = DeliveryError("http://127.0.0.1:4000/reply", 3, "refused")
        agent = CallbackAgent("a1", registry, FakeCommunicator(error=error))
        with pytest.raises(DeliveryError):
            await agent.send_message("hi", MiddlewareContext())

    @pytest.mark.asyncio
    async def test_real_message_pauses_scheduler(self):
        scheduler = HeartbeatScheduler(enabled=True, interval_seconds=600, cooldown_seconds=600)
        scheduler.start(lambda message: None)
        agent = HeartbeatAwareAgent(EchoAgent(), scheduler)
        try:
            await agent.send_message(KEEPALIVE_MESSAGE, MiddlewareContext())
            assert scheduler.phase is Phase.SCHEDULED

            await agent.send_message("real question", MiddlewareContext())
            assert scheduler.phase is Phase.PAUSED
        finally:
            scheduler.stop()
