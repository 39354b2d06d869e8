"""Tests for agent registration, persistence and access checks."""

import json
import time

import fakeredis
import pytest
import redis

from botline.agents import AgentRegistry, normalize_ip


@pytest.fixture
def redis_client():
    """Create a fresh fakeredis client for each test."""
    return fakeredis.FakeRedis()


@pytest.fixture
def registry(redis_client):
    """Create a loaded AgentRegistry with fakeredis."""
    registry = AgentRegistry(redis_client)
    registry.load()
    return registry


CALLBACK = "http://127.0.0.1:4000/reply"


class TestRegister:
    """Tests for agent registration."""

    def test_register_new_agent(self, registry):
        """Should create an active agent with timestamps."""
        record = registry.register("claude-cli", CALLBACK, description="CLI agent")

        assert record.name == "claude-cli"
        assert record.callback_url == CALLBACK
        assert record.description == "CLI agent"
        assert record.active is True
        assert record.secret is None
        assert record.allowed_ips == set()
        assert record.created_at is not None
        assert record.last_seen == record.created_at

    def test_register_overwrites(self, registry):
        """Re-registering replaces the record and reactivates it."""
        registry.register("a1", CALLBACK, secret="old")
        registry.set_active("a1", False)

        record = registry.register("a1", "http://127.0.0.1:5000/reply")

        assert record.callback_url == "http://127.0.0.1:5000/reply"
        assert record.secret is None
        assert record.active is True
        assert len(registry.get_all_agents()) == 1

    def test_register_normalizes_allowed_ips(self, registry):
        record = registry.register("a1", CALLBACK, allowed_ips=["::1", " 10.0.0.1 ", ""])
        assert record.allowed_ips == {"127.0.0.1", "10.0.0.1"}

    def test_register_requires_name_and_url(self, registry):
        with pytest.raises(ValueError):
            registry.register("", CALLBACK)
        with pytest.raises(ValueError):
            registry.register("a1", "")


class TestPersistence:
    """Tests for saving to and loading from Redis."""

    def test_load_empty_store(self, redis_client):
        """Loading with nothing stored yields an empty registry."""
        registry = AgentRegistry(redis_client)
        assert registry.load() == 0
        assert registry.loaded is True
        assert registry.get_all_agents() == []

    def test_register_persists_immediately(self, registry, redis_client):
        registry.register("a1", CALLBACK, secret="s", allowed_ips=["127.0.0.1"])

        raw = redis_client.hget(AgentRegistry.AGENTS_KEY, "a1")
        data = json.loads(raw)
        assert data["callbackUrl"] == CALLBACK
        assert data["secret"] == "s"
        assert data["allowedIPs"] == ["127.0.0.1"]
        assert data["active"] is True

    def test_restart_recovers_latest_state(self, registry, redis_client):
        """A fresh registry on the same store sees every mutation."""
        registry.register("a1", CALLBACK, description="one")
        registry.register("a2", CALLBACK)
        registry.set_active("a2", False)
        seen = registry.update_last_seen("a1")
        registry.unregister("a2")

        restarted = AgentRegistry(redis_client)
        assert restarted.load() == 1

        record = restarted.get_agent("a1")
        assert record.description == "one"
        assert record.last_seen == seen
        assert restarted.has_agent("a2") is False

    def test_custom_key(self, redis_client):
        registry = AgentRegistry(redis_client, key="test:agents")
        registry.register("a1", CALLBACK)
        assert redis_client.hexists("test:agents", "a1")
        assert not redis_client.exists(AgentRegistry.AGENTS_KEY)

    def test_unregister_last_agent_clears_store(self, registry, redis_client):
        registry.register("a1", CALLBACK)
        registry.unregister("a1")
        assert redis_client.hgetall(AgentRegistry.AGENTS_KEY) == {}


class FlakyRedis:
    """Wraps a FakeRedis so transactions can be made to fail on demand."""

    def __init__(self, client):
        self.client = client
        self.fail = False

    def hgetall(self, key):
        return self.client.hgetall(key)

    def pipeline(self, transaction=True):
        pipe = self.client.pipeline(transaction=transaction)
        if self.fail:
            def execute():
                raise redis.ConnectionError("connection lost")
            pipe.execute = execute
        return pipe


class TestFailedSave:
    """A failed write leaves memory and Redis in agreement."""

    @pytest.fixture
    def flaky(self, redis_client):
        return FlakyRedis(redis_client)

    @pytest.fixture
    def flaky_registry(self, flaky):
        registry = AgentRegistry(flaky)
        registry.load()
        registry.register("a1", CALLBACK)
        flaky.fail = True
        return registry

    def test_register_not_applied(self, flaky_registry, redis_client):
        with pytest.raises(redis.RedisError):
            flaky_registry.register("a2", CALLBACK)

        assert flaky_registry.has_agent("a2") is False
        assert not redis_client.hexists(AgentRegistry.AGENTS_KEY, "a2")

    def test_unregister_not_applied(self, flaky_registry):
        with pytest.raises(redis.RedisError):
            flaky_registry.unregister("a1")
        assert flaky_registry.has_agent("a1") is True

    def test_set_active_not_applied(self, flaky_registry):
        with pytest.raises(redis.RedisError):
            flaky_registry.set_active("a1", False)
        assert flaky_registry.get_agent("a1").active is True

    def test_last_seen_not_applied(self, flaky_registry):
        before = flaky_registry.get_agent("a1").last_seen
        with pytest.raises(redis.RedisError):
            flaky_registry.update_last_seen("a1")
        assert flaky_registry.get_agent("a1").last_seen == before

    def test_restart_matches_memory(self, flaky_registry, flaky, redis_client):
        with pytest.raises(redis.RedisError):
            flaky_registry.register("a2", CALLBACK)

        restarted = AgentRegistry(redis_client)
        restarted.load()
        assert restarted.names() == flaky_registry.names() == ["a1"]


class TestMutations:
    """Tests for unregister, last_seen and active flag."""

    def test_unregister_unknown_raises(self, registry):
        with pytest.raises(KeyError):
            registry.unregister("ghost")

    def test_update_last_seen(self, registry):
        first = registry.register("a1", CALLBACK).last_seen
        time.sleep(0.01)
        registry.update_last_seen("a1")
        assert registry.get_agent("a1").last_seen > first

    def test_update_last_seen_unknown_raises(self, registry):
        with pytest.raises(KeyError):
            registry.update_last_seen("ghost")

    def test_set_active(self, registry):
        registry.register("a1", CALLBACK)
        registry.register("a2", CALLBACK)
        registry.set_active("a1", False)

        assert registry.get_agent("a1").active is False
        assert [a.name for a in registry.get_active_agents()] == ["a2"]

    def test_set_active_unknown_raises(self, registry):
        with pytest.raises(KeyError):
            registry.set_active("ghost", True)


class TestReads:
    """Tests for read accessors."""

    def test_get_agent_unknown(self, registry):
        assert registry.get_agent("ghost") is None
        assert registry.has_agent("ghost") is False

    def test_returned_records_are_copies(self, registry):
        """Mutating a returned record doesn't change the registry."""
        registry.register("a1", CALLBACK, allowed_ips=["127.0.0.1"])
        record = registry.get_agent("a1")
        record.active = False
        record.allowed_ips.add("10.0.0.5")

        assert registry.get_agent("a1").active is True
        assert registry.is_ip_allowed("a1", "10.0.0.5") is False

    def test_reads_do_not_touch_redis(self, registry, redis_client):
        registry.register("a1", CALLBACK)
        redis_client.flushall()

        assert registry.has_agent("a1") is True
        assert len(registry.get_all_agents()) == 1

    def test_public_dict_hides_secret(self, registry):
        registry.register("a1", CALLBACK, secret="s", description="desc")
        public = registry.get_agent("a1").public_dict()
        assert set(public) == {"name", "active", "lastSeen", "description"}


class TestVerifySecret:
    """Tests for shared-secret checks."""

    def test_no_secret_accepts_anything(self, registry):
        registry.register("a1", CALLBACK)
        for secret in ("", None, "anything"):
            assert registry.verify_secret("a1", secret) is True

    def test_secret_requires_exact_match(self, registry):
        registry.register("a1", CALLBACK, secret="s3cret")
        assert registry.verify_secret("a1", "s3cret") is True
        assert registry.verify_secret("a1", "S3CRET") is False
        assert registry.verify_secret("a1", "") is False
        assert registry.verify_secret("a1", None) is False

    def test_unknown_agent_fails(self, registry):
        assert registry.verify_secret("ghost", "") is False


class TestIsIPAllowed:
    """Tests for the IP allow-list."""

    def test_empty_list_allows_all(self, registry):
        registry.register("a1", CALLBACK)
        for ip in ("127.0.0.1", "10.0.0.5", "::1", "203.0.113.9"):
            assert registry.is_ip_allowed("a1", ip) is True

    def test_only_listed_ips(self, registry):
        registry.register("a1", CALLBACK, allowed_ips=["127.0.0.1", "10.0.0.2"])
        assert registry.is_ip_allowed("a1", "127.0.0.1") is True
        assert registry.is_ip_allowed("a1", "10.0.0.2") is True
        assert registry.is_ip_allowed("a1", "10.0.0.5") is False

    def test_loopback_normalization(self, registry):
        registry.register("a1", CALLBACK, allowed_ips=["127.0.0.1"])
        assert registry.is_ip_allowed("a1", "::1") is True
        assert registry.is_ip_allowed("a1", "::ffff:127.0.0.1") is True

    def test_unknown_agent_fails(self, registry):
        assert registry.is_ip_allowed("ghost", "127.0.0.1") is False

    def test_normalize_ip(self):
        assert normalize_ip("::1") == "127.0.0.1"
        assert normalize_ip("10.0.0.1") == "10.0.0.1"
