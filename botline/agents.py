"""Agent registration and access checks for Botline.

Agent records live in a Redis hash (one JSON document per agent name) and are
mirrored in memory so lookups never touch Redis. Every mutation builds a new
record set, rewrites the whole hash in a single MULTI/EXEC and only then
replaces the in-memory view, so memory never runs ahead of what a restart
would reload.
"""

import hmac
import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Iterable, Optional

import redis

logger = logging.getLogger("botline.agents")

LOOPBACK_ALIASES = {"::1", "::ffff:127.0.0.1"}
LOOPBACK_IPV4 = "127.0.0.1"


def normalize_ip(ip: str) -> str:
    """Map IPv6 loopback forms onto 127.0.0.1."""
    ip = ip.strip()
    if ip in LOOPBACK_ALIASES:
        return LOOPBACK_IPV4
    return ip


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


@dataclass
class AgentRecord:
    """A registered agent."""
    name: str
    callback_url: str
    description: str = ""
    secret: Optional[str] = None
    allowed_ips: set[str] = field(default_factory=set)
    active: bool = True
    created_at: Optional[datetime] = None
    last_seen: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Serialize with the camelCase field names used on the wire."""
        return {
            "name": self.name,
            "callbackUrl": self.callback_url,
            "description": self.description,
            "secret": self.secret,
            "allowedIPs": sorted(self.allowed_ips),
            "active": self.active,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
        }

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "AgentRecord":
        return cls(
            name=name,
            callback_url=data["callbackUrl"],
            description=data.get("description") or "",
            secret=data.get("secret") or None,
            allowed_ips=set(data.get("allowedIPs") or []),
            active=bool(data.get("active", True)),
            created_at=_parse_time(data.get("createdAt")),
            last_seen=_parse_time(data.get("lastSeen")),
        )

    def public_dict(self) -> dict:
        """Summary safe to return to callers (no secret, no allow-list)."""
        return {
            "name": self.name,
            "active": self.active,
            "lastSeen": self.last_seen.isoformat() if self.last_seen else None,
            "description": self.description,
        }


def _copy(record: AgentRecord) -> AgentRecord:
    return replace(record, allowed_ips=set(record.allowed_ips))


class AgentRegistry:
    """Owns agent records and answers identity, secret and IP questions."""

    AGENTS_KEY = "botline:agents"

    def __init__(self, redis_client: redis.Redis, key: Optional[str] = None):
        """Initialize with Redis client.

        Args:
            redis_client: Redis client instance (can be real or fakeredis)
            key: Hash key holding the records (default: botline:agents)
        """
        self.redis = redis_client
        self.key = key or self.AGENTS_KEY
        self._agents: dict[str, AgentRecord] = {}
        self.loaded = False

    # --- Persistence ---

    def load(self) -> int:
        """Load every record from Redis, replacing the in-memory view.

        A missing hash is an empty registry.

        Returns:
            Number of agents loaded
        """
        raw = self.redis.hgetall(self.key)
        agents = {}
        for name, data in raw.items():
            if isinstance(name, bytes):
                name = name.decode()
            if isinstance(data, bytes):
                data = data.decode()
            agents[name] = AgentRecord.from_dict(name, json.loads(data))

        self._agents = agents
        self.loaded = True
        if agents:
            logger.info("agent_registry_loaded count=%d", len(agents))
        else:
            logger.info("agent_registry_empty key=%s", self.key)
        return len(agents)

    def _commit(self, agents: dict[str, AgentRecord]) -> None:
        """Write ``agents`` in one transaction, then make it the live view.

        Raises:
            redis.RedisError: If the write fails; the live view is unchanged
        """
        pipe = self.redis.pipeline(transaction=True)
        pipe.delete(self.key)
        if agents:
            pipe.hset(
                self.key,
                mapping={name: json.dumps(record.to_dict()) for name, record in agents.items()},
            )
        try:
            pipe.execute()
        except redis.RedisError as e:
            logger.error("agent_registry_save_failed error=%s", e)
            raise
        self._agents = agents
        logger.debug("agent_registry_saved count=%d", len(agents))

    def _require(self, name: str) -> AgentRecord:
        record = self._agents.get(name)
        if record is None:
            raise KeyError(f"Agent '{name}' not found")
        return record

    # --- Mutations ---

    def register(
        self,
        name: str,
        callback_url: str,
        description: str = "",
        secret: Optional[str] = None,
        allowed_ips: Optional[Iterable[str]] = None,
    ) -> AgentRecord:
        """Create or overwrite an agent record.

        Args:
            name: Unique agent name
            callback_url: URL the agent receives replies on
            description: Human-readable description
            secret: Shared secret expected in X-Agent-Secret (None = open)
            allowed_ips: Source IPs allowed to notify as this agent (empty = any)

        Returns:
            Copy of the stored record
        """
        if not name:
            raise ValueError("Agent name cannot be empty")
        if not callback_url:
            raise ValueError("callback_url cannot be empty")

        now = datetime.now(timezone.utc)
        record = AgentRecord(
            name=name,
            callback_url=callback_url,
            description=description or "",
            secret=secret or None,
            allowed_ips={normalize_ip(ip) for ip in (allowed_ips or []) if ip and ip.strip()},
            active=True,
            created_at=now,
            last_seen=now,
        )
        replaced = name in self._agents
        self._commit({**self._agents, name: record})

        logger.info(
            "agent_registered agent=%s callback=%s replaced=%s",
            name, callback_url, replaced,
        )
        return _copy(record)

    def unregister(self, name: str) -> None:
        """Remove an agent.

        Raises:
            KeyError: If agent not found
            redis.RedisError: If the change could not be persisted
        """
        self._require(name)
        self._commit({n: r for n, r in self._agents.items() if n != name})
        logger.info("agent_unregistered agent=%s", name)

    def _update(self, name: str, **changes) -> AgentRecord:
        record = _copy(self._require(name))
        for attr, value in changes.items():
            setattr(record, attr, value)
        self._commit({**self._agents, name: record})
        return record

    def update_last_seen(self, name: str) -> datetime:
        """Stamp the agent as seen now.

        Raises:
            KeyError: If agent not found
            redis.RedisError: If the change could not be persisted
        """
        record = self._update(name, last_seen=datetime.now(timezone.utc))
        logger.debug("agent_seen agent=%s", name)
        return record.last_seen

    def set_active(self, name: str, active: bool) -> None:
        """Switch an agent on or off.

        Raises:
            KeyError: If agent not found
            redis.RedisError: If the change could not be persisted
        """
        record = self._update(name, active=bool(active))
        logger.info("agent_active_set agent=%s active=%s", name, record.active)

    # --- Reads ---

    def get_agent(self, name: str) -> Optional[AgentRecord]:
        record = self._agents.get(name)
        return _copy(record) if record else None

    def get_all_agents(self) -> list[AgentRecord]:
        return [_copy(r) for r in self._agents.values()]

    def get_active_agents(self) -> list[AgentRecord]:
        return [_copy(r) for r in self._agents.values() if r.active]

    def has_agent(self, name: str) -> bool:
        return name in self._agents

    def names(self) -> list[str]:
        return list(self._agents)

    # --- Access checks ---

    def verify_secret(self, name: str, secret: Optional[str]) -> bool:
        """Check a presented secret against the agent's configured one.

        Agents without a secret accept anything. Unknown agents never pass.
        """
        record = self._agents.get(name)
        if record is None:
            return False
        if not record.secret:
            return True
        return hmac.compare_digest((secret or "").encode(), record.secret.encode())

    def is_ip_allowed(self, name: str, ip: str) -> bool:
        """Check a source IP against the agent's allow-list.

        An empty allow-list admits every IP. Unknown agents never pass.
        """
        record = self._agents.get(name)
        if record is None:
            return False
        if not record.allowed_ips:
            return True
        return normalize_ip(ip) in record.allowed_ips
