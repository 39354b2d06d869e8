"""Audit logging for Botline.

Security-relevant events (registrations, rejected notifications, replies) go
to the Python logger and to a capped Redis list for later inspection.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Optional

import redis

logger = logging.getLogger("botline.audit")

# Redis audit log config
AUDIT_KEY = "botline:audit"
AUDIT_MAX_ENTRIES = 1000
AUDIT_TTL_SECONDS = 7 * 24 * 60 * 60  # 7 days


class AuditLogger:
    """Structured audit logger with Redis storage."""

    def __init__(self, redis_client: redis.Redis):
        self.redis = redis_client

    def _log(self, event: str, **kwargs) -> dict:
        entry = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **kwargs,
        }

        logger.info("audit event=%s %s", event,
                    " ".join(f"{k}={v}" for k, v in kwargs.items()))

        # Best effort: an unreachable Redis must not fail the request
        try:
            pipe = self.redis.pipeline()
            pipe.lpush(AUDIT_KEY, json.dumps(entry))
            pipe.ltrim(AUDIT_KEY, 0, AUDIT_MAX_ENTRIES - 1)
            pipe.expire(AUDIT_KEY, AUDIT_TTL_SECONDS)
            pipe.execute()
        except redis.RedisError as e:
            logger.warning("audit_store_failed event=%s error=%s", event, e)

        return entry

    def agent_register(self, agent: str, ip: str = "") -> dict:
        return self._log("agent_register", agent=agent, ip=ip)

    def agent_unregister(self, agent: str, ip: str = "") -> dict:
        return self._log("agent_unregister", agent=agent, ip=ip)

    def agent_active_set(self, agent: str, active: bool) -> dict:
        return self._log("agent_active_set", agent=agent, active=active)

    def access_denied(self, agent: str, reason: str, ip: str = "") -> dict:
        """Log a rejected notification or registration."""
        return self._log("access_denied", agent=agent, reason=reason, ip=ip)

    def notify(self, agent: str, ip: str = "") -> dict:
        return self._log("notify", agent=agent, ip=ip)

    def reply_sent(self, agent: str, sender: str, status: str) -> dict:
        return self._log("reply_sent", agent=agent, sender=sender, status=status)

    def get_recent(self, limit: int = 100, event_filter: Optional[str] = None) -> list[dict]:
        """Get recent audit entries from Redis, newest first."""
        try:
            raw_entries = self.redis.lrange(AUDIT_KEY, 0, limit * 2 if event_filter else limit - 1)
        except redis.RedisError as e:
            logger.warning("audit_read_failed error=%s", e)
            return []

        entries = []
        for raw in raw_entries:
            if isinstance(raw, bytes):
                raw = raw.decode()
            entry = json.loads(raw)
            if event_filter and entry.get("event") != event_filter:
                continue
            entries.append(entry)
            if len(entries) >= limit:
                break
        return entries
