"""Data carried through the relay: per-message context and replies."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class MiddlewareContext:
    """Mutable per-message context threaded through the middleware chain.

    Created when a message arrives, annotated by middleware (command
    detection fills ``is_command``/``command``/``args``) and dropped once
    routing completes.
    """

    platform: Optional[str] = None
    user: Optional[str] = None
    from_agent: Optional[str] = None
    ip: Optional[str] = None
    secret: Optional[str] = None
    type: Optional[str] = None
    agent: Optional[str] = None
    channel: Optional[str] = None
    thread_id: Optional[str] = None
    outgoing: bool = False

    is_command: bool = False
    command: Optional[str] = None
    args: list[str] = field(default_factory=list)

    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def identity(self) -> str:
        """Who sent the message: user, else agent name, else IP."""
        return self.user or self.from_agent or self.ip or "unknown"


@dataclass
class Reply:
    """Text produced by a command handler or an agent."""

    text: str
    agent: Optional[str] = None
