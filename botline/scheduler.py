"""Credit keeper: periodic keepalive heartbeats with pause-on-activity.

Some agent services replenish usage credit on a cycle that only starts when a
message is sent. The scheduler keeps that cycle running by sending a synthetic
keepalive every ``interval`` while nobody is talking, and backs off for
``cooldown`` whenever a real message goes out.

States::

    STOPPED --start/enable--> SCHEDULED --timer--> (heartbeat) --> SCHEDULED
    SCHEDULED --pause_after_real_message--> PAUSED --cooldown--> SCHEDULED
    any --disable--> STOPPED

Exactly one timer handle is armed per phase. Every handle carries a token and
a firing handle that is no longer the armed one does nothing, so a cancel that
races a fire is harmless.
"""

import asyncio
import enum
import inspect
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger("botline.scheduler")

KEEPALIVE_MESSAGE = "hello world (keepalive)"

HeartbeatCallback = Callable[[str], Union[Any, Awaitable[Any]]]


class Phase(enum.Enum):
    STOPPED = "stopped"
    SCHEDULED = "scheduled"
    PAUSED = "paused"


class HeartbeatScheduler:
    """Timer-driven keepalive sender."""

    def __init__(
        self,
        enabled: bool = False,
        interval_seconds: float = 3600.0,
        cooldown_seconds: float = 3600.0,
    ):
        self.enabled = enabled
        self.interval_seconds = interval_seconds
        self.cooldown_seconds = cooldown_seconds
        self.phase = Phase.STOPPED
        self.next_heartbeat: Optional[datetime] = None

        self._callback: Optional[HeartbeatCallback] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pause_timer: Optional[asyncio.TimerHandle] = None
        self._token: Optional[object] = None
        self._beat_task: Optional[asyncio.Task] = None

    # --- Lifecycle ---

    def start(self, callback: HeartbeatCallback) -> None:
        """Remember ``callback`` and, if enabled, arm the first heartbeat."""
        if callback is None:
            raise ValueError("callback is required")
        self._callback = callback

        if not self.enabled:
            logger.info("credit_keeper_disabled")
            return
        if self.phase is not Phase.STOPPED:
            logger.warning("credit_keeper_already_running phase=%s", self.phase.value)
            return

        logger.info(
            "credit_keeper_starting interval=%gmin cooldown=%gmin",
            self.interval_seconds / 60, self.cooldown_seconds / 60,
        )
        self._schedule_next()

    def stop(self) -> None:
        """Cancel every pending timer. The enabled flag is left alone."""
        had_timers = self.has_pending_timer
        self._cancel_timers()
        self.phase = Phase.STOPPED
        self.next_heartbeat = None
        if had_timers:
            logger.info("credit_keeper_stopped")

    def enable(self) -> None:
        if self.enabled:
            logger.info("credit_keeper_already_enabled")
            return
        self.enabled = True
        logger.info("credit_keeper_enabled")
        if self._callback is not None:
            self._schedule_next()

    def disable(self) -> None:
        was_enabled = self.enabled
        self.enabled = False
        self.stop()
        if was_enabled:
            logger.info("credit_keeper_disabled")

    def pause_after_real_message(self) -> None:
        """Hold heartbeats for the cooldown after a real message went out."""
        if not self.enabled or self.phase is not Phase.SCHEDULED:
            return

        logger.info("credit_keeper_pausing cooldown=%gmin", self.cooldown_seconds / 60)
        self._cancel_timers()
        token = self._token = object()
        self.phase = Phase.PAUSED
        self.next_heartbeat = datetime.now(timezone.utc) + timedelta(seconds=self.cooldown_seconds)
        self._pause_timer = asyncio.get_running_loop().call_later(
            self.cooldown_seconds, self._on_cooldown, token
        )

    # --- Timers ---

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None or self._pause_timer is not None

    def _cancel_timers(self) -> None:
        self._token = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._pause_timer is not None:
            self._pause_timer.cancel()
            self._pause_timer = None

    def _schedule_next(self) -> None:
        if not self.enabled:
            return
        self._cancel_timers()
        token = self._token = object()
        self.phase = Phase.SCHEDULED
        self.next_heartbeat = datetime.now(timezone.utc) + timedelta(seconds=self.interval_seconds)
        self._timer = asyncio.get_running_loop().call_later(
            self.interval_seconds, self._on_timer, token
        )
        logger.debug("heartbeat_scheduled at=%s", self.next_heartbeat.isoformat())

    def _on_timer(self, token: object) -> None:
        if token is not self._token or self.phase is not Phase.SCHEDULED:
            return
        self._timer = None
        self._beat_task = asyncio.get_running_loop().create_task(self._beat())

    def _on_cooldown(self, token: object) -> None:
        if token is not self._token or self.phase is not Phase.PAUSED:
            return
        self._pause_timer = None
        logger.info("credit_keeper_resuming")
        self._schedule_next()

    async def _beat(self) -> None:
        try:
            await self.send_heartbeat()
        finally:
            # Re-arm even after a failed heartbeat, unless paused or stopped meanwhile
            if self.enabled and self.phase is Phase.SCHEDULED and self._timer is None:
                self._schedule_next()

    async def send_heartbeat(self) -> bool:
        """Invoke the callback with the keepalive message. Failures are logged."""
        if self._callback is None:
            return False
        started = time.monotonic()
        try:
            logger.info("heartbeat_sending")
            result = self._callback(KEEPALIVE_MESSAGE)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("heartbeat_failed error=%s", e)
            return False
        logger.info("heartbeat_ok elapsed_ms=%d", (time.monotonic() - started) * 1000)
        return True

    # --- Introspection ---

    def get_status(self) -> dict:
        return {
            "enabled": self.enabled,
            "running": self.has_pending_timer or self.phase is Phase.PAUSED,
            "paused": self.phase is Phase.PAUSED,
            "phase": self.phase.value,
            "next_heartbeat": self.next_heartbeat,
            "interval_minutes": self.interval_seconds / 60,
            "cooldown_minutes": self.cooldown_seconds / 60,
        }
