"""Structured errors for Botline.

Every failure the routing core can raise derives from BotlineError, which
carries a machine-readable code, the HTTP status the server maps it to, and a
short user-facing string that is safe to post back into a chat.
"""

import re
from typing import Optional


# Error codes
class ErrorCodes:
    """Botline error codes."""
    VALIDATION_FAILED = "VALIDATION_FAILED"
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"
    DELIVERY_FAILED = "DELIVERY_FAILED"
    COMMAND_FAILED = "COMMAND_FAILED"
    CONFIG_ERROR = "CONFIG_ERROR"
    AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
    AGENT_INACTIVE = "AGENT_INACTIVE"
    INVALID_REQUEST = "INVALID_REQUEST"
    REDIS_UNAVAILABLE = "REDIS_UNAVAILABLE"


class BotlineError(Exception):
    """Base class for errors surfaced by the routing core."""

    code = "BOTLINE_ERROR"
    status_code = 500
    user_message = "Sorry, something went wrong processing your message."

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "error": self.message,
            "code": self.code,
        }
        if self.suggestion:
            result["suggestion"] = self.suggestion
        return result


class ValidationError(BotlineError):
    """Message is empty, not text, or too long."""

    code = ErrorCodes.VALIDATION_FAILED
    status_code = 400
    user_message = "Sorry, that message could not be processed."


class AuthError(BotlineError):
    """Unregistered agent, bad secret, or disallowed IP."""

    code = ErrorCodes.FORBIDDEN
    status_code = 403
    user_message = "Sorry, you are not allowed to do that."

    def __init__(self, message: str, suggestion: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message, suggestion)
        if status_code is not None:
            self.status_code = status_code
            if status_code == 401:
                self.code = ErrorCodes.UNAUTHORIZED


class RateLimitError(BotlineError):
    """Too many messages from one identity inside the window."""

    code = ErrorCodes.RATE_LIMITED
    status_code = 429
    user_message = "Rate limit exceeded. Please slow down."

    def __init__(self, identity: str, limit: int, window_seconds: float):
        super().__init__(
            f"Rate limit exceeded for '{identity}'.",
            suggestion=f"Maximum {limit} messages per {window_seconds:g} seconds. Wait before sending more.",
        )
        self.identity = identity
        self.limit = limit
        self.window_seconds = window_seconds


class DeliveryError(BotlineError):
    """All delivery attempts to an agent callback failed."""

    code = ErrorCodes.DELIVERY_FAILED
    status_code = 502
    user_message = "Sorry, the agent could not be reached. Please try again later."

    def __init__(self, url: str, attempts: int, reason: str = ""):
        message = f"Failed to communicate with agent after {attempts} attempts"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.url = url
        self.attempts = attempts


class CommandError(BotlineError):
    """A command handler raised."""

    code = ErrorCodes.COMMAND_FAILED
    status_code = 500

    def __init__(self, command: str, original_error: Exception):
        super().__init__(f"Error executing command: {original_error}")
        self.command = command
        self.original_error = original_error

    @property
    def user_message(self) -> str:
        return self.message


class ConfigError(BotlineError):
    """Missing or unknown agent/default agent, or bad settings."""

    code = ErrorCodes.CONFIG_ERROR
    status_code = 500
    user_message = "Sorry, no agent is available to answer right now."


def agent_not_found(name: str, available: list[str]) -> BotlineError:
    """Create error for unknown agent."""
    if available:
        agent_list = ", ".join(available[:5])
        if len(available) > 5:
            agent_list += f" (and {len(available) - 5} more)"
        suggestion = f"Registered agents: {agent_list}"
    else:
        suggestion = "No agents are registered. Register one via POST /agents/register."

    err = BotlineError(f"Agent '{name}' not found.", suggestion=suggestion)
    err.code = ErrorCodes.AGENT_NOT_FOUND
    err.status_code = 404
    return err


def agent_inactive(name: str) -> BotlineError:
    """Create error for an agent that is registered but switched off."""
    err = BotlineError(
        f"Agent '{name}' is not active.",
        suggestion="Re-enable the agent with PUT /agents/{name}/active.",
    )
    err.code = ErrorCodes.AGENT_INACTIVE
    err.status_code = 409
    return err


def invalid_request(field: str, reason: str) -> BotlineError:
    """Create error for invalid request data."""
    err = BotlineError(
        f"Invalid request: {field} - {reason}",
        suggestion="Check the request body against the API documentation.",
    )
    err.code = ErrorCodes.INVALID_REQUEST
    err.status_code = 400
    return err


def redis_unavailable(redis_url: str, original_error: str = "") -> BotlineError:
    """Create error for Redis connection failure."""
    # URL format: redis://host:port or redis://host:port/db
    match = re.search(r"redis://(?:[^@/]+@)?([^/:]+):?(\d+)?", redis_url)
    if match:
        host = match.group(1)
        port = match.group(2) or "6379"
        location = f"{host}:{port}"
    else:
        location = redis_url

    message = f"Cannot connect to Redis at {location}."
    if original_error:
        message = f"{message} Error: {original_error}"

    err = BotlineError(
        message,
        suggestion="Ensure Redis is running and accessible. Check REDIS_URL environment variable.",
    )
    err.code = ErrorCodes.REDIS_UNAVAILABLE
    return err


class RedisConnectionError(Exception):
    """Raised when Redis connection fails with actionable error message."""

    def __init__(self, redis_url: str, original_error: Exception):
        self.redis_url = redis_url
        self.original_error = original_error
        err = redis_unavailable(redis_url, str(original_error))
        super().__init__(f"{err.message} {err.suggestion}")
