"""
Relay error taxonomy.

ConnectionError-class failures move a session to Error (recoverable by
the next start_recording), protocol errors are logged and skipped, tool
errors become failed outcomes. None of them may escape a session's read
loops.
"""
from typing import Optional, Union


class RelayError(Exception):
    """Base class for relay errors."""


class UpstreamConnectionError(RelayError):
    """Realtime service unreachable, rejected credentials or never became ready."""


class ProtocolError(RelayError):
    """Malformed or unexpected message on either link."""


class ToolError(RelayError):
    """A collaborator call failed."""


class ProjectSelectionError(RelayError):
    """The collaborator rejected a project name."""


class UpstreamErrorCategory:
    """Stable upstream error categories."""

    AUTH_FAILED = "upstream.auth_failed"
    NETWORK_ERROR = "upstream.network_error"
    RATE_LIMITED = "upstream.rate_limited"
    PROTOCOL_ERROR = "upstream.protocol_error"
    UNKNOWN_ERROR = "upstream.unknown_error"


_SECRET_MARKERS = ("secret", "password", "key", "token", "bearer")


class UpstreamErrorClassifier:
    """Maps upstream failures to stable categories and client-facing text."""

    @staticmethod
    def classify(error: Union[BaseException, str, None]) -> str:
        if isinstance(error, ProtocolError):
            return UpstreamErrorCategory.PROTOCOL_ERROR

        error_str = str(error or "").lower()

        if "auth" in error_str or "unauthorized" in error_str or "401" in error_str or "403" in error_str:
            return UpstreamErrorCategory.AUTH_FAILED

        if "rate limit" in error_str or "rate_limit" in error_str or "429" in error_str:
            return UpstreamErrorCategory.RATE_LIMITED

        if (
            "network" in error_str
            or "timeout" in error_str
            or "timed out" in error_str
            or "connection" in error_str
            or "connect" in error_str
        ):
            return UpstreamErrorCategory.NETWORK_ERROR

        return UpstreamErrorCategory.UNKNOWN_ERROR

    @staticmethod
    def redact(detail: Optional[str]) -> str:
        """Hide details that look like they could carry credentials."""
        if not detail:
            return ""
        lowered = detail.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS):
            return "[redacted: potential secret]"
        return detail

    @staticmethod
    def user_message(category: str) -> str:
        messages = {
            UpstreamErrorCategory.AUTH_FAILED: "Voice service rejected the credentials",
            UpstreamErrorCategory.NETWORK_ERROR: "Voice connection failed",
            UpstreamErrorCategory.RATE_LIMITED: "Voice service is busy, please try again shortly",
            UpstreamErrorCategory.PROTOCOL_ERROR: "Unexpected message from voice service",
        }
        return messages.get(category, "Voice service error")
