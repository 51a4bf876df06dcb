"""
Replication Monitor - Exceptions.

============================================================
CUSTOM EXCEPTIONS
============================================================

- ReplicationMonitorError: Base exception
- SourceUnreachableError: Connectivity check failed
- QueryFailedError: One catalog query failed
- SubscriberWriteError: Push to one subscriber failed
- RegistrationError: Subscriber handshake failed
- ConfigurationError: Invalid configuration

============================================================
FAILURE ISOLATION
============================================================

- One bad source must never degrade the others
- One bad subscriber must never stall the others
- Isolable failures are turned into data at their boundary
  (an `error` field or a dropped subscriber)

============================================================
"""

from typing import Any, Dict, List, Optional


class ReplicationMonitorError(Exception):
    """
    Base exception for the replication monitor.

    All monitor exceptions inherit from this class.
    """

    def __init__(
        self,
        message: str,
        source_name: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Initialize exception.

        Args:
            message: Error message
            source_name: Name of the affected data source
            details: Additional error details
        """
        self.message = message
        self.source_name = source_name
        self.details = details or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        """Format the error message."""
        if self.source_name:
            return f"[{self.source_name}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "source_name": self.source_name,
            "details": self.details,
        }


class SourceUnreachableError(ReplicationMonitorError):
    """
    Raised when a data source fails its connectivity check.

    Isolated to that source's status; forces global health to critical.
    """

    def __init__(self, source_name: str, reason: str) -> None:
        super().__init__(
            message=f"connection failed: {reason}",
            source_name=source_name,
            details={"reason": reason},
        )
        self.reason = reason


class QueryFailedError(ReplicationMonitorError):
    """
    Raised when one catalog query fails after connectivity succeeded.

    Best-effort: the affected payload is left empty.
    """

    def __init__(self, source_name: str, query_name: str, reason: str) -> None:
        super().__init__(
            message=f"query '{query_name}' failed: {reason}",
            source_name=source_name,
            details={"query": query_name, "reason": reason},
        )
        self.query_name = query_name


class SubscriberWriteError(ReplicationMonitorError):
    """Raised when a snapshot cannot be written to one subscriber."""

    def __init__(self, subscriber_id: str, reason: str) -> None:
        super().__init__(
            message=f"write to subscriber {subscriber_id} failed: {reason}",
            details={"subscriber_id": subscriber_id, "reason": reason},
        )
        self.subscriber_id = subscriber_id


class RegistrationError(ReplicationMonitorError):
    """Raised when a subscriber handshake fails. No hub state changes."""


class ConfigurationError(ReplicationMonitorError):
    """Raised when the configuration is invalid."""

    def __init__(self, errors: List[str]) -> None:
        super().__init__(
            message=f"Invalid configuration: {'; '.join(errors)}",
            details={"errors": errors},
        )
        self.errors = errors
