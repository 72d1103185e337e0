"""
Custom Exception Classes for the Modbus poller

Hierarchical exception structure for error handling across services.
"""


class PollerError(Exception):
    """Base exception for all poller errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(PollerError):
    """Configuration-related errors (always fatal at startup)"""

    def __init__(self, message: str, errors: list[str] | None = None):
        self.errors = list(errors) if errors else [message]
        super().__init__(f"Config Error: {message}", recoverable=False)


class TransportError(PollerError):
    """
    Modbus transport unavailable.

    Connect failures, request failures, timeouts and truncated responses all
    share this kind. `phase` tells them apart in logs only.
    """

    PHASE_CONNECT = "connect"
    PHASE_REQUEST = "request"
    PHASE_RESPONSE = "response"

    def __init__(
        self,
        message: str,
        host: str | None = None,
        port: int | None = None,
        unit_id: int | None = None,
        phase: str = PHASE_REQUEST,
        timed_out: bool = False,
    ):
        self.host = host
        self.port = port
        self.unit_id = unit_id
        self.phase = phase
        self.timed_out = timed_out
        super().__init__(f"Transport unavailable ({phase}): {message}", recoverable=True)

    @property
    def endpoint(self) -> str:
        return f"{self.host}:{self.port}"


class DecodeError(PollerError):
    """Raw register words do not match the declared data type"""

    def __init__(self, message: str):
        super().__init__(f"Decode Error: {message}", recoverable=True)


class SinkError(PollerError):
    """Metrics sink write failed"""

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        status_code: int | None = None,
    ):
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(f"Sink Error: {message}", recoverable=retryable)
