"""Client configuration.

`Settings` gathers environment variables (prefixed with UACORE_) in one
place. The client core never reads it directly: callers build a
`ClientConfig` (optionally via `ClientConfig.from_settings`) and pass it to
the objects they construct.

All durations are milliseconds, matching OPC UA conventions.
"""

from dataclasses import dataclass, field
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from uacore.core.errors import InvalidParameter


class Settings(BaseSettings):
    """Settings loaded from environment variables.

    All env vars are prefixed with UACORE_ (case-insensitive).
    """

    model_config = SettingsConfigDict(
        env_prefix="UACORE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Logging
    log_format: str = "console"
    log_level: str = "INFO"

    # Connection
    endpoint_url: str = "opc.tcp://localhost:4840"
    endpoint_must_exist: bool = True
    max_retry: int = 3
    initial_delay: float = 1000.0
    max_delay: float = 20000.0
    connect_timeout: float = 10000.0

    # Requests and sessions
    request_timeout: float = 10000.0
    session_timeout: float = 60000.0

    # Listener delivery
    dispatch_queue_size: int = 1000


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings singleton."""
    return Settings()


@dataclass(frozen=True)
class ConnectionStrategy:
    """Backoff policy for connection attempts.

    Attributes:
        max_retry: Number of attempts before giving up (0 = retry forever)
        initial_delay: Delay after the first failed attempt (ms)
        max_delay: Upper bound for any single delay (ms)
    """

    max_retry: int = 3
    initial_delay: float = 1000.0
    max_delay: float = 20000.0

    def __post_init__(self) -> None:
        if self.max_retry < 0:
            raise InvalidParameter(f"max_retry must be >= 0, got {self.max_retry}")
        if self.initial_delay < 0:
            raise InvalidParameter(
                f"initial_delay must be >= 0, got {self.initial_delay}"
            )
        if self.max_delay < self.initial_delay:
            raise InvalidParameter(
                f"max_delay ({self.max_delay}) must be >= initial_delay "
                f"({self.initial_delay})"
            )

    @property
    def infinite(self) -> bool:
        return self.max_retry == 0

    def delay_for(self, attempt: int) -> float:
        """Delay to wait after failed attempt number `attempt` (1-based).

        Args:
            attempt: The attempt that just failed

        Returns:
            min(initial_delay * 2**(attempt - 1), max_delay) in milliseconds
        """
        if attempt < 1:
            raise InvalidParameter(f"attempt must be >= 1, got {attempt}")
        # Cap the exponent so long infinite retry loops do not overflow floats.
        exponent = min(attempt - 1, 64)
        return min(self.initial_delay * 2**exponent, self.max_delay)


@dataclass
class ClientConfig:
    """Configuration threaded through UAClient, Channel, Session and Subscription.

    Attributes:
        connection_strategy: Backoff policy for connect and reconnect
        endpoint_must_exist: Fail with EndpointNotFound when the server does
            not advertise the requested endpoint URL
        connect_timeout: Upper bound for opening a single link (ms)
        request_timeout: Default timeout for a request/response exchange (ms)
        session_timeout: Requested session timeout (ms)
        dispatch_queue_size: Capacity of each subscription's listener queue
        session_name: Default name sent with CreateSession
    """

    connection_strategy: ConnectionStrategy = field(default_factory=ConnectionStrategy)
    endpoint_must_exist: bool = True
    connect_timeout: float = 10000.0
    request_timeout: float = 10000.0
    session_timeout: float = 60000.0
    dispatch_queue_size: int = 1000
    session_name: str = "uacore-session"

    def __post_init__(self) -> None:
        if self.request_timeout <= 0:
            raise InvalidParameter(
                f"request_timeout must be > 0, got {self.request_timeout}"
            )
        if self.connect_timeout <= 0:
            raise InvalidParameter(
                f"connect_timeout must be > 0, got {self.connect_timeout}"
            )
        if self.dispatch_queue_size < 1:
            raise InvalidParameter(
                f"dispatch_queue_size must be >= 1, got {self.dispatch_queue_size}"
            )

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ClientConfig":
        """Build a config from environment settings.

        Args:
            settings: Explicit settings, or None to use get_settings()
        """
        settings = settings or get_settings()
        return cls(
            connection_strategy=ConnectionStrategy(
                max_retry=settings.max_retry,
                initial_delay=settings.initial_delay,
                max_delay=settings.max_delay,
            ),
            endpoint_must_exist=settings.endpoint_must_exist,
            connect_timeout=settings.connect_timeout,
            request_timeout=settings.request_timeout,
            session_timeout=settings.session_timeout,
            dispatch_queue_size=settings.dispatch_queue_size,
        )
