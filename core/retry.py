"""
Bounded retry for storage operations.

Only failures that look like connection-level hiccups are retried. Domain
errors, integrity violations and programming errors propagate on the first
attempt. Callers are responsible for making the wrapped operation safe to
repeat (see AnonymousChatService.append_message).
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, TypeVar

from asyncpg.exceptions import CannotConnectNowError, PostgresConnectionError, TooManyConnectionsError
from sqlalchemy import exc as sa_exc

from core.config import settings
from core.exceptions import StorageUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_ATTEMPTS = 3
DEFAULT_DELAY_SECONDS = 1.0

_TRANSIENT_TYPES = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.DisconnectionError,
    sa_exc.TimeoutError,
    PostgresConnectionError,
    CannotConnectNowError,
    TooManyConnectionsError,
    ConnectionError,
    TimeoutError,
)


def is_transient_storage_error(error: BaseException) -> bool:
    """True when a storage failure is likely to succeed on retry."""
    if isinstance(error, _TRANSIENT_TYPES):
        return True
    if isinstance(error, sa_exc.DBAPIError) and error.connection_invalidated:
        return True
    return False


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    attempts: Optional[int] = None,
    delay: Optional[float] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    description: str = "storage operation",
) -> T:
    """
    Run a storage operation, retrying transient failures.

    Args:
        operation: Zero-argument coroutine function. Called once per attempt.
        attempts: Total attempts including the first (default STORAGE_RETRY_ATTEMPTS).
        delay: Fixed pause between attempts in seconds (default STORAGE_RETRY_DELAY_SECONDS).
        sleep: Awaitable sleep function, injectable for tests.
        description: Label used in log lines.

    Returns:
        The operation's result.

    Raises:
        StorageUnavailableError: If every attempt failed transiently.
        Exception: Any non-transient error, unretried.
    """
    attempts = attempts if attempts is not None else settings.STORAGE_RETRY_ATTEMPTS
    delay = delay if delay is not None else settings.STORAGE_RETRY_DELAY_SECONDS

    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as e:
            if not is_transient_storage_error(e):
                raise
            last_error = e
            if attempt < attempts:
                logger.warning(
                    "Transient failure in %s (attempt %d/%d), retrying in %.1fs: %s",
                    description,
                    attempt,
                    attempts,
                    delay,
                    e,
                )
                await sleep(delay)

    logger.error("%s failed after %d attempts: %s", description, attempts, last_error)
    raise StorageUnavailableError("Storage temporarily unavailable") from last_error


@dataclass
class RetryPolicy:
    """Retry settings shared by the access guard and the transcript engine."""

    attempts: int = field(default_factory=lambda: settings.STORAGE_RETRY_ATTEMPTS)
    delay: float = field(default_factory=lambda: settings.STORAGE_RETRY_DELAY_SECONDS)
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "storage operation") -> T:
        return await execute_with_retry(
            operation,
            attempts=self.attempts,
            delay=self.delay,
            sleep=self.sleep,
            description=description,
        )
