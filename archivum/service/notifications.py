from __future__ import annotations

import asyncio
from typing import Any, Callable, Set

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from archivum.logging import get_logger
from archivum.service.errors import EmailDeliveryError

logger = get_logger(__name__)

# Failures worth another attempt; anything else is a bug and is logged once
_RETRYABLE = (EmailDeliveryError, ConnectionError, TimeoutError)


class NotificationDispatcher:
    """Best-effort background delivery of notifier calls.

    ``dispatch`` never raises and never waits on delivery. Inside a running
    event loop the call is scheduled as a task that runs ``fn`` in a worker
    thread; outside one it runs inline. Either way transient failures are
    retried with exponential backoff plus jitter and every failure is logged.
    """

    def __init__(
        self,
        *,
        max_attempts: int = 4,
        initial_delay: float = 2.0,
        max_delay: float = 60.0,
    ) -> None:
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self._pending: Set[asyncio.Task] = set()

    def _policy(self, label: str) -> dict[str, Any]:
        def _log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "notification_delivery_retry",
                label=label,
                attempt=retry_state.attempt_number,
                wait_seconds=round(retry_state.next_action.sleep, 2)
                if retry_state.next_action
                else 0,
                error_type=type(exc).__name__ if exc else None,
                error=str(exc) if exc else None,
            )

        return {
            "stop": stop_after_attempt(self.max_attempts),
            "wait": wait_exponential_jitter(initial=self.initial_delay, max=self.max_delay),
            "retry": retry_if_exception_type(_RETRYABLE),
            "before_sleep": _log_retry,
            "reraise": True,
        }

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(self, label: str, fn: Callable[..., Any], *args: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._deliver_sync(label, fn, *args)
            return
        task = loop.create_task(self._deliver(label, fn, *args))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _deliver(self, label: str, fn: Callable[..., Any], *args: Any) -> bool:
        try:
            async for attempt in AsyncRetrying(**self._policy(label)):
                with attempt:
                    await asyncio.to_thread(fn, *args)
        except Exception as exc:
            self._log_abandoned(label, exc)
            return False
        logger.info("notification_delivered", label=label)
        return True

    def _deliver_sync(self, label: str, fn: Callable[..., Any], *args: Any) -> bool:
        try:
            for attempt in Retrying(**self._policy(label)):
                with attempt:
                    fn(*args)
        except Exception as exc:
            self._log_abandoned(label, exc)
            return False
        logger.info("notification_delivered", label=label)
        return True

    @staticmethod
    def _log_abandoned(label: str, exc: BaseException) -> None:
        logger.error(
            "notification_delivery_failed",
            label=label,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    async def drain(self) -> None:
        """Wait for every scheduled delivery to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
