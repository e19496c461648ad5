from __future__ import annotations

import asyncio
from collections import deque
from enum import Enum
from typing import Awaitable, Callable, Deque, Optional

from marketsphere.logging import get_logger

logger = get_logger(__name__)


class RefreshState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


class RefreshFailedError(Exception):
    """The single in-flight refresh failed; every waiter receives this."""


class RefreshCoordinator:
    """Collapse concurrent token refreshes into one in-flight call.

    The first caller to arrive while IDLE performs the refresh. Callers
    arriving while REFRESHING park a future in a FIFO queue and are settled,
    in arrival order, with the outcome of that one call. On failure every
    waiter is rejected, the logout hook clears stored credentials and the
    session-expired hook notifies the application. Waiters carry no timeout:
    they settle only when the in-flight refresh does.
    """

    def __init__(
        self,
        refresh: Callable[[], Awaitable[str]],
        *,
        on_logout: Optional[Callable[[], None]] = None,
        on_session_expired: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self._refresh = refresh
        self._on_logout = on_logout
        self._on_session_expired = on_session_expired
        self._state = RefreshState.IDLE
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def state(self) -> RefreshState:
        return self._state

    @property
    def pending(self) -> int:
        return len(self._waiters)

    async def refresh(self) -> str:
        """Return a fresh access token, sharing any refresh already running."""
        if self._state is RefreshState.REFRESHING:
            waiter = asyncio.get_running_loop().create_future()
            self._waiters.append(waiter)
            return await waiter

        self._state = RefreshState.REFRESHING
        try:
            token = await self._refresh()
        except asyncio.CancelledError:
            self._reject_all(RefreshFailedError("refresh cancelled"))
            raise
        except Exception as exc:
            failure = exc if isinstance(exc, RefreshFailedError) else RefreshFailedError(str(exc))
            logger.warning("session_refresh_failed", waiters=len(self._waiters), error=str(exc))
            self._reject_all(failure)
            self._expire_session(failure)
            if failure is exc:
                raise
            raise failure from exc
        else:
            self._resolve_all(token)
            return token
        finally:
            self._state = RefreshState.IDLE

    def _resolve_all(self, token: str) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(token)

    def _reject_all(self, error: Exception) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_exception(error)

    def _expire_session(self, error: Exception) -> None:
        if self._on_logout is not None:
            self._on_logout()
        if self._on_session_expired is not None:
            self._on_session_expired(error)
