from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Callable, TypeVar

from .models import UserRecord

T = TypeVar("T")


class UserStore(ABC):
    """Durable user records keyed by identity.

    Registration owns record creation; the game only reads records and
    rewrites ``score`` / ``active_prediction`` / ``last_login_at``.
    """

    @abstractmethod
    def get_user(self, identity: str) -> UserRecord:
        """Return the record or raise ``UserNotFoundError``."""
        raise NotImplementedError

    @abstractmethod
    def update_user(self, identity: str, fields: dict[str, Any], *, only_if_idle: bool = False) -> UserRecord:
        """Apply ``fields`` and return the updated record.

        With ``only_if_idle`` the write only lands when the record has no
        active prediction, otherwise ``StoreConflictError`` is raised.
        Raises ``UserNotFoundError`` for unknown identities.
        """
        raise NotImplementedError

    @abstractmethod
    def release_prediction(self, identity: str, prediction_id: str) -> bool:
        """Clear ``active_prediction`` only while it still holds ``prediction_id``.

        Returns whether a claim was cleared. A newer claim is never touched.
        """
        raise NotImplementedError

    @abstractmethod
    def ping(self) -> bool:
        raise NotImplementedError


async def call_with_timeout(timeout_seconds: float, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout=timeout_seconds)


async def write_with_timeout(timeout_seconds: float, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Run a store write in a thread, bounded by ``timeout_seconds``.

    The thread cannot be cancelled, so on timeout this waits for the write to
    finish (or fail) before raising ``TimeoutError``. Callers can then read the
    store's final state and reconcile; a write never lands after they gave up.
    """
    future = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
    try:
        return await asyncio.wait_for(asyncio.shield(future), timeout=timeout_seconds)
    except TimeoutError:
        await asyncio.gather(future, return_exceptions=True)
        raise
