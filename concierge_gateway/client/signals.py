from __future__ import annotations

import asyncio
from typing import Optional

from .errors import UserCancelled


class AbortSignal:
    """Cooperative cancellation for one in-flight turn.

    ``abort()`` is synchronous: once it returns, ``aborted`` is true and any
    callback guarded by ``raise_if_aborted`` will no longer run.
    """

    def __init__(self) -> None:
        self._aborted = False
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def abort(self, reason: str = "Aborted") -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        if self._event is not None:
            self._event.set()

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise UserCancelled(self._reason or "Aborted")

    async def wait(self) -> None:
        if self._event is None:
            self._event = asyncio.Event()
            if self._aborted:
                self._event.set()
        await self._event.wait()
