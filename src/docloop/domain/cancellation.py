"""Cancellation token shared by the caller, the stream guard and the transport."""

from __future__ import annotations

import asyncio
from typing import Callable, List, Optional


class AbortSignal:
    """One-shot abort flag with listeners and an awaitable ``wait()``.

    ``abort()`` is synchronous so it can be called from inside a fragment
    callback; the first reason wins.  ``linked()`` derives a child signal
    that fires whenever any parent fires; call ``detach()`` on the child when
    done so parents do not keep references to it.
    """

    def __init__(self) -> None:
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None
        self._listeners: List[Callable[[str], None]] = []
        self._parents: List["AbortSignal"] = []

    @property
    def aborted(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def abort(self, reason: str = "aborted") -> None:
        if self._reason is not None:
            return
        self._reason = reason
        if self._event is not None:
            self._event.set()
        for listener in list(self._listeners):
            listener(reason)

    def add_listener(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[str], None]) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def wait(self) -> str:
        """Block until the signal fires; return the abort reason."""
        if self._event is None:
            # Created lazily so the signal can be built outside a running loop.
            self._event = asyncio.Event()
            if self._reason is not None:
                self._event.set()
        await self._event.wait()
        return self._reason or "aborted"

    @classmethod
    def linked(cls, *parents: Optional["AbortSignal"]) -> "AbortSignal":
        child = cls()
        for parent in parents:
            if parent is None:
                continue
            if parent.aborted:
                child.abort(parent.reason or "aborted")
            parent.add_listener(child.abort)
            child._parents.append(parent)
        return child

    def detach(self) -> None:
        for parent in self._parents:
            parent.remove_listener(self.abort)
        self._parents.clear()
