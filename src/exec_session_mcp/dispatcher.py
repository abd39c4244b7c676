"""Streaming dispatcher.

Delivers a session's output events and its single completion event to the
rendering surfaces attached to it, and relays surface input back into the
session's process.

Each session gets its own unbounded asyncio.Queue drained by a dedicated
dispatch task, so events for one session reach every surface in exactly the
order they were produced. Sessions are independent of each other.

Surfaces are referenced by id through a SurfaceRegistry; liveness is
checked before every delivery and a dead surface is dropped for good.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Union, runtime_checkable

from .sessions import ExecutionResult, SessionStore

__all__ = [
    "RenderingSurface",
    "SurfaceRegistry",
    "OutputEvent",
    "CompletionEvent",
    "StreamingDispatcher",
    "normalize_input",
]

logger = logging.getLogger(__name__)


@runtime_checkable
class RenderingSurface(Protocol):
    """A display that renders one or more sessions."""

    surface_id: str

    def is_alive(self) -> bool:
        ...

    def deliver_output(self, session_id: int, event: dict[str, Any]) -> None:
        """Receive ``{"type": "stdout"|"stderr", "data": text}``."""
        ...

    def deliver_completion(self, session_id: int, result: dict[str, Any]) -> None:
        """Receive ``{stdout, stderr, exitCode, wasInterrupted}``."""
        ...


@dataclass(frozen=True)
class OutputEvent:
    """One chunk of process output.

    Attributes:
        session_id: Session identifier
        seq: Index of the chunk in the session buffer
        type: "stdout" or "stderr"
        data: Decoded text
    """

    session_id: int
    seq: int
    type: str
    data: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.data}


@dataclass(frozen=True)
class CompletionEvent:
    session_id: int
    result: ExecutionResult


Event = Union[OutputEvent, CompletionEvent]

# Queue sentinel: stop the dispatch task after earlier events
_CLOSE = object()


def normalize_input(text: str) -> str:
    """Terminal widgets send CR for Enter; interactive programs expect LF."""
    return text.replace("\r", "\n")


class SurfaceRegistry:
    """Live rendering surfaces keyed by surface id."""

    def __init__(self) -> None:
        self._surfaces: dict[str, RenderingSurface] = {}

    def register(self, surface: RenderingSurface) -> None:
        self._surfaces[surface.surface_id] = surface

    def unregister(self, surface_id: str) -> bool:
        return self._surfaces.pop(surface_id, None) is not None

    def get(self, surface_id: str | None) -> RenderingSurface | None:
        """Return the surface if it is registered and alive.

        A surface found dead is evicted, so a stale id cannot bring it back.
        """
        if surface_id is None:
            return None
        surface = self._surfaces.get(surface_id)
        if surface is None:
            return None
        if not surface.is_alive():
            logger.debug(f"Surface {surface_id} is gone, evicting")
            del self._surfaces[surface_id]
            return None
        return surface

    def __len__(self) -> int:
        return len(self._surfaces)

    def __contains__(self, surface_id: object) -> bool:
        return surface_id in self._surfaces


@dataclass
class _Subscription:
    surface_id: str
    start_seq: int = 0
    completion_seen: bool = False


class StreamingDispatcher:
    """Per-session event channels feeding attached surfaces.

    Must be used from the event loop thread.

    Example:
        dispatcher = StreamingDispatcher(store)
        dispatcher.subscribe(session_id, surface)
        dispatcher.publish_output(session_id, seq, "stdout", "hi\\n")
        dispatcher.publish_completion(session_id, result)
        await dispatcher.flush(session_id)
    """

    def __init__(self, store: SessionStore, surfaces: SurfaceRegistry | None = None) -> None:
        self.store = store
        self.surfaces = surfaces or SurfaceRegistry()
        self._channels: dict[int, asyncio.Queue[Any]] = {}
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._subscriptions: dict[int, list[_Subscription]] = {}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        session_id: int,
        surface: RenderingSurface,
        *,
        start_seq: int = 0,
        completion_seen: bool = False,
    ) -> None:
        """Attach a surface to a session's event stream.

        Args:
            session_id: Session identifier
            surface: The rendering surface
            start_seq: Output events with a lower seq were already shown
                (catch-up) and are skipped
            completion_seen: The surface already has the completion record
        """
        self.surfaces.register(surface)
        subs = self._subscriptions.setdefault(session_id, [])
        subs[:] = [s for s in subs if s.surface_id != surface.surface_id]
        subs.append(
            _Subscription(
                surface_id=surface.surface_id,
                start_seq=start_seq,
                completion_seen=completion_seen,
            )
        )
        logger.debug(
            f"Surface {surface.surface_id} subscribed to session {session_id} "
            f"(start_seq={start_seq}, completion_seen={completion_seen})"
        )

    def unsubscribe(self, session_id: int, surface_id: str) -> bool:
        subs = self._subscriptions.get(session_id)
        if not subs:
            return False
        before = len(subs)
        subs[:] = [s for s in subs if s.surface_id != surface_id]
        if not subs:
            del self._subscriptions[session_id]
        self._release(surface_id)
        return len(subs) != before

    def subscriber_count(self, session_id: int) -> int:
        return len(self._subscriptions.get(session_id, ()))

    def _release(self, surface_id: str) -> None:
        """Forget a surface once no session streams to it."""
        if surface_id not in self.surfaces:
            return
        if any(s.surface_id == surface_id for subs in self._subscriptions.values() for s in subs):
            return
        self.surfaces.unregister(surface_id)
        logger.debug(f"Surface {surface_id} has no subscriptions left, released")

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def publish_output(self, session_id: int, seq: int, stream: str, data: str) -> None:
        """Queue an output event. Never blocks."""
        self._enqueue(session_id, OutputEvent(session_id, seq, stream, data))

    def publish_completion(self, session_id: int, result: ExecutionResult) -> None:
        """Queue the completion event. Never blocks."""
        self._enqueue(session_id, CompletionEvent(session_id, result))

    def relay_input(self, session_id: int, text: str) -> bool:
        """Forward surface input to the session's process.

        Returns:
            False if the input was dropped (no active process)
        """
        data = normalize_input(text).encode("utf-8")
        delivered = self.store.write_input(session_id, data)
        if not delivered:
            logger.debug(f"Dropped {len(data)} input byte(s) for session {session_id}")
        return delivered

    def close(self, session_id: int) -> None:
        """Stop the session's channel after already queued events."""
        queue = self._channels.get(session_id)
        if queue is not None:
            queue.put_nowait(_CLOSE)
        else:
            self._drop_subscriptions(session_id)

    async def flush(self, session_id: int) -> None:
        """Wait until every queued event of the session was dispatched."""
        queue = self._channels.get(session_id)
        if queue is not None:
            await queue.join()

    async def aclose(self) -> None:
        """Close all channels and wait for the dispatch tasks."""
        for session_id in list(self._channels):
            self.close(session_id)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _enqueue(self, session_id: int, event: Event) -> None:
        if session_id not in self.store:
            logger.debug(f"Session {session_id} is gone, dropping {type(event).__name__}")
            return
        queue = self._channels.get(session_id)
        if queue is None:
            queue = asyncio.Queue()
            self._channels[session_id] = queue
            self._tasks[session_id] = asyncio.create_task(
                self._dispatch_loop(session_id, queue),
                name=f"dispatch-{session_id}",
            )
        queue.put_nowait(event)

    async def _dispatch_loop(self, session_id: int, queue: asyncio.Queue[Any]) -> None:
        try:
            while True:
                event = await queue.get()
                try:
                    if event is _CLOSE:
                        return
                    self._deliver(session_id, event)
                finally:
                    queue.task_done()
        finally:
            self._channels.pop(session_id, None)
            self._tasks.pop(session_id, None)
            self._drop_subscriptions(session_id)
            logger.debug(f"Dispatch for session {session_id} stopped")

    def _drop_subscriptions(self, session_id: int) -> None:
        for sub in self._subscriptions.pop(session_id, ()):
            self._release(sub.surface_id)

    def _deliver(self, session_id: int, event: Event) -> None:
        subs = self._subscriptions.get(session_id)
        if not subs:
            return

        for sub in list(subs):
            surface = self.surfaces.get(sub.surface_id)
            if surface is None:
                subs.remove(sub)
                continue
            try:
                if isinstance(event, OutputEvent):
                    if event.seq < sub.start_seq:
                        continue
                    surface.deliver_output(session_id, event.to_dict())
                else:
                    if sub.completion_seen:
                        continue
                    sub.completion_seen = True
                    surface.deliver_completion(session_id, event.result.to_dict())
            except Exception as e:
                logger.warning(f"Error delivering to surface {sub.surface_id}: {e}")
                self.surfaces.unregister(sub.surface_id)
                subs.remove(sub)
