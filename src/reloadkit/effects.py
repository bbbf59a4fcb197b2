"""Side effects owned by components.

The :class:`EffectRegistry` is the only sanctioned way for unit code to
schedule delayed or periodic callbacks and to subscribe to external event
sources. Every handle it creates is attributed to the component that was
current at creation time, and :meth:`EffectRegistry.release_all` cancels all
of a component's handles when it is torn down, whether or not the unit
cleaned up after itself.

Time comes from a :class:`Clock`. Production code uses :class:`LoopClock`
(the running asyncio loop); tests use :class:`ManualClock` and advance time
explicitly.

Example:
    >>> clock = ManualClock()
    >>> registry = EffectRegistry(clock)
    >>> handle = registry.every(1.0, tick, owner=node)
    >>> clock.advance(3.0)   # tick runs three times
    >>> registry.release_all(node)
"""

from __future__ import annotations

import asyncio
import heapq
import inspect
import itertools
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Protocol

from reloadkit.context import Phase, enter, get_current_component
from reloadkit.errors import HookRegistrationError

if TYPE_CHECKING:
    from reloadkit.events import EventHandler, LifecycleEvent
    from reloadkit.graph.node import ComponentNode
    from reloadkit.runtime import Runtime

logger = logging.getLogger(__name__)

ErrorReporter = Callable[["ComponentNode", BaseException], None]


# =============================================================================
# Clocks
# =============================================================================


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Clock(ABC):
    """Source of time and delayed calls."""

    @abstractmethod
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Schedule ``callback`` after ``delay`` seconds."""

    @abstractmethod
    def time(self) -> float:
        """Current time in seconds."""


class LoopClock(Clock):
    """Clock backed by an asyncio event loop.

    Uses the running loop unless one is given explicitly.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        self._loop = loop

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        return self._loop or asyncio.get_running_loop()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return self._get_loop().call_later(delay, callback)

    def time(self) -> float:
        return self._get_loop().time()


@dataclass(eq=False)
class _ManualTimer:
    when: float
    seq: int
    callback: Callable[[], None]
    cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: "_ManualTimer") -> bool:
        return (self.when, self.seq) < (other.when, other.seq)


class ManualClock(Clock):
    """Simulated clock; time only moves when :meth:`advance` is called.

    Callbacks due at the same instant run in scheduling order.
    """

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._queue: list[_ManualTimer] = []
        self._seq = itertools.count()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self._now + max(delay, 0.0), next(self._seq), callback)
        heapq.heappush(self._queue, timer)
        return timer

    def time(self) -> float:
        return self._now

    def advance(self, seconds: float) -> int:
        """Move time forward, running every callback that becomes due.

        Returns:
            Number of callbacks run.
        """
        target = self._now + seconds
        fired = 0
        while self._queue and self._queue[0].when <= target:
            timer = heapq.heappop(self._queue)
            if timer.cancelled:
                continue
            self._now = timer.when
            timer.callback()
            fired += 1
        self._now = target
        return fired

    @property
    def pending(self) -> int:
        """Scheduled callbacks that have not been cancelled."""
        return sum(1 for t in self._queue if not t.cancelled)


# =============================================================================
# Handles
# =============================================================================


class EffectKind(str, Enum):
    """Kinds of tracked effects."""

    TIMEOUT = "timeout"
    INTERVAL = "interval"
    LISTENER = "listener"
    CUSTOM = "custom"


@dataclass(eq=False)
class EffectHandle:
    """A live effect and the component that owns it.

    Attributes:
        id: Registry-unique number.
        kind: What sort of effect this is.
        owner: Owning component.
        callback: Timer callback (timers only).
        interval: Delay or period in seconds (timers only).
        fired: How many times the callback ran.
        active: False once cancelled, released or (one-shot) finished.
    """

    id: int
    kind: EffectKind | str
    owner: "ComponentNode"
    registry: "EffectRegistry" = field(repr=False)
    callback: Callable[[], Any] | None = field(default=None, repr=False)
    interval: float | None = None
    fired: int = 0
    active: bool = True
    _timer: TimerHandle | None = field(default=None, repr=False)
    _disposer: Callable[[], Any] | None = field(default=None, repr=False)
    _tasks: set[asyncio.Future[Any]] = field(default_factory=set, repr=False)

    def cancel(self) -> bool:
        """Cancel this effect. Returns False if it was no longer active."""
        return self.registry.cancel(self)


# =============================================================================
# Registry
# =============================================================================


class EffectRegistry:
    """Creates effects and reclaims them per owning component.

    Args:
        clock: Time source (defaults to the running asyncio loop).
        on_error: Called with ``(owner, exception)`` when an effect callback
            or disposer raises.
    """

    def __init__(
        self,
        clock: Clock | None = None,
        on_error: ErrorReporter | None = None,
    ) -> None:
        self.clock = clock or LoopClock()
        self.on_error = on_error
        self.runtime: "Runtime | None" = None
        self._handles: dict[int, EffectHandle] = {}
        self._ids = itertools.count(1)

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def after(
        self,
        delay: float,
        fn: Callable[[], Any],
        *,
        owner: "ComponentNode | None" = None,
    ) -> EffectHandle:
        """Call ``fn`` once after ``delay`` seconds."""
        handle = self._new(EffectKind.TIMEOUT, owner, "after", callback=fn, interval=delay)
        handle._timer = self.clock.call_later(delay, lambda: self._fire(handle, fn, None))
        return handle

    def every(
        self,
        interval: float,
        fn: Callable[[], Any],
        *,
        owner: "ComponentNode | None" = None,
    ) -> EffectHandle:
        """Call ``fn`` every ``interval`` seconds until cancelled."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        handle = self._new(EffectKind.INTERVAL, owner, "every", callback=fn, interval=interval)
        handle._timer = self.clock.call_later(interval, lambda: self._fire(handle, fn, interval))
        return handle

    def listen(
        self,
        bus: Any,
        event: "LifecycleEvent | str",
        handler: "EventHandler",
        *,
        owner: "ComponentNode | None" = None,
    ) -> EffectHandle:
        """Subscribe ``handler`` to ``event`` on ``bus`` for the owner's lifetime.

        ``bus`` is anything with ``on(event, handler) -> unsubscribe``, such
        as an :class:`~reloadkit.events.EventBus`. The handler runs with the
        owner as the current component.
        """
        handle = self._new(EffectKind.LISTENER, owner, "listen")
        node = handle.owner

        if inspect.iscoroutinefunction(handler):
            async def scoped(*args: Any, **kwargs: Any) -> Any:
                with enter(node, Phase.EFFECT, self.runtime):
                    return await handler(*args, **kwargs)
        else:
            def scoped(*args: Any, **kwargs: Any) -> Any:  # type: ignore[misc]
                with enter(node, Phase.EFFECT, self.runtime):
                    return handler(*args, **kwargs)

        try:
            handle._disposer = bus.on(event, scoped)
        except Exception:
            self._discard(handle)
            raise
        return handle

    def track(
        self,
        disposer: Callable[[], Any],
        *,
        kind: EffectKind | str = EffectKind.CUSTOM,
        owner: "ComponentNode | None" = None,
    ) -> EffectHandle:
        """Adopt an arbitrary teardown callable."""
        handle = self._new(kind, owner, "track")
        handle._disposer = disposer
        return handle

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self, handle: EffectHandle) -> bool:
        """Cancel one effect.

        Returns:
            True if the effect was live, False if it had already been
            cancelled or released.
        """
        if not handle.active:
            return False
        self._discard(handle)

        if handle._timer is not None:
            handle._timer.cancel()
            handle._timer = None
        for task in list(handle._tasks):
            task.cancel()
        handle._tasks.clear()

        disposer, handle._disposer = handle._disposer, None
        if disposer is not None:
            try:
                disposer()
            except Exception as e:
                self._report(handle, e)
        return True

    def release_all(self, node: "ComponentNode") -> int:
        """Cancel every effect owned by ``node``.

        Returns:
            Number of effects that were still live.
        """
        owned = {h.id: h for h in node.effects}
        owned.update({hid: h for hid, h in self._handles.items() if h.owner is node})
        released = sum(1 for h in sorted(owned.values(), key=lambda h: h.id) if self.cancel(h))
        node.effects.clear()
        if released:
            logger.debug(f"Released {released} effect(s) of {node.identifier}")
        return released

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def handles_for(self, node: "ComponentNode") -> list[EffectHandle]:
        """Live handles owned by ``node``, oldest first."""
        return sorted(
            (h for h in self._handles.values() if h.owner is node),
            key=lambda h: h.id,
        )

    def __len__(self) -> int:
        return len(self._handles)

    def __repr__(self) -> str:
        return f"<EffectRegistry live={len(self._handles)}>"

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _new(
        self,
        kind: EffectKind | str,
        owner: "ComponentNode | None",
        api: str,
        *,
        callback: Callable[[], Any] | None = None,
        interval: float | None = None,
    ) -> EffectHandle:
        node = owner if owner is not None else get_current_component()
        if node is None:
            raise HookRegistrationError(
                f"{api}() needs an owning component; call it from component code "
                f"or pass owner="
            )
        handle = EffectHandle(
            id=next(self._ids),
            kind=kind,
            owner=node,
            registry=self,
            callback=callback,
            interval=interval,
        )
        self._handles[handle.id] = handle
        node.effects.add(handle)
        return handle

    def _discard(self, handle: EffectHandle) -> None:
        handle.active = False
        self._handles.pop(handle.id, None)
        handle.owner.effects.discard(handle)

    def _fire(
        self,
        handle: EffectHandle,
        fn: Callable[[], Any],
        period: float | None,
    ) -> None:
        """Run a timer callback; ``period`` is None for one-shot timers."""
        if not handle.active:
            return
        if period is not None:
            handle._timer = self.clock.call_later(period, lambda: self._fire(handle, fn, period))
        else:
            handle._timer = None

        handle.fired += 1
        self._invoke(handle, fn)

        if handle.kind is EffectKind.TIMEOUT and handle.active and not handle._tasks:
            self._discard(handle)

    def _invoke(self, handle: EffectHandle, fn: Callable[[], Any]) -> None:
        with enter(handle.owner, Phase.EFFECT, self.runtime):
            try:
                result = fn()
            except Exception as e:
                self._report(handle, e)
                return
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                handle._tasks.add(task)
                task.add_done_callback(lambda t: self._task_done(handle, t))

    def _task_done(self, handle: EffectHandle, task: asyncio.Future[Any]) -> None:
        handle._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self._report(handle, task.exception())  # type: ignore[arg-type]
        if handle.kind is EffectKind.TIMEOUT and handle.active and not handle._tasks:
            self._discard(handle)

    def _report(self, handle: EffectHandle, error: BaseException) -> None:
        kind = getattr(handle.kind, "value", handle.kind)
        logger.error(
            f"Error in {kind} effect #{handle.id} of {handle.owner.identifier}: {error}"
        )
        if self.on_error is not None:
            self.on_error(handle.owner, error)
