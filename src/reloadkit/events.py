"""Lifecycle events.

Every node owns an :class:`EventBus`. Events are delivered to the node
they concern first and then bubble along parent edges to the root, so a
subscriber on a root sees everything that happens in its tree.

Available events, in the order a node sees them:
    - before-start: a start is about to load the node
    - before-mount: children are started, mount hooks are about to run
    - mounted: mount hooks of a node finished
    - started: node and its owned subtree are running
    - before-reload: a reload was requested; the node is still started
    - reloading: the replacement is about to be loaded
    - reload.error: the replacement failed; the node keeps running
    - reloaded: a replacement took over (payload carries the old node)
    - before-stop: teardown of a node has begun
    - before-dispose: dispose hooks are about to run
    - stopped: dispose hooks, children and effects are done
    - disposed: node is gone
    - error: something failed (payload carries the exception)

Example:
    >>> unsubscribe = root.on("started", lambda event: print(event.node.name))
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

if TYPE_CHECKING:
    from reloadkit.graph.node import ComponentNode

logger = logging.getLogger(__name__)


class LifecycleEvent(str, Enum):
    """Events emitted by the lifecycle runner."""

    BEFORE_START = "before-start"
    BEFORE_MOUNT = "before-mount"
    MOUNTED = "mounted"
    STARTED = "started"
    BEFORE_RELOAD = "before-reload"
    RELOADING = "reloading"
    RELOAD_ERROR = "reload.error"
    RELOADED = "reloaded"
    BEFORE_STOP = "before-stop"
    BEFORE_DISPOSE = "before-dispose"
    STOPPED = "stopped"
    DISPOSED = "disposed"
    ERROR = "error"


@dataclass
class ComponentEvent:
    """Payload delivered to event handlers.

    Attributes:
        kind: Which event this is.
        node: Node the event concerns.
        error: Triggering exception (``error`` events).
        previous: Replaced node (``reloaded`` events).
        timestamp: When the event was created.
    """

    kind: LifecycleEvent
    node: "ComponentNode"
    error: BaseException | None = None
    previous: "ComponentNode | None" = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[ComponentEvent], Any]


@dataclass(eq=False)
class Subscription:
    """A registered event handler."""

    event: str
    handler: EventHandler
    once: bool = False
    bus: "EventBus | None" = field(default=None, repr=False, compare=False)


def _event_key(event: LifecycleEvent | str) -> str:
    return event.value if isinstance(event, LifecycleEvent) else str(event)


class EventBus:
    """Subscribers for one node.

    Handlers run in subscription order. Sync and async handlers are both
    accepted; a failing handler is logged and does not stop delivery.
    """

    def __init__(self) -> None:
        self._subscriptions: dict[str, list[Subscription]] = defaultdict(list)

    def on(
        self,
        event: LifecycleEvent | str,
        handler: EventHandler,
        *,
        once: bool = False,
    ) -> Callable[[], None]:
        """Register a handler.

        Args:
            event: Event name.
            handler: Callable receiving a :class:`ComponentEvent`.
            once: Remove the handler after its first delivery.

        Returns:
            A callable that removes this subscription. Calling it twice is
            harmless.
        """
        subscription = Subscription(_event_key(event), handler, once, bus=self)
        self._subscriptions[subscription.event].append(subscription)

        def unsubscribe() -> None:
            # Follows the subscription if a reload moved it to another bus.
            if subscription.bus is not None:
                subscription.bus._remove(subscription)

        return unsubscribe

    def once(self, event: LifecycleEvent | str, handler: EventHandler) -> Callable[[], None]:
        """Register a handler that fires at most once."""
        return self.on(event, handler, once=True)

    def off(self, event: LifecycleEvent | str, handler: EventHandler) -> bool:
        """Remove every subscription of ``handler`` to ``event``.

        Returns:
            True if anything was removed.
        """
        key = _event_key(event)
        subs = self._subscriptions.get(key, [])
        kept = [s for s in subs if s.handler is not handler]
        self._subscriptions[key] = kept
        return len(kept) != len(subs)

    def listener_count(self, event: LifecycleEvent | str | None = None) -> int:
        if event is None:
            return sum(len(subs) for subs in self._subscriptions.values())
        return len(self._subscriptions.get(_event_key(event), []))

    def adopt(self, other: "EventBus") -> None:
        """Move every subscription of ``other`` onto this bus."""
        for key, subs in other._subscriptions.items():
            for sub in subs:
                sub.bus = self
            self._subscriptions[key].extend(subs)
        other._subscriptions.clear()

    def clear(self) -> None:
        for subs in self._subscriptions.values():
            for sub in subs:
                sub.bus = None
        self._subscriptions.clear()

    def _remove(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.event)
        if subs and subscription in subs:
            subs.remove(subscription)

    async def deliver(self, event: ComponentEvent) -> int:
        """Call this bus's handlers for ``event``.

        Returns:
            Number of handlers called.
        """
        key = _event_key(event.kind)
        subs = list(self._subscriptions.get(key, []))
        for sub in subs:
            if sub.once:
                self._remove(sub)
            try:
                result = sub.handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:
                logger.exception(
                    f"Error in {key} handler {getattr(sub.handler, '__name__', sub.handler)!r} "
                    f"for {event.node.identifier}"
                )
        return len(subs)

    def __len__(self) -> int:
        return self.listener_count()

    def __repr__(self) -> str:
        counts = {k: len(v) for k, v in self._subscriptions.items() if v}
        return f"<EventBus subscriptions={counts}>"


def _upward(node: "ComponentNode") -> "ComponentNode | None":
    return node.parent if node.parent is not None else node.former_parent


async def emit(event: ComponentEvent) -> int:
    """Deliver an event to its node and then to each ancestor.

    A node that has been detached from its owner keeps bubbling through
    that former owner, so subscribers on a root still see the teardown of
    its subtree.

    Returns:
        Total number of handlers called.
    """
    delivered = await event.node.events.deliver(event)

    current = _upward(event.node)
    seen = {id(event.node)}
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        delivered += await current.events.deliver(event)
        current = _upward(current)

    if event.kind is LifecycleEvent.ERROR and delivered == 0:
        logger.error(
            f"Unhandled error in component {event.node.identifier}",
            exc_info=event.error,
        )
    return delivered
