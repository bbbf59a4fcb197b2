"""Execution context: which component is running right now.

The runtime keeps a stack of :class:`Frame` objects in a
:class:`contextvars.ContextVar`. Each asyncio task sees its own copy, so two
``start`` calls running concurrently on unrelated subtrees never observe each
other's current component.

Code executed by a loader uses the functions in this module instead of a
handle to its own node:

    >>> from reloadkit import context
    >>> db = context.import_child("./db")
    >>> context.on_mount(lambda: print("ready"))
    >>> context.on_dispose(lambda: print("bye"))

Hooks may only be registered during the load phase of a ``LOADING`` node.
Effects (timers, listeners) may be created from any frame; they belong to
that frame's node.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterator, TypeVar

from reloadkit.errors import HookRegistrationError

if TYPE_CHECKING:
    from reloadkit.effects import EffectHandle
    from reloadkit.events import EventHandler, LifecycleEvent
    from reloadkit.graph.node import ComponentNode
    from reloadkit.runtime import Runtime

F = TypeVar("F", bound=Callable[..., Any])


class Phase(str, Enum):
    """What a frame's node is doing."""

    LOAD = "load"
    MOUNT = "mount"
    DISPOSE = "dispose"
    EFFECT = "effect"


@dataclass(eq=False)
class Frame:
    """One entry of the execution stack.

    ``active`` turns False when the block that pushed the frame exits. Tasks
    spawned inside the block share the frame object, so they see it closed.
    """

    node: "ComponentNode"
    phase: Phase
    runtime: "Runtime | None" = None
    active: bool = field(default=True, compare=False)


_frames: ContextVar[tuple[Frame, ...]] = ContextVar("reloadkit_frames", default=())


@contextmanager
def enter(
    node: "ComponentNode",
    phase: Phase,
    runtime: "Runtime | None" = None,
) -> Iterator[Frame]:
    """Make ``node`` the current component for the duration of the block.

    Only the runtime should call this.
    """
    frame = Frame(node, phase, runtime)
    token = _frames.set(_frames.get() + (frame,))
    try:
        yield frame
    finally:
        frame.active = False
        _frames.reset(token)


def frames() -> tuple[Frame, ...]:
    """The current task's frame stack, outermost first."""
    return _frames.get()


def current_frame() -> Frame | None:
    stack = _frames.get()
    return stack[-1] if stack else None


def get_current_component() -> "ComponentNode | None":
    """The node whose code is executing in this task, if any."""
    frame = current_frame()
    return frame.node if frame is not None else None


def require_frame(api: str) -> Frame:
    """Current frame, or :class:`HookRegistrationError` if there is none."""
    frame = current_frame()
    if frame is None:
        raise HookRegistrationError(
            f"{api}() called outside of any component; "
            f"it is only available to code run by the runtime"
        )
    return frame


def require_load_frame(api: str) -> Frame:
    """Current frame if it is the open load phase of a ``LOADING`` node."""
    from reloadkit.graph.node import ComponentState

    frame = require_frame(api)
    if frame.phase is Phase.LOAD and not frame.active:
        raise HookRegistrationError(
            f"{api}() called after the load phase of {frame.node.identifier} "
            f"ended; a task started while loading cannot import or register hooks",
            frame.node.identifier,
        )
    if frame.phase is not Phase.LOAD or frame.node.state is not ComponentState.LOADING:
        raise HookRegistrationError(
            f"{api}() called during {frame.phase.value} of "
            f"{frame.node.identifier} ({frame.node.state.value}); "
            f"it is only available while the component is loading",
            frame.node.identifier,
        )
    return frame


def _require_runtime(frame: Frame, api: str) -> "Runtime":
    if frame.runtime is None:
        raise HookRegistrationError(
            f"{api}() needs a runtime but {frame.node.identifier} has none",
            frame.node.identifier,
        )
    return frame.runtime


# =============================================================================
# Hook registration
# =============================================================================


def on_mount(fn: F) -> F:
    """Run ``fn`` after the current component and its children loaded.

    Usable as a decorator. ``fn`` may be a coroutine function.
    """
    require_load_frame("on_mount").node.mount_hooks.append(fn)
    return fn


def on_dispose(fn: F) -> F:
    """Run ``fn`` when the current component is torn down.

    Dispose hooks run last-registered first.
    """
    require_load_frame("on_dispose").node.dispose_hooks.append(fn)
    return fn


def on_error(fn: F) -> F:
    """Receive exceptions raised by the current component's lifecycle.

    ``fn`` is called with the exception.
    """
    require_load_frame("on_error").node.error_hooks.append(fn)
    return fn


# =============================================================================
# Imports
# =============================================================================


def import_child(identifier: str) -> "ComponentNode":
    """Import another unit as a child of the current component.

    The child is started after the current load phase finishes, in import
    order. Importing an identifier that is already in the graph returns the
    existing node and records a reference instead of loading it again.

    Raises:
        CycleError: If the identifier is an ancestor of the current node.
    """
    frame = require_load_frame("import_child")
    runtime = _require_runtime(frame, "import_child")
    return runtime.import_child(frame.node, identifier)


async def require(identifier: str) -> "ComponentNode":
    """Import a child and start it right away.

    Returns:
        The child, already ``STARTED``.
    """
    frame = require_load_frame("require")
    runtime = _require_runtime(frame, "require")
    child = runtime.import_child(frame.node, identifier)
    await runtime.start(child)
    return child


# =============================================================================
# Effects
# =============================================================================


def after(delay: float, fn: Callable[[], Any]) -> "EffectHandle":
    """Call ``fn`` once after ``delay`` seconds; owned by the current component."""
    frame = require_frame("after")
    return _require_runtime(frame, "after").effects.after(delay, fn, owner=frame.node)


def every(interval: float, fn: Callable[[], Any]) -> "EffectHandle":
    """Call ``fn`` every ``interval`` seconds; owned by the current component."""
    frame = require_frame("every")
    return _require_runtime(frame, "every").effects.every(interval, fn, owner=frame.node)


def listen(
    bus: Any,
    event: "LifecycleEvent | str",
    handler: "EventHandler",
) -> "EffectHandle":
    """Subscribe to ``bus`` for as long as the current component lives."""
    frame = require_frame("listen")
    return _require_runtime(frame, "listen").effects.listen(
        bus, event, handler, owner=frame.node
    )


def track(disposer: Callable[[], Any], kind: str = "custom") -> "EffectHandle":
    """Call ``disposer`` when the current component is torn down."""
    frame = require_frame("track")
    return _require_runtime(frame, "track").effects.track(
        disposer, kind=kind, owner=frame.node
    )


def cancel(handle: "EffectHandle") -> bool:
    """Cancel an effect early. Safe to call more than once."""
    return handle.cancel()
