"""Lifecycle runner for components.

This module drives nodes through their lifecycle: start (load, start
children, mount), stop (dispose hooks, children, effects) and reload
(build a replacement, splice it into the graph, retire the old node).

Every state change goes through :meth:`LifecycleRunner.transition`, which
validates it against :attr:`LifecycleRunner.VALID_TRANSITIONS` and records it
in a bounded history.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from reloadkit.context import Phase, enter
from reloadkit.errors import (
    LoadError,
    ReferenceStateError,
    ReloadKitError,
    ReloadRollbackError,
)
from reloadkit.events import ComponentEvent, LifecycleEvent, emit
from reloadkit.graph.node import ComponentNode, ComponentState

if TYPE_CHECKING:
    from reloadkit.effects import EffectRegistry
    from reloadkit.graph.resolver import DependencyResolver
    from reloadkit.loader import Loader
    from reloadkit.runtime import Runtime

logger = logging.getLogger(__name__)

_REPORTED = "_reloadkit_reported"


@dataclass
class LifecycleTransition:
    """Record of a lifecycle state transition."""

    identifier: str
    from_state: ComponentState
    to_state: ComponentState
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    error: str | None = None


async def _call(hook: Any, *args: Any) -> None:
    result = hook(*args)
    if inspect.isawaitable(result):
        await result


class LifecycleRunner:
    """Starts, stops and reloads component nodes.

    Provides:
    - Deferred, ordered start of imported children
    - Rollback of failed starts
    - Reference-counted teardown
    - Hot swap with identity preservation for shared children
    - Transition history

    Example:
        >>> runner = LifecycleRunner(resolver, loader, effects)
        >>> await runner.start(root)
        >>> root = await runner.reload(root)
        >>> await runner.stop(root)
    """

    # Valid state transitions
    VALID_TRANSITIONS: dict[ComponentState, set[ComponentState]] = {
        ComponentState.UNLOADED: {ComponentState.LOADING, ComponentState.STOPPING},
        ComponentState.LOADING: {ComponentState.MOUNTED, ComponentState.STOPPING},
        ComponentState.MOUNTED: {ComponentState.STARTED, ComponentState.STOPPING},
        ComponentState.STARTED: {ComponentState.RELOADING, ComponentState.STOPPING},
        ComponentState.RELOADING: {ComponentState.STARTED, ComponentState.STOPPING},
        ComponentState.STOPPING: {ComponentState.DISPOSED},
        ComponentState.DISPOSED: set(),
    }

    def __init__(
        self,
        resolver: "DependencyResolver",
        loader: "Loader",
        effects: "EffectRegistry",
        *,
        runtime: "Runtime | None" = None,
        max_history: int = 1000,
        wrap_load_errors: bool = True,
    ) -> None:
        """Initialize the runner.

        Args:
            resolver: Identity table and edge bookkeeping.
            loader: Executes code units.
            effects: Registry whose handles are released on teardown.
            runtime: Runtime exposed to unit code through the context.
            max_history: Maximum transition history to keep.
            wrap_load_errors: Wrap foreign start failures in LoadError.
        """
        self.resolver = resolver
        self.loader = loader
        self.effects = effects
        self.runtime = runtime
        self.wrap_load_errors = wrap_load_errors
        self._history: list[LifecycleTransition] = []
        self._max_history = max_history
        self._background: set[asyncio.Task[Any]] = set()

    # =========================================================================
    # Transitions and history
    # =========================================================================

    def transition(
        self,
        node: ComponentNode,
        to_state: ComponentState,
        error: BaseException | None = None,
    ) -> None:
        """Move ``node`` to ``to_state``.

        Raises:
            ReferenceStateError: If the transition is invalid.
        """
        from_state = node.state
        if to_state not in self.VALID_TRANSITIONS.get(from_state, set()):
            raise ReferenceStateError(
                f"Invalid transition for '{node.identifier}': "
                f"{from_state.value} -> {to_state.value}",
                node.identifier,
            )

        node.state = to_state
        self._add_history(
            LifecycleTransition(
                identifier=node.identifier,
                from_state=from_state,
                to_state=to_state,
                error=str(error) if error is not None else None,
            )
        )
        logger.debug(
            f"Component '{node.identifier}' transitioned: "
            f"{from_state.value} -> {to_state.value}"
        )

    def _add_history(self, transition: LifecycleTransition) -> None:
        self._history.append(transition)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]

    def get_history(
        self,
        identifier: str | None = None,
        limit: int = 100,
    ) -> list[LifecycleTransition]:
        """Get transition history.

        Args:
            identifier: Filter by component (None for all).
            limit: Maximum entries to return.

        Returns:
            List of transitions (newest first).
        """
        history = self._history
        if identifier:
            history = [t for t in history if t.identifier == identifier]
        return list(reversed(history[-limit:]))

    def clear_history(self) -> None:
        self._history.clear()

    # =========================================================================
    # Start
    # =========================================================================

    async def start(self, node: ComponentNode) -> None:
        """Bring ``node`` and the children it imports to ``STARTED``.

        Starting a node that is already started (or being reloaded) does
        nothing. Starting a node whose start is in flight in another task
        waits for that start.

        Raises:
            LoadError: The loader or a mount hook failed. Everything the
                failed start created has been disposed.
            CycleError: The unit imported one of its ancestors.
            ReferenceStateError: The node is stopping or disposed.
        """
        if node.state in (ComponentState.STARTED, ComponentState.RELOADING):
            return
        if node.state in (ComponentState.LOADING, ComponentState.MOUNTED):
            await self._wait_settled(node)
            return
        if node.state in (ComponentState.STOPPING, ComponentState.DISPOSED):
            raise ReferenceStateError(
                f"Cannot start '{node.identifier}': it is {node.state.value}",
                node.identifier,
                node.ref_count,
            )

        settled = node._settled = asyncio.Event()
        node._start_error = None
        try:
            await self._start(node)
        except Exception as exc:
            error = self._wrap(node, exc)
            node._start_error = error
            await self._abort(node, error)
            if error is exc:
                raise
            raise error from exc
        finally:
            settled.set()

    async def _start(self, node: ComponentNode) -> None:
        self.transition(node, ComponentState.LOADING)
        await emit(ComponentEvent(LifecycleEvent.BEFORE_START, node))

        with enter(node, Phase.LOAD, self.runtime):
            unit = self.loader.load(node.identifier)
            if inspect.isawaitable(unit):
                unit = await unit
        node.unit = unit

        for child in list(node.children):
            await self.start(child)

        await emit(ComponentEvent(LifecycleEvent.BEFORE_MOUNT, node))
        with enter(node, Phase.MOUNT, self.runtime):
            for hook in list(node.mount_hooks):
                await _call(hook)

        self.transition(node, ComponentState.MOUNTED)
        await emit(ComponentEvent(LifecycleEvent.MOUNTED, node))
        self.transition(node, ComponentState.STARTED)
        await emit(ComponentEvent(LifecycleEvent.STARTED, node))

    async def _wait_settled(self, node: ComponentNode) -> None:
        settled = node._settled
        if settled is not None:
            await settled.wait()
        if node.state in (ComponentState.STARTED, ComponentState.RELOADING):
            return
        if node._start_error is not None:
            raise LoadError(
                f"Component '{node.identifier}' failed to start: {node._start_error}",
                node.identifier,
            ) from node._start_error
        raise LoadError(
            f"Start of '{node.identifier}' was interrupted; stop it before retrying",
            node.identifier,
        )

    def _wrap(self, node: ComponentNode, exc: Exception) -> Exception:
        if isinstance(exc, ReloadKitError) or not self.wrap_load_errors:
            return exc
        wrapped = LoadError(
            f"Failed to start '{node.identifier}': {type(exc).__name__}: {exc}",
            node.identifier,
        )
        wrapped.__cause__ = exc
        return wrapped

    async def _abort(self, node: ComponentNode, error: Exception) -> None:
        logger.debug(f"Rolling back start of '{node.identifier}': {error}")
        if node.replaces is None:
            # A failed replacement is reported by reload() on the node it replaces.
            await self.report_error(node, error)

        former = node.parent
        for owner in node.owners():
            self.resolver.unlink(owner, node)
        if former is not None:
            node.former_parent = former

        await self._teardown(node)

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop(self, node: ComponentNode) -> None:
        """Tear down ``node`` and every child only it references.

        Stopping a disposed node does nothing.

        Raises:
            ReferenceStateError: Other nodes still reference ``node``, or a
                reload of it is in progress.
        """
        if node.state is ComponentState.DISPOSED:
            return
        if node.ref_count > 0:
            owners = ", ".join(o.identifier for o in node.owners())
            raise ReferenceStateError(
                f"Cannot stop '{node.identifier}': still referenced by {owners}",
                node.identifier,
                node.ref_count,
            )
        if node.state is ComponentState.RELOADING:
            raise ReferenceStateError(
                f"Cannot stop '{node.identifier}' while it is reloading",
                node.identifier,
                node.ref_count,
            )
        await self._teardown(node)

    async def detach(self, owner: ComponentNode, child: ComponentNode) -> bool:
        """Drop the edge ``owner -> child``; stop the child if now unreferenced.

        Returns:
            False if ``owner`` did not import ``child``.
        """
        if child not in owner.children:
            return False

        was_parent = child.parent is owner
        remaining = self.resolver.unlink(owner, child)
        logger.debug(
            f"Detached '{child.identifier}' from '{owner.identifier}' "
            f"(refs={remaining})"
        )
        if remaining == 0 and child.state is not ComponentState.DISPOSED:
            if was_parent:
                child.former_parent = owner
            await self._teardown(child)
        return True

    async def _teardown(self, node: ComponentNode) -> list[Exception]:
        """Dispose ``node``. Best effort: failures are reported, not raised."""
        if node.state in (ComponentState.STOPPING, ComponentState.DISPOSED):
            return []

        errors: list[Exception] = []
        self.transition(node, ComponentState.STOPPING)
        await emit(ComponentEvent(LifecycleEvent.BEFORE_STOP, node))
        await emit(ComponentEvent(LifecycleEvent.BEFORE_DISPOSE, node))

        with enter(node, Phase.DISPOSE, self.runtime):
            for hook in reversed(list(node.dispose_hooks)):
                try:
                    await _call(hook)
                except Exception as e:
                    errors.append(e)
                    await self.report_error(node, e)

        for child in reversed(list(node.children)):
            was_parent = child.parent is node
            remaining = self.resolver.unlink(node, child)
            if remaining > 0 or child.state is ComponentState.DISPOSED:
                continue
            if was_parent:
                child.former_parent = node
            try:
                errors.extend(await self._teardown(child))
            except Exception as e:
                errors.append(e)
                await self.report_error(node, e)
        node.children.clear()

        self.effects.release_all(node)
        node.mount_hooks.clear()
        node.dispose_hooks.clear()
        await emit(ComponentEvent(LifecycleEvent.STOPPED, node))

        self.transition(node, ComponentState.DISPOSED)
        self.resolver.forget(node)
        await emit(ComponentEvent(LifecycleEvent.DISPOSED, node))

        node.error_hooks.clear()
        node.events.clear()
        node.unit = None

        if errors:
            logger.warning(
                f"Teardown of '{node.identifier}' finished with {len(errors)} error(s)"
            )
        return errors

    # =========================================================================
    # Reload
    # =========================================================================

    async def reload(self, node: ComponentNode) -> ComponentNode:
        """Replace ``node`` with a freshly loaded instance.

        The replacement re-imports its dependencies; nodes that already exist
        are attached instead of being loaded again, so shared children keep
        their identity. Children only the old instance imported are
        disposed with it.

        Returns:
            The replacement node, now ``STARTED`` and registered.

        Raises:
            ReferenceStateError: The node is not ``STARTED``.
            ReloadRollbackError: The replacement failed to start; ``node``
                keeps running.
        """
        self._require_reloadable(node)
        await emit(ComponentEvent(LifecycleEvent.BEFORE_RELOAD, node))
        # Handlers of before-reload may have stopped or reloaded the node.
        self._require_reloadable(node)

        logger.info(f"Reloading '{node.identifier}'")
        self.transition(node, ComponentState.RELOADING)
        await emit(ComponentEvent(LifecycleEvent.RELOADING, node))

        replacement = self.resolver.create_replacement(node)
        replacement.former_parent = node
        try:
            await self.start(replacement)
        except asyncio.CancelledError:
            await self._teardown(replacement)
            if node.state is ComponentState.RELOADING:
                self.transition(node, ComponentState.STARTED)
            raise
        except Exception as exc:
            self.transition(node, ComponentState.STARTED, error=exc)
            logger.warning(
                f"Reload of '{node.identifier}' failed, keeping previous instance: {exc}"
            )
            await self.report_error(node, exc)
            await emit(ComponentEvent(LifecycleEvent.RELOAD_ERROR, node, error=exc))
            raise ReloadRollbackError(
                f"Reload of '{node.identifier}' failed; previous instance kept: {exc}",
                node.identifier,
            ) from exc

        if node.state is not ComponentState.RELOADING:
            # Torn down by someone else while the replacement was starting.
            await self._teardown(replacement)
            raise ReferenceStateError(
                f"'{node.identifier}' was stopped during its reload",
                node.identifier,
            )

        self._splice(node, replacement)
        await self._teardown(node)
        await emit(ComponentEvent(LifecycleEvent.RELOADED, replacement, previous=node))

        logger.info(f"Reloaded '{replacement.identifier}'")
        return replacement

    def _require_reloadable(self, node: ComponentNode) -> None:
        if node.state is not ComponentState.STARTED:
            raise ReferenceStateError(
                f"Cannot reload '{node.identifier}' while it is {node.state.value}",
                node.identifier,
                node.ref_count,
            )

    def _splice(self, node: ComponentNode, replacement: ComponentNode) -> None:
        """Put ``replacement`` everywhere ``node`` is. Synchronous."""
        parent = node.parent
        if parent is not None:
            parent.children[parent.children.index(node)] = replacement
            replacement.parent = parent
            node.parent = None
        replacement.former_parent = None

        for referrer in node.owners():
            if node in referrer.children:
                referrer.children[referrer.children.index(node)] = replacement
            replacement.refs.add(referrer)
        node.refs.clear()

        self.resolver.replace(node, replacement)

        for child in list(node.children):
            if child not in replacement.children:
                continue
            if child.parent is node:
                child.parent = replacement
                child.refs.discard(replacement)
            else:
                child.refs.discard(node)
            node.children.remove(child)

        replacement.events.adopt(node.events)
        node.former_parent = parent

    # =========================================================================
    # Error reporting
    # =========================================================================

    async def report_error(self, node: ComponentNode, error: BaseException) -> None:
        """Run ``node``'s error hooks and emit ``error`` (once per exception)."""
        for hook in list(node.error_hooks):
            try:
                await _call(hook, error)
            except Exception:
                logger.exception(f"Error hook of '{node.identifier}' raised")

        if getattr(error, _REPORTED, False):
            return
        setattr(error, _REPORTED, True)
        await emit(ComponentEvent(LifecycleEvent.ERROR, node, error=error))

    def report_error_soon(self, node: ComponentNode, error: BaseException) -> None:
        """Schedule :meth:`report_error` from synchronous code."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.error(
                f"Error in component '{node.identifier}' outside an event loop",
                exc_info=error,
            )
            return
        task = loop.create_task(self.report_error(node, error))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for scheduled error reports to be delivered."""
        while self._background:
            await asyncio.gather(*list(self._background))
