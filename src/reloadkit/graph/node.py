"""Component nodes.

A :class:`ComponentNode` is one loaded code unit: its identity, lifecycle
state, ownership edges and the hooks and effects the runtime holds on its
behalf. Nodes are created by the
:class:`~reloadkit.graph.resolver.DependencyResolver` and driven by the
:class:`~reloadkit.lifecycle.runner.LifecycleRunner`; user code only
observes them.
"""

from __future__ import annotations

import asyncio
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterator

from reloadkit.events import EventBus, EventHandler, LifecycleEvent

if TYPE_CHECKING:
    from reloadkit.effects import EffectHandle

Hook = Callable[..., Any]


class ComponentState(str, Enum):
    """Lifecycle states for a component."""

    UNLOADED = "unloaded"  # Created, code not executed
    LOADING = "loading"  # Load phase running
    MOUNTED = "mounted"  # Mount hooks done
    STARTED = "started"  # Whole owning subtree mounted
    RELOADING = "reloading"  # Replacement being built
    STOPPING = "stopping"  # Teardown running
    DISPOSED = "disposed"  # Gone for good


def display_name(identifier: str) -> str:
    """Short name for an identifier: basename without extension."""
    base = os.path.basename(identifier.rstrip("/\\")) or identifier
    stem, _ = os.path.splitext(base)
    return stem or base


@dataclass(eq=False)
class ComponentNode:
    """Node in the component graph.

    Equality is identity: two nodes for the same identifier (an old
    instance and its replacement) are different nodes.

    Attributes:
        identifier: Canonical key of the code unit.
        state: Current lifecycle state.
        parent: Owning node, ``None`` for a root.
        refs: Non-owning dependents.
        children: Imported nodes, in import order.
        mount_hooks: Callbacks run after the load phase, in order.
        dispose_hooks: Callbacks run on teardown, in reverse order.
        error_hooks: Callbacks receiving lifecycle exceptions.
        effects: Live effect handles owned by this node.
        unit: Whatever the loader returned for this node.
        events: Subscribers to this node's lifecycle events.
        replaces: The node this one is being built to replace.
        former_parent: Owner this node was detached from during teardown
            or a failed reload; events keep bubbling through it.
    """

    identifier: str
    state: ComponentState = ComponentState.UNLOADED
    parent: ComponentNode | None = None
    refs: set[ComponentNode] = field(default_factory=set)
    children: list[ComponentNode] = field(default_factory=list)
    mount_hooks: list[Hook] = field(default_factory=list)
    dispose_hooks: list[Hook] = field(default_factory=list)
    error_hooks: list[Hook] = field(default_factory=list)
    effects: set["EffectHandle"] = field(default_factory=set)
    unit: Any = None
    events: EventBus = field(default_factory=EventBus)
    replaces: ComponentNode | None = None
    former_parent: ComponentNode | None = field(default=None, repr=False)
    _settled: asyncio.Event | None = field(default=None, repr=False)
    _start_error: BaseException | None = field(default=None, repr=False)

    # =========================================================================
    # Identity and references
    # =========================================================================

    @property
    def name(self) -> str:
        """Display name derived from the identifier."""
        return display_name(self.identifier)

    @property
    def ref_count(self) -> int:
        """Owner edge plus additional references."""
        return (1 if self.parent is not None else 0) + len(self.refs)

    @property
    def is_root(self) -> bool:
        return self.parent is None

    @property
    def depth(self) -> int:
        """Distance from the root along parent edges (root is 0)."""
        depth = 0
        current = self.parent
        while current is not None:
            depth += 1
            current = current.parent
        return depth

    def owners(self) -> list[ComponentNode]:
        """Parent first, then refs in a stable order."""
        owners = [self.parent] if self.parent is not None else []
        owners.extend(sorted(self.refs, key=lambda n: n.identifier))
        return owners

    def root(self) -> ComponentNode:
        """Follow parent edges to the root."""
        current = self
        while current.parent is not None:
            current = current.parent
        return current

    def path(self) -> list[ComponentNode]:
        """Nodes from the root down to this node."""
        chain: list[ComponentNode] = []
        current: ComponentNode | None = self
        while current is not None:
            chain.insert(0, current)
            current = current.parent
        return chain

    def find_child(self, name_or_identifier: str) -> ComponentNode | None:
        """Depth-first search below this node by name or identifier."""
        for child in self.walk():
            if child is self:
                continue
            if name_or_identifier in (child.identifier, child.name):
                return child
        return None

    def walk(self) -> Iterator[ComponentNode]:
        """Pre-order traversal, each node once."""
        seen: set[int] = set()
        stack = [self]
        while stack:
            node = stack.pop()
            if id(node) in seen:
                continue
            seen.add(id(node))
            yield node
            stack.extend(reversed(node.children))

    # =========================================================================
    # Events
    # =========================================================================

    def on(
        self,
        event: LifecycleEvent | str,
        handler: EventHandler,
    ) -> Callable[[], None]:
        """Subscribe to an event on this node (and everything below it).

        Returns:
            A callable that removes the subscription.
        """
        return self.events.on(event, handler)

    # =========================================================================
    # Introspection
    # =========================================================================

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary (children nested)."""
        from reloadkit.graph.tree import node_to_dict

        return node_to_dict(self)

    def print_tree(self) -> str:
        """Render this node and its descendants as a text tree."""
        from reloadkit.graph.tree import render_tree

        return render_tree(self)

    def __repr__(self) -> str:
        return (
            f"<ComponentNode {self.name!r} state={self.state.value} "
            f"refs={self.ref_count} children={len(self.children)}>"
        )
