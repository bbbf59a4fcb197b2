"""Dependency resolution for components.

The :class:`DependencyResolver` owns the identity table (one live node per
identifier) and is the only place where ownership edges are created. It
deduplicates imports, so a unit imported from several places is loaded once
and reference counted, and it rejects imports that would close a cycle
before anything is executed or mutated.

Example:
    >>> resolver = DependencyResolver()
    >>> app = resolver.resolve("app")
    >>> db = resolver.resolve("db", requester=app)
    >>> cache = resolver.resolve("cache", requester=app)
    >>> resolver.resolve("db", requester=cache) is db
    True
    >>> db.ref_count
    2
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, Iterator

from reloadkit.errors import CycleError
from reloadkit.graph.node import ComponentNode, ComponentState

logger = logging.getLogger(__name__)


class DependencyResolver:
    """Identity table and edge bookkeeping for one component graph."""

    def __init__(self) -> None:
        self._nodes: dict[str, ComponentNode] = {}

    # =========================================================================
    # Resolution
    # =========================================================================

    def resolve(
        self,
        identifier: str,
        requester: ComponentNode | None = None,
    ) -> ComponentNode:
        """Return the node for ``identifier``, creating it if needed.

        If a live node exists, ``requester`` becomes an additional reference
        (unless it already owns the node) and no code is re-executed.
        Otherwise a new ``UNLOADED`` node owned by ``requester`` is created
        and registered. In both cases the node is appended to
        ``requester.children`` if it is not there yet.

        Args:
            identifier: Canonical identifier of the unit.
            requester: Importing node, or None to create a root.

        Returns:
            The resolved node. New nodes still need to be started.

        Raises:
            CycleError: If ``identifier`` is ``requester`` or one of its
                ancestors. The graph is left untouched.
        """
        if requester is not None:
            chain = self.ancestor_chain(requester, identifier)
            if chain is not None:
                raise CycleError(identifier, chain)

        existing = self._nodes.get(identifier)
        if existing is not None and existing.state is not ComponentState.DISPOSED:
            if requester is not None:
                if existing.parent is not requester:
                    existing.refs.add(requester)
                if existing not in requester.children:
                    requester.children.append(existing)
                logger.debug(
                    f"Resolved existing {identifier} for {requester.identifier} "
                    f"(refs={existing.ref_count})"
                )
            return existing

        node = ComponentNode(identifier=identifier, parent=requester)
        self._nodes[identifier] = node
        if requester is not None:
            requester.children.append(node)
        logger.debug(
            f"Created {identifier}"
            + (f" under {requester.identifier}" if requester is not None else " as root")
        )
        return node

    def ancestor_chain(
        self,
        requester: ComponentNode,
        identifier: str,
    ) -> list[str] | None:
        """Find ``identifier`` among ``requester`` and its ancestors.

        Ancestors are reached through parent edges, refs, and, for a
        replacement under construction, the ancestors of the node it
        replaces.

        Returns:
            Identifiers from the matching ancestor down to ``requester``,
            or None if ``identifier`` is not an ancestor.
        """
        below: dict[int, ComponentNode | None] = {id(requester): None}
        queue = deque([requester])

        while queue:
            node = queue.popleft()
            if node.identifier == identifier:
                chain: list[str] = []
                current: ComponentNode | None = node
                while current is not None:
                    chain.append(current.identifier)
                    current = below[id(current)]
                return chain

            upward = node.owners()
            if node.replaces is not None:
                upward.append(node.replaces)
            for owner in upward:
                if id(owner) not in below:
                    below[id(owner)] = node
                    queue.append(owner)

        return None

    # =========================================================================
    # Edge and table maintenance
    # =========================================================================

    def create_replacement(self, node: ComponentNode) -> ComponentNode:
        """Create an unregistered ``UNLOADED`` node that will replace ``node``."""
        return ComponentNode(identifier=node.identifier, replaces=node)

    def replace(self, old: ComponentNode, new: ComponentNode) -> None:
        """Point the identity table at ``new`` instead of ``old``."""
        if self._nodes.get(old.identifier) is old or old.identifier not in self._nodes:
            self._nodes[new.identifier] = new
        new.replaces = None

    def unlink(self, owner: ComponentNode, child: ComponentNode) -> int:
        """Remove the edge ``owner -> child``.

        Returns:
            The child's remaining ref count.
        """
        if child.parent is owner:
            child.parent = None
        else:
            child.refs.discard(owner)
        if child in owner.children:
            owner.children.remove(child)
        return child.ref_count

    def forget(self, node: ComponentNode) -> bool:
        """Drop ``node`` from the identity table if it is the registered one."""
        if self._nodes.get(node.identifier) is node:
            del self._nodes[node.identifier]
            logger.debug(f"Forgot {node.identifier}")
            return True
        return False

    # =========================================================================
    # Queries
    # =========================================================================

    def get(self, identifier: str) -> ComponentNode | None:
        return self._nodes.get(identifier)

    def nodes(self) -> list[ComponentNode]:
        """Registered nodes in registration order."""
        return list(self._nodes.values())

    def roots(self) -> list[ComponentNode]:
        """Registered nodes nothing references."""
        return [n for n in self._nodes.values() if n.ref_count == 0]

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """Plain, comparable description of the whole graph.

        Two snapshots are equal iff the table, states and edges are equal.
        """
        return {
            identifier: {
                "state": node.state.value,
                "parent": node.parent.identifier if node.parent is not None else None,
                "refs": sorted(r.identifier for r in node.refs),
                "children": [c.identifier for c in node.children],
            }
            for identifier, node in sorted(self._nodes.items())
        }

    def detect_cycles(self) -> list[list[str]]:
        """Detect cycles along ``children`` edges.

        Uses DFS-based cycle detection.

        Returns:
            List of cycles, each a list of identifiers.
        """
        cycles: list[list[str]] = []
        visited: set[int] = set()
        rec_stack: set[int] = set()
        path: list[ComponentNode] = []

        def dfs(node: ComponentNode) -> None:
            visited.add(id(node))
            rec_stack.add(id(node))
            path.append(node)

            for child in node.children:
                if id(child) not in visited:
                    dfs(child)
                elif id(child) in rec_stack:
                    start = next(i for i, n in enumerate(path) if n is child)
                    cycles.append([n.identifier for n in path[start:]] + [child.identifier])

            path.pop()
            rec_stack.discard(id(node))

        for node in self._nodes.values():
            if id(node) not in visited:
                dfs(node)

        return cycles

    def validate(self) -> list[str]:
        """Check the graph invariants.

        Checks for:
        - edges that are not mirrored on both ends
        - disposed nodes that are still referenced or registered
        - cycles

        Returns:
            List of violations (empty when the graph is consistent).
        """
        errors: list[str] = []

        for identifier, node in self._nodes.items():
            if node.identifier != identifier:
                errors.append(f"Table key '{identifier}' maps to node '{node.identifier}'")
            if node.state is ComponentState.DISPOSED:
                errors.append(f"Disposed node '{identifier}' is still registered")

            for owner in node.owners():
                if node not in owner.children:
                    errors.append(
                        f"'{owner.identifier}' owns or refs '{identifier}' "
                        f"but does not list it as a child"
                    )
            for child in node.children:
                if child.parent is not node and node not in child.refs:
                    errors.append(
                        f"'{identifier}' lists child '{child.identifier}' "
                        f"without an edge to it"
                    )
                if child.state is ComponentState.DISPOSED:
                    errors.append(
                        f"'{identifier}' still lists disposed child '{child.identifier}'"
                    )

        for cycle in self.detect_cycles():
            errors.append(f"Circular dependency: {' -> '.join(cycle)}")

        return errors

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[str]:
        return iter(self._nodes)

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._nodes

    def __repr__(self) -> str:
        return f"<DependencyResolver nodes={len(self._nodes)}>"
