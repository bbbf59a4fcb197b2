"""The runtime: one component graph and everything that drives it.

Example:
    >>> loader = FactoryLoader()
    >>> @loader.component("app")
    ... def app():
    ...     context.import_child("db")
    >>> loader.register("db", lambda: {"pool": []})
    >>>
    >>> async with Runtime(loader) as runtime:
    ...     root = await runtime.load("app")
    ...     print(runtime.print_tree())
    ...     root = await runtime.reload(root)
"""

from __future__ import annotations

import logging
from typing import Any

from reloadkit.config import RuntimeConfig
from reloadkit.effects import Clock, EffectRegistry
from reloadkit.graph.node import ComponentNode, ComponentState
from reloadkit.graph.resolver import DependencyResolver
from reloadkit.graph.tree import render_tree
from reloadkit.lifecycle.runner import LifecycleRunner, LifecycleTransition
from reloadkit.loader import Loader

logger = logging.getLogger(__name__)


class Runtime:
    """Owns a component graph and its lifecycle.

    Args:
        loader: Resolves and executes code units.
        clock: Time source for effects (defaults to the asyncio loop).
        config: Runtime configuration.
    """

    def __init__(
        self,
        loader: Loader,
        *,
        clock: Clock | None = None,
        config: RuntimeConfig | None = None,
    ) -> None:
        self.config = config or RuntimeConfig()
        self.loader = loader
        self.resolver = DependencyResolver()
        self.effects = EffectRegistry(clock, on_error=self._on_effect_error)
        self.effects.runtime = self
        self.runner = LifecycleRunner(
            self.resolver,
            loader,
            self.effects,
            runtime=self,
            max_history=self.config.max_history,
            wrap_load_errors=self.config.wrap_load_errors,
        )

    # =========================================================================
    # Graph
    # =========================================================================

    def root(self, identifier: str) -> ComponentNode:
        """Resolve ``identifier`` as a root node without starting it."""
        return self.resolver.resolve(self.loader.resolve(identifier, None))

    def import_child(self, parent: ComponentNode, identifier: str) -> ComponentNode:
        """Resolve ``identifier`` as imported by ``parent``."""
        canonical = self.loader.resolve(identifier, parent.identifier)
        return self.resolver.resolve(canonical, parent)

    def get(self, identifier: str) -> ComponentNode | None:
        return self.resolver.get(identifier)

    def roots(self) -> list[ComponentNode]:
        return self.resolver.roots()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def load(self, identifier: str) -> ComponentNode:
        """Resolve ``identifier`` as a root and start it."""
        node = self.root(identifier)
        await self.start(node)
        return node

    async def start(self, node: ComponentNode) -> None:
        await self.runner.start(node)

    async def stop(self, node: ComponentNode) -> None:
        await self.runner.stop(node)

    async def reload(self, node: ComponentNode) -> ComponentNode:
        return await self.runner.reload(node)

    async def detach(self, owner: ComponentNode, child: ComponentNode) -> bool:
        return await self.runner.detach(owner, child)

    async def shutdown(self) -> None:
        """Stop every root, newest first."""
        for node in reversed(self.resolver.roots()):
            if node.state is not ComponentState.DISPOSED:
                await self.runner.stop(node)
        await self.runner.drain()
        logger.debug("Runtime shut down")

    async def __aenter__(self) -> "Runtime":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # =========================================================================
    # Introspection
    # =========================================================================

    def print_tree(self, node: ComponentNode | None = None) -> str:
        """Text tree of ``node``, or of every root when omitted."""
        if node is not None:
            return render_tree(node)
        return "".join(render_tree(root) for root in self.resolver.roots())

    def snapshot(self) -> dict[str, dict[str, Any]]:
        return self.resolver.snapshot()

    def validate(self) -> list[str]:
        return self.resolver.validate()

    def history(
        self,
        identifier: str | None = None,
        limit: int = 100,
    ) -> list[LifecycleTransition]:
        return self.runner.get_history(identifier, limit)

    def _on_effect_error(self, node: ComponentNode, error: BaseException) -> None:
        self.runner.report_error_soon(node, error)

    def __repr__(self) -> str:
        return f"<Runtime nodes={len(self.resolver)} effects={len(self.effects)}>"
