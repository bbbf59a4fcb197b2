"""Component graph: nodes, identity table and renderings."""

from __future__ import annotations

from reloadkit.graph.node import ComponentNode, ComponentState, display_name
from reloadkit.graph.resolver import DependencyResolver
from reloadkit.graph.tree import node_to_dict, render_tree

__all__ = [
    "ComponentNode",
    "ComponentState",
    "DependencyResolver",
    "display_name",
    "node_to_dict",
    "render_tree",
]
