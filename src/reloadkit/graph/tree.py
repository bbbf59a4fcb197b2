"""Text and dictionary renderings of a component graph.

Diagnostics only; nothing in the runtime reads these back.

A node's owned children are expanded below it. A child the node only
references is printed once, marked ``ref``, with the name of its owner, and
is expanded under that owner instead. A child whose owner is gone (stopped
while others still referenced it) is expanded under the first node that
lists it:

    app [started]
    ├── db [started] <- refs: cache
    └── cache [started]
        └── db [started] (ref, owned by app)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from reloadkit.graph.node import ComponentNode


def _label(node: "ComponentNode") -> str:
    label = f"{node.name} [{node.state.value}]"
    if node.refs:
        label += " <- refs: " + ", ".join(sorted(r.name for r in node.refs))
    return label


def _ref_label(node: "ComponentNode") -> str:
    owner = node.parent.name if node.parent is not None else "-"
    return f"{node.name} [{node.state.value}] (ref, owned by {owner})"


def _owns(parent: "ComponentNode", child: "ComponentNode", expanded: set[int]) -> bool:
    if child.parent is parent:
        return True
    return child.parent is None and id(child) not in expanded


def render_tree(node: "ComponentNode") -> str:
    """Render ``node`` and its owned descendants.

    Output is deterministic: children appear in import order and refs are
    sorted by name.
    """
    lines = [_label(node)]
    expanded = {id(node)}

    def walk(parent: "ComponentNode", indent: str) -> None:
        for index, child in enumerate(parent.children):
            is_last = index == len(parent.children) - 1
            branch = "└── " if is_last else "├── "
            if _owns(parent, child, expanded):
                expanded.add(id(child))
                lines.append(indent + branch + _label(child))
                walk(child, indent + ("    " if is_last else "│   "))
            else:
                lines.append(indent + branch + _ref_label(child))

    walk(node, "")
    return "\n".join(lines) + "\n"


def node_to_dict(node: "ComponentNode") -> dict[str, Any]:
    """JSON-friendly description of ``node`` and its owned descendants."""
    return _to_dict(node, {id(node)})


def _to_dict(node: "ComponentNode", expanded: set[int]) -> dict[str, Any]:
    children: list[dict[str, Any]] = []
    for child in node.children:
        if _owns(node, child, expanded):
            expanded.add(id(child))
            children.append(_to_dict(child, expanded))
        else:
            children.append({
                "identifier": child.identifier,
                "name": child.name,
                "state": child.state.value,
                "ref": True,
            })

    return {
        "identifier": node.identifier,
        "name": node.name,
        "state": node.state.value,
        "parent": node.parent.identifier if node.parent is not None else None,
        "refs": sorted(r.identifier for r in node.refs),
        "hooks": {
            "mount": len(node.mount_hooks),
            "dispose": len(node.dispose_hooks),
            "error": len(node.error_hooks),
        },
        "effects": len(node.effects),
        "listeners": node.events.listener_count(),
        "children": children,
    }
