"""Named hooks for component code.

The hook registry maps names to handlers that operate on the current
component. Component code asks for a hook by name and calls it; the
registry supplies the current component as the handler's first argument.
Libraries built on reloadkit can add their own hooks next to the built-ins.

Built-in Hooks:
    - on_mount: register a mount hook
    - on_dispose: register a dispose hook
    - on_error: register an error hook
    - import_child: import another unit as a child
    - add_listener: subscribe to an event bus; returns an unsubscribe callable

Example:
    >>> from reloadkit.hooks import register_hook, use_hook
    >>>
    >>> def use_name(node):
    ...     return node.name
    ...
    >>> register_hook("use_name", use_name)
    >>> use_hook("use_name")()  # inside component code
    'app'
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

from reloadkit import context
from reloadkit.errors import HookRegistrationError

if TYPE_CHECKING:
    from reloadkit.graph.node import ComponentNode

logger = logging.getLogger(__name__)

HookHandler = Callable[..., Any]


@dataclass
class Hook:
    """A named hook.

    Attributes:
        name: Name component code uses to look the hook up.
        handler: Called with the current component followed by the caller's
            arguments.
        description: Human-readable summary.
        builtin: Whether the hook ships with reloadkit.
    """

    name: str
    handler: HookHandler
    description: str = ""
    builtin: bool = False

    def __call__(self, node: "ComponentNode", *args: Any, **kwargs: Any) -> Any:
        return self.handler(node, *args, **kwargs)


# =============================================================================
# Hook Registry
# =============================================================================


class HookRegistry:
    """Registry of named hooks."""

    def __init__(self, *, builtins: bool = True) -> None:
        self._hooks: dict[str, Hook] = {}
        if builtins:
            _register_builtins(self)

    def register(
        self,
        name: str,
        handler: HookHandler,
        description: str = "",
        *,
        builtin: bool = False,
    ) -> Hook:
        """Register a hook, replacing any hook of the same name."""
        if name in self._hooks:
            logger.warning(f"Hook '{name}' is already registered; overwriting")
        hook = Hook(name=name, handler=handler, description=description, builtin=builtin)
        self._hooks[name] = hook
        logger.debug(f"Registered hook '{name}'")
        return hook

    def unregister(self, name: str) -> bool:
        return self._hooks.pop(name, None) is not None

    def get(self, name: str) -> Hook:
        try:
            return self._hooks[name]
        except KeyError:
            raise KeyError(f"Hook '{name}' is not registered") from None

    def use(self, name: str) -> Callable[..., Any]:
        """Return a callable that runs hook ``name`` for the current component.

        The hook is looked up when the callable is invoked, so hooks
        registered later are honoured.
        """

        def call(*args: Any, **kwargs: Any) -> Any:
            hook = self.get(name)
            node = context.get_current_component()
            if node is None:
                raise HookRegistrationError(
                    f"Hook '{name}' called outside of any component"
                )
            return hook(node, *args, **kwargs)

        call.__name__ = name
        return call

    def names(self) -> list[str]:
        return list(self._hooks)

    def all(self) -> dict[str, Hook]:
        return dict(self._hooks)

    def clear(self) -> None:
        self._hooks.clear()

    def __contains__(self, name: object) -> bool:
        return name in self._hooks

    def __len__(self) -> int:
        return len(self._hooks)

    def __repr__(self) -> str:
        return f"<HookRegistry hooks={self.names()}>"


# =============================================================================
# Built-in hooks
# =============================================================================


def _on_mount(node: "ComponentNode", fn: HookHandler) -> HookHandler:
    return context.on_mount(fn)


def _on_dispose(node: "ComponentNode", fn: HookHandler) -> HookHandler:
    return context.on_dispose(fn)


def _on_error(node: "ComponentNode", fn: HookHandler) -> HookHandler:
    return context.on_error(fn)


def _import_child(node: "ComponentNode", identifier: str) -> "ComponentNode":
    return context.import_child(identifier)


def _add_listener(
    node: "ComponentNode",
    bus: Any,
    event: str,
    handler: HookHandler,
) -> Callable[[], bool]:
    handle = context.listen(bus, event, handler)
    return handle.cancel


def _register_builtins(registry: HookRegistry) -> None:
    registry.register("on_mount", _on_mount, "Run a callback after mount", builtin=True)
    registry.register("on_dispose", _on_dispose, "Run a callback on teardown", builtin=True)
    registry.register("on_error", _on_error, "Receive lifecycle errors", builtin=True)
    registry.register(
        "import_child", _import_child, "Import a unit as a child", builtin=True
    )
    registry.register(
        "add_listener",
        _add_listener,
        "Subscribe to an event bus for the component's lifetime",
        builtin=True,
    )


# =============================================================================
# Global registry
# =============================================================================


_global_hooks: HookRegistry | None = None


def get_hook_registry() -> HookRegistry:
    """Get the global hook registry."""
    global _global_hooks
    if _global_hooks is None:
        _global_hooks = HookRegistry()
    return _global_hooks


def reset_hook_registry() -> None:
    """Reset the global hook registry to the built-ins."""
    global _global_hooks
    _global_hooks = None


def register_hook(name: str, handler: HookHandler, description: str = "") -> Hook:
    return get_hook_registry().register(name, handler, description)


def unregister_hook(name: str) -> bool:
    return get_hook_registry().unregister(name)


def has_hook(name: str) -> bool:
    return name in get_hook_registry()


def get_all_hooks() -> dict[str, Hook]:
    return get_hook_registry().all()


def use_hook(name: str) -> Callable[..., Any]:
    """Look up hook ``name``.

    Raises:
        KeyError: If no hook of that name is registered.
    """
    get_hook_registry().get(name)
    return get_hook_registry().use(name)
