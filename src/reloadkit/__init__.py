"""reloadkit: component lifecycle and hot-reload runtime.

Code units are loaded as components in a reference-counted dependency
graph. Components can be reloaded in place: the replacement re-attaches
dependencies that other components share, and every timer and listener the
old instance created is reclaimed automatically.

Features:
    - Graph: deduplicated imports, ref counting, cycle rejection
    - Lifecycle: ordered start with rollback, reference-counted teardown
    - Reload: hot swap that preserves shared nodes, atomic on failure
    - Context: task-scoped current component for hooks and effects
    - Effects: timers and listeners owned by components
    - Watching: file-change driven reloads

Example:
    >>> from reloadkit import FactoryLoader, Runtime, context
    >>> loader = FactoryLoader()
    >>> @loader.component("app")
    ... def app():
    ...     db = context.import_child("db")
    ...     context.on_mount(lambda: print("app mounted"))
    >>> loader.register("db", lambda: None)
    >>> runtime = Runtime(loader)
    >>> root = await runtime.load("app")
    >>> print(root.print_tree())
"""

from __future__ import annotations

from reloadkit import context
from reloadkit.config import RuntimeConfig
from reloadkit.context import (
    get_current_component,
    import_child,
    on_dispose,
    on_error,
    on_mount,
    require,
)
from reloadkit.effects import (
    Clock,
    EffectHandle,
    EffectKind,
    EffectRegistry,
    LoopClock,
    ManualClock,
)
from reloadkit.errors import (
    ConfigError,
    CycleError,
    HookRegistrationError,
    LoadError,
    ReferenceStateError,
    ReloadKitError,
    ReloadRollbackError,
)
from reloadkit.events import ComponentEvent, EventBus, LifecycleEvent
from reloadkit.graph import ComponentNode, ComponentState, DependencyResolver
from reloadkit.hooks import (
    get_all_hooks,
    has_hook,
    register_hook,
    unregister_hook,
    use_hook,
)
from reloadkit.lifecycle import LifecycleRunner, LifecycleTransition
from reloadkit.loader import FactoryLoader, Loader, ModuleLoader
from reloadkit.runtime import Runtime
from reloadkit.watcher import FileWatcher, ReloadResult, ReloadTrigger

# Version: Single source of truth from pyproject.toml
try:
    from importlib.metadata import PackageNotFoundError, version

    __version__ = version("reloadkit")
except PackageNotFoundError:
    # Package not installed (development mode)
    __version__ = "0.0.0.dev"

__all__ = [
    # Runtime
    "Runtime",
    "RuntimeConfig",
    # Graph
    "ComponentNode",
    "ComponentState",
    "DependencyResolver",
    # Lifecycle
    "LifecycleRunner",
    "LifecycleTransition",
    # Context and hooks
    "context",
    "get_current_component",
    "import_child",
    "require",
    "on_mount",
    "on_dispose",
    "on_error",
    "register_hook",
    "unregister_hook",
    "has_hook",
    "get_all_hooks",
    "use_hook",
    # Effects
    "Clock",
    "LoopClock",
    "ManualClock",
    "EffectHandle",
    "EffectKind",
    "EffectRegistry",
    # Events
    "ComponentEvent",
    "EventBus",
    "LifecycleEvent",
    # Loaders
    "Loader",
    "FactoryLoader",
    "ModuleLoader",
    # Watching
    "FileWatcher",
    "ReloadTrigger",
    "ReloadResult",
    # Errors
    "ReloadKitError",
    "CycleError",
    "LoadError",
    "HookRegistrationError",
    "ReferenceStateError",
    "ReloadRollbackError",
    "ConfigError",
    # Version
    "__version__",
]
