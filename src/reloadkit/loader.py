"""Loaders turn identifiers into executed code units.

A loader has two jobs: map an import request to a canonical identifier
(:meth:`Loader.resolve`) and execute the unit behind an identifier
(:meth:`Loader.load`). ``load`` runs inside the component's load frame, so
the unit can register hooks and import children through
:mod:`reloadkit.context`. Each call must execute the unit afresh; that is
what makes ``reload`` pick up new code.

Two loaders ship with the package:

- :class:`FactoryLoader` calls registered Python callables. Re-registering a
  factory and reloading its node is an in-process hot swap.
- :class:`ModuleLoader` executes Python files.
"""

from __future__ import annotations

import importlib.machinery
import importlib.util
import itertools
import logging
import posixpath
import sys
from abc import ABC, abstractmethod
from pathlib import Path
from types import CodeType
from typing import Any, Awaitable, Callable, Protocol, runtime_checkable

from reloadkit.errors import LoadError

logger = logging.getLogger(__name__)

Factory = Callable[[], Any]


@runtime_checkable
class Loader(Protocol):
    """What the runtime needs from a loader."""

    def resolve(self, identifier: str, base: str | None = None) -> str:
        """Canonical identifier for ``identifier`` imported from ``base``."""
        ...

    def load(self, identifier: str) -> Any | Awaitable[Any]:
        """Execute the unit; may return an awaitable."""
        ...


class BaseLoader(ABC):
    """Common resolution rules.

    Identifiers starting with ``./`` or ``../`` are relative to the
    directory of the importing identifier; everything else is used as is.
    """

    def resolve(self, identifier: str, base: str | None = None) -> str:
        if base is not None and identifier.startswith(("./", "../")):
            return posixpath.normpath(posixpath.join(posixpath.dirname(base), identifier))
        return identifier

    @abstractmethod
    def load(self, identifier: str) -> Any | Awaitable[Any]:
        ...


class FactoryLoader(BaseLoader):
    """Loader backed by registered factories.

    Example:
        >>> loader = FactoryLoader()
        >>> @loader.component("app")
        ... def app():
        ...     db = context.import_child("db")
        ...     return {"db": db}
    """

    def __init__(self, factories: dict[str, Factory] | None = None) -> None:
        self._factories: dict[str, Factory] = dict(factories or {})

    def register(self, identifier: str, factory: Factory) -> None:
        """Register (or replace) the factory for ``identifier``."""
        if identifier in self._factories:
            logger.debug(f"Replacing factory for {identifier}")
        self._factories[identifier] = factory

    def component(self, identifier: str) -> Callable[[Factory], Factory]:
        """Decorator form of :meth:`register`."""

        def decorator(factory: Factory) -> Factory:
            self.register(identifier, factory)
            return factory

        return decorator

    def unregister(self, identifier: str) -> bool:
        return self._factories.pop(identifier, None) is not None

    def identifiers(self) -> list[str]:
        return sorted(self._factories)

    def load(self, identifier: str) -> Any:
        factory = self._factories.get(identifier)
        if factory is None:
            raise LoadError(f"No factory registered for '{identifier}'", identifier)
        return factory()

    def __contains__(self, identifier: object) -> bool:
        return identifier in self._factories

    def __len__(self) -> int:
        return len(self._factories)


class ModuleLoader(BaseLoader):
    """Loader that executes Python source files.

    Identifiers are absolute file paths. Every load builds a new module
    object from the file; the module is only present in ``sys.modules``
    while it executes. If the module defines an ``async def setup()``, it
    is awaited inside the load phase and the module is the unit.

    Args:
        base_dir: Directory for identifiers that are neither absolute nor
            relative to an importing file. Defaults to the working directory.
        suffix: Extension appended when an identifier has none.
    """

    def __init__(self, base_dir: str | Path | None = None, suffix: str = ".py") -> None:
        self.base_dir = Path(base_dir) if base_dir is not None else Path.cwd()
        self.suffix = suffix
        self._counter = itertools.count(1)

    def resolve(self, identifier: str, base: str | None = None) -> str:
        path = Path(identifier)
        if not path.is_absolute():
            if base is not None and identifier.startswith(("./", "../")):
                path = Path(base).parent / path
            else:
                path = self.base_dir / path
        if not path.suffix:
            path = path.with_suffix(self.suffix)
        return str(path.resolve())

    def load(self, identifier: str) -> Any:
        path = Path(identifier)
        if not path.is_file():
            raise LoadError(f"Module file not found: {path}", identifier)

        module_name = f"_reloadkit_unit_{path.stem}_{next(self._counter)}"
        loader = _FreshSourceLoader(module_name, str(path))
        spec = importlib.util.spec_from_file_location(module_name, path, loader=loader)
        if spec is None or spec.loader is None:
            raise LoadError(f"Cannot create a module spec for {path}", identifier)

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        finally:
            sys.modules.pop(module_name, None)
        logger.debug(f"Executed {path} as {module_name}")

        setup = getattr(module, "setup", None)
        if callable(setup):
            result = setup()
            if hasattr(result, "__await__"):
                return _await_then(result, module)
        return module


class _FreshSourceLoader(importlib.machinery.SourceFileLoader):
    """Source loader that compiles from the file on every call.

    Bytecode is neither read from nor written to ``__pycache__``; a file
    rewritten within one mtime tick must still load its new contents.
    """

    def get_code(self, fullname: str) -> CodeType:
        try:
            source = self.get_data(self.path)
        except OSError as e:
            raise LoadError(f"Cannot read {self.path}: {e}", self.path) from e
        return self.source_to_code(source, self.path)


async def _await_then(awaitable: Awaitable[Any], value: Any) -> Any:
    await awaitable
    return value
