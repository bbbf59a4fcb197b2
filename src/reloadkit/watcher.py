"""File watching and reload triggering.

:class:`FileWatcher` polls modification times and reports which files were
added, modified or deleted since the previous poll. :class:`ReloadTrigger`
turns those paths into nodes and reloads them. A failed reload is logged
and recorded; the previous instance keeps running.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from fnmatch import fnmatch
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Sequence

from reloadkit.errors import ReloadKitError
from reloadkit.graph.node import ComponentState

if TYPE_CHECKING:
    from reloadkit.graph.node import ComponentNode
    from reloadkit.runtime import Runtime

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[list[Path]], Any]


@dataclass
class ReloadResult:
    """Outcome of one watcher-triggered reload.

    Attributes:
        success: The replacement is now running.
        identifier: Component that was reloaded.
        duration_ms: Wall time of the reload.
        error: Failure message, if any.
        rolled_back: The previous instance was kept.
    """

    success: bool
    identifier: str
    duration_ms: float = 0.0
    error: str | None = None
    rolled_back: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class WatchHandle:
    watch_id: str
    path: Path
    task: asyncio.Task | None = None

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()


class FileWatcher:
    """Polling file watcher.

    Each poll scans the watched tree, builds a ``path -> mtime`` map and
    diffs it against the previous one. Polling keeps the watcher free of
    platform-specific notification APIs.

    Args:
        poll_interval: Seconds between polls.
        patterns: File-name globs tracked inside directories. A watched
            file path is always tracked.
    """

    def __init__(
        self,
        poll_interval: float = 1.0,
        patterns: Sequence[str] = ("*.py",),
    ) -> None:
        self.poll_interval = poll_interval
        self.patterns = tuple(patterns)
        self._mtimes: dict[Path, float] = {}
        self._handles: dict[str, WatchHandle] = {}

    async def watch(
        self,
        path: Path,
        callback: ChangeCallback,
        recursive: bool = True,
    ) -> WatchHandle:
        """Poll ``path`` and call ``callback`` with every non-empty change set.

        Watching a path that is already watched replaces the earlier watch.
        ``callback`` may be a coroutine function.
        """
        watch_id = str(path)
        self.stop(watch_id)
        self.snapshot(path, recursive)

        handle = WatchHandle(watch_id=watch_id, path=path)
        handle.task = asyncio.create_task(self._poll(path, callback, recursive))
        self._handles[watch_id] = handle
        logger.debug(f"Watching {path} every {self.poll_interval}s")
        return handle

    async def _poll(self, path: Path, callback: ChangeCallback, recursive: bool) -> None:
        try:
            while True:
                await asyncio.sleep(self.poll_interval)
                changed = self.check(path, recursive)
                if not changed:
                    continue
                logger.info(f"Changed: {', '.join(str(p) for p in changed)}")
                outcome = callback(changed)
                if inspect.isawaitable(outcome):
                    await outcome
        except asyncio.CancelledError:
            logger.debug(f"Stopped watching {path}")

    def snapshot(self, path: Path, recursive: bool = True) -> None:
        """Remember the current state of ``path`` without reporting it."""
        self._forget_under(path)
        self._mtimes.update(self._scan(path, recursive))

    def check(self, path: Path, recursive: bool = True) -> list[Path]:
        """Paths under ``path`` added, modified or deleted since the last look.

        Returns:
            Changed paths, sorted.
        """
        current = self._scan(path, recursive)
        previous = self._forget_under(path)
        self._mtimes.update(current)

        changed = {p for p, mtime in current.items() if previous.get(p) != mtime}
        changed.update(p for p in previous if p not in current)
        return sorted(changed)

    def _scan(self, path: Path, recursive: bool) -> dict[Path, float]:
        if path.is_file():
            candidates = [path]
        elif path.is_dir():
            found = path.rglob("*") if recursive else path.glob("*")
            candidates = [
                f for f in found
                if f.is_file() and any(fnmatch(f.name, p) for p in self.patterns)
            ]
        else:
            candidates = []

        mtimes: dict[Path, float] = {}
        for file in candidates:
            try:
                mtimes[file] = file.stat().st_mtime
            except OSError:
                # Deleted between listing and stat.
                continue
        return mtimes

    def _forget_under(self, path: Path) -> dict[Path, float]:
        """Remove and return remembered entries for ``path`` and below."""
        removed = {
            p: m for p, m in self._mtimes.items()
            if p == path or path in p.parents
        }
        for p in removed:
            del self._mtimes[p]
        return removed

    def stop(self, watch_id: str) -> bool:
        """Cancel one watch. Returns False if ``watch_id`` is not watched."""
        handle = self._handles.pop(watch_id, None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def stop_all(self) -> None:
        for handle in list(self._handles.values()):
            handle.cancel()
        self._handles.clear()
        self._mtimes.clear()


class ReloadTrigger:
    """Reloads the components whose source files changed.

    Identifiers are expected to be file paths, as produced by
    :class:`~reloadkit.loader.ModuleLoader`.

    Example:
        >>> trigger = ReloadTrigger(runtime)
        >>> await trigger.watch(Path("app"))
        >>> ...
        >>> trigger.stop()
    """

    def __init__(
        self,
        runtime: "Runtime",
        watcher: FileWatcher | None = None,
    ) -> None:
        self._runtime = runtime
        self._watcher = watcher or FileWatcher(
            poll_interval=runtime.config.poll_interval,
            patterns=runtime.config.watch_patterns,
        )
        self._results: list[ReloadResult] = []
        self._handles: list[WatchHandle] = []

    @property
    def results(self) -> list[ReloadResult]:
        """Results of every reload this trigger attempted, oldest first."""
        return list(self._results)

    async def watch(self, path: Path, recursive: bool = True) -> WatchHandle:
        """Reload affected components whenever files under ``path`` change."""
        handle = await self._watcher.watch(path, self.on_change, recursive)
        self._handles.append(handle)
        return handle

    async def on_change(self, paths: Sequence[Path]) -> list[ReloadResult]:
        """Reload the components defined by ``paths``, deepest first.

        A replacement attaches existing children instead of reloading them,
        so changed children are swapped before their owners.
        """
        nodes = self._affected(paths)
        results = []
        for node in nodes:
            if node.state is not ComponentState.STARTED:
                logger.debug(f"Skipping {node.identifier} ({node.state.value})")
                continue
            results.append(await self.reload(node))
        return results

    async def reload(self, node: "ComponentNode") -> ReloadResult:
        """Reload ``node`` and record the outcome."""
        start_time = time.perf_counter()
        try:
            await self._runtime.reload(node)
            result = ReloadResult(
                success=True,
                identifier=node.identifier,
                duration_ms=(time.perf_counter() - start_time) * 1000,
            )
        except ReloadKitError as e:
            logger.error(f"Reload of {node.identifier} failed: {e}")
            result = ReloadResult(
                success=False,
                identifier=node.identifier,
                duration_ms=(time.perf_counter() - start_time) * 1000,
                error=str(e),
                rolled_back=True,
            )
        self._results.append(result)
        return result

    def stop(self) -> None:
        for handle in self._handles:
            self._watcher.stop(handle.watch_id)
        self._handles.clear()

    def _affected(self, paths: Sequence[Path]) -> list["ComponentNode"]:
        found = []
        for path in paths:
            node = self._runtime.get(str(Path(path).resolve()))
            if node is not None and node not in found:
                found.append(node)

        return sorted(found, key=lambda n: n.depth, reverse=True)
