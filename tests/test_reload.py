"""Tests for hot-swapping components."""

from __future__ import annotations

import asyncio

import pytest

from reloadkit import context
from reloadkit.errors import LoadError, ReferenceStateError, ReloadRollbackError
from reloadkit.events import LifecycleEvent
from reloadkit.graph import ComponentState


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def loads():
    """Count executions per identifier."""
    return {}


@pytest.fixture
def counting(loader, loads):
    """Register a factory that counts its executions and imports children."""

    def register(identifier, *imports):
        def factory():
            loads[identifier] = loads.get(identifier, 0) + 1
            for child in imports:
                context.import_child(child)
            return loads[identifier]

        loader.register(identifier, factory)

    return register


# =============================================================================
# Identity Preservation Tests
# =============================================================================


class TestSharedChildren:
    """Tests for shared-node preservation across reloads."""

    @pytest.mark.asyncio
    async def test_shared_child_survives_root_reload(self, runtime, counting, loads):
        """Test a child shared by two roots keeps its identity."""
        counting("R", "C")
        counting("R2", "C")
        counting("C")

        root = await runtime.load("R")
        other = await runtime.load("R2")
        child = runtime.get("C")
        assert child.parent is root
        assert child.refs == {other}

        new_root = await runtime.reload(root)

        assert runtime.get("C") is child
        assert child.state == ComponentState.STARTED
        assert child.parent is new_root
        assert child.refs == {other}
        assert new_root.children == [child]
        assert loads["C"] == 1
        assert runtime.validate() == []

    @pytest.mark.asyncio
    async def test_exclusive_child_is_kept_without_refs(self, runtime, counting, loads):
        """Test a re-imported exclusive child is adopted, not loaded again."""
        counting("R", "X")
        counting("X")

        root = await runtime.load("R")
        child = runtime.get("X")
        assert child.refs == set()

        new_root = await runtime.reload(root)

        assert runtime.get("X") is child
        assert child.parent is new_root
        assert child.refs == set()
        assert loads["X"] == 1
        assert loads["R"] == 2

    @pytest.mark.asyncio
    async def test_dropped_child_is_disposed(self, runtime, loader, counting):
        """Test a child the new version no longer imports is disposed."""
        disposed = []

        @loader.component("X")
        def x():
            context.on_dispose(lambda: disposed.append("X"))

        counting("R", "X")
        root = await runtime.load("R")
        child = runtime.get("X")

        counting("R", "Y")
        counting("Y")
        new_root = await runtime.reload(root)

        assert disposed == ["X"]
        assert child.state == ComponentState.DISPOSED
        assert runtime.get("X") is None
        assert new_root.children == [runtime.get("Y")]
        assert runtime.get("Y").parent is new_root

    @pytest.mark.asyncio
    async def test_old_node_is_disposed(self, runtime, counting):
        """Test the previous instance is fully retired."""
        counting("R")
        root = await runtime.load("R")

        new_root = await runtime.reload(root)

        assert new_root is not root
        assert root.state == ComponentState.DISPOSED
        assert runtime.get("R") is new_root
        assert new_root.unit == 2
        assert len(runtime.resolver) == 1


# =============================================================================
# Splice Tests
# =============================================================================


class TestSplice:
    """Tests for the position of the replacement in the graph."""

    @pytest.mark.asyncio
    async def test_reload_child_keeps_position(self, runtime, counting):
        """Test a reloaded child takes its predecessor's place everywhere."""
        counting("app", "db", "cache")
        counting("cache", "db")
        counting("db")

        root = await runtime.load("app")
        cache = runtime.get("cache")
        old_db = runtime.get("db")

        new_db = await runtime.reload(old_db)

        assert root.children == [new_db, cache]
        assert cache.children == [new_db]
        assert new_db.parent is root
        assert new_db.refs == {cache}
        assert old_db.state == ComponentState.DISPOSED
        assert old_db.ref_count == 0
        assert runtime.validate() == []

    @pytest.mark.asyncio
    async def test_subscribers_move_to_replacement(self, runtime, counting):
        """Test external subscribers follow the reload."""
        counting("R")
        root = await runtime.load("R")
        seen = []
        unsubscribe = root.on("reloaded", lambda event: seen.append(event))

        new_root = await runtime.reload(root)

        assert len(seen) == 1
        assert seen[0].node is new_root
        assert seen[0].previous is root

        await runtime.reload(new_root)
        assert len(seen) == 2

        unsubscribe()
        await runtime.reload(runtime.get("R"))
        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_reload_event_sequence(self, runtime, counting):
        """Test reload events surround the replacement's start."""
        counting("R")
        root = await runtime.load("R")
        seen = []
        for kind in LifecycleEvent:
            root.on(kind, lambda event: seen.append((event.node is root, event.kind.value)))

        await runtime.reload(root)

        assert seen == [
            (True, "before-reload"),
            (True, "reloading"),
            (False, "before-start"),
            (False, "before-mount"),
            (False, "mounted"),
            (False, "started"),
            (False, "reloaded"),
        ]

    @pytest.mark.asyncio
    async def test_before_reload_handler_stops_node(self, runtime, counting, loads):
        """Test a reload is refused when a before-reload handler stopped the node."""
        counting("R")
        root = await runtime.load("R")

        async def stop_first(event):
            await runtime.stop(root)

        root.on("before-reload", stop_first)

        with pytest.raises(ReferenceStateError):
            await runtime.reload(root)

        assert root.state == ComponentState.DISPOSED
        assert loads["R"] == 1
        assert runtime.get("R") is None

    @pytest.mark.asyncio
    async def test_reload_releases_old_effects(self, runtime, loader, clock):
        """Test timers of the old instance stop, the new one's run."""
        ticks = []
        version = {"n": 0}

        @loader.component("R")
        def r():
            version["n"] += 1
            current = version["n"]
            context.on_mount(lambda: context.every(1.0, lambda: ticks.append(current)))

        root = await runtime.load("R")
        clock.advance(2.0)

        await runtime.reload(root)
        clock.advance(2.0)

        assert ticks == [1, 1, 2, 2]
        assert clock.pending == 1


# =============================================================================
# Failure Tests
# =============================================================================


class TestReloadFailure:
    """Tests for reload atomicity."""

    @pytest.mark.asyncio
    async def test_failed_reload_keeps_old_instance(self, runtime, loader, counting, clock):
        """Test a failing replacement leaves the graph untouched."""
        ticks = []
        hooked = []

        @loader.component("R")
        def r():
            context.import_child("C")
            context.on_mount(lambda: context.every(1.0, lambda: ticks.append("tick")))
            context.on_error(hooked.append)

        counting("C")
        root = await runtime.load("R")
        errors = []
        rollbacks = []
        root.on("error", lambda event: errors.append(event))
        root.on("reload.error", lambda event: rollbacks.append(event))
        before = runtime.snapshot()

        @loader.component("R")
        def broken():
            context.import_child("C")
            context.import_child("Z")
            raise RuntimeError("bad edit")

        counting("Z")

        with pytest.raises(ReloadRollbackError) as exc_info:
            await runtime.reload(root)

        assert isinstance(exc_info.value.__cause__, LoadError)
        assert root.state == ComponentState.STARTED
        assert runtime.get("R") is root
        assert runtime.get("Z") is None
        assert runtime.snapshot() == before
        assert runtime.get("C").refs == set()

        assert len(errors) == 1
        assert errors[0].node is root
        assert errors[0].error is exc_info.value.__cause__
        assert hooked == [exc_info.value.__cause__]
        assert [event.node for event in rollbacks] == [root]
        assert rollbacks[0].error is exc_info.value.__cause__

        clock.advance(1.0)
        assert ticks == ["tick"]

    @pytest.mark.asyncio
    async def test_failing_child_of_replacement_reported_once(self, runtime, loader, counting):
        """Test a child failure reaches the old node's hooks and emits error once."""
        hooked = []

        @loader.component("R")
        def r():
            context.on_error(hooked.append)

        root = await runtime.load("R")
        errors = []
        rollbacks = []
        root.on("error", lambda event: errors.append(event))
        root.on("reload.error", lambda event: rollbacks.append(event))

        counting("R", "Z")

        @loader.component("Z")
        def z():
            raise RuntimeError("broken child")

        with pytest.raises(ReloadRollbackError) as exc_info:
            await runtime.reload(root)

        cause = exc_info.value.__cause__
        assert isinstance(cause, LoadError)
        assert [event.node.identifier for event in errors] == ["Z"]
        assert errors[0].error is cause
        assert hooked == [cause]
        assert len(rollbacks) == 1
        assert rollbacks[0].node is root
        assert runtime.get("Z") is None

    @pytest.mark.asyncio
    async def test_old_instance_still_delivers_events(self, runtime, loader, counting):
        """Test subscribers keep working after a failed reload."""
        counting("R")
        root = await runtime.load("R")
        reloaded = []
        root.on("reloaded", lambda event: reloaded.append(event.node))

        def broken():
            raise RuntimeError("bad edit")

        loader.register("R", broken)
        with pytest.raises(ReloadRollbackError):
            await runtime.reload(root)

        counting("R")
        new_root = await runtime.reload(root)

        assert reloaded == [new_root]

    @pytest.mark.asyncio
    async def test_failed_mount_in_replacement(self, runtime, loader):
        """Test effects created by a failing replacement are released."""

        @loader.component("R")
        def r():
            pass

        root = await runtime.load("R")

        @loader.component("R")
        def broken():
            def mount():
                context.every(1.0, lambda: None)
                raise RuntimeError("mount failed")

            context.on_mount(mount)

        with pytest.raises(ReloadRollbackError):
            await runtime.reload(root)

        assert len(runtime.effects) == 0
        assert root.state == ComponentState.STARTED


# =============================================================================
# State Tests
# =============================================================================


class TestReloadState:
    """Tests for reload preconditions."""

    @pytest.mark.asyncio
    async def test_reload_disposed_node(self, runtime, counting):
        """Test a disposed node cannot be reloaded."""
        counting("R")
        root = await runtime.load("R")
        await runtime.stop(root)

        with pytest.raises(ReferenceStateError):
            await runtime.reload(root)

    @pytest.mark.asyncio
    async def test_overlapping_reload_is_refused(self, runtime, loader, counting):
        """Test a second reload while one is in flight is refused."""
        counting("R")
        root = await runtime.load("R")
        gate = asyncio.Event()

        @loader.component("R")
        async def slow():
            await gate.wait()

        task = asyncio.create_task(runtime.reload(root))
        await asyncio.sleep(0)
        assert root.state == ComponentState.RELOADING

        with pytest.raises(ReferenceStateError):
            await runtime.reload(root)
        with pytest.raises(ReferenceStateError):
            await runtime.stop(root)

        gate.set()
        new_root = await task

        assert new_root.state == ComponentState.STARTED
        assert root.state == ComponentState.DISPOSED

    @pytest.mark.asyncio
    async def test_reload_history(self, runtime, counting):
        """Test the old node's history ends with its disposal."""
        counting("R")
        root = await runtime.load("R")
        await runtime.reload(root)

        states = [t.to_state for t in runtime.history("R", limit=3)]

        assert states == [
            ComponentState.DISPOSED,
            ComponentState.STOPPING,
            ComponentState.STARTED,
        ]
