"""Tests for lifecycle events."""

from __future__ import annotations

import logging

import pytest

from reloadkit.events import ComponentEvent, EventBus, LifecycleEvent, emit
from reloadkit.graph import ComponentNode, DependencyResolver


# =============================================================================
# Test Fixtures
# =============================================================================


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def tree():
    """app owns db."""
    resolver = DependencyResolver()
    app = resolver.resolve("app")
    db = resolver.resolve("db", requester=app)
    return app, db


def _event(node, kind=LifecycleEvent.STARTED, **kwargs):
    return ComponentEvent(kind, node, **kwargs)


# =============================================================================
# EventBus Tests
# =============================================================================


class TestEventBus:
    """Tests for EventBus subscriptions."""

    @pytest.mark.asyncio
    async def test_on_and_deliver(self, bus):
        """Test handlers receive events in subscription order."""
        node = ComponentNode("app")
        seen = []
        bus.on("started", lambda e: seen.append("first"))
        bus.on(LifecycleEvent.STARTED, lambda e: seen.append("second"))

        delivered = await bus.deliver(_event(node))

        assert delivered == 2
        assert seen == ["first", "second"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus):
        """Test the returned callable removes the handler."""
        node = ComponentNode("app")
        seen = []
        unsubscribe = bus.on("started", seen.append)

        unsubscribe()
        unsubscribe()
        await bus.deliver(_event(node))

        assert seen == []
        assert len(bus) == 0

    @pytest.mark.asyncio
    async def test_once(self, bus):
        """Test once handlers fire a single time."""
        node = ComponentNode("app")
        seen = []
        bus.once("started", seen.append)

        await bus.deliver(_event(node))
        await bus.deliver(_event(node))

        assert len(seen) == 1

    def test_off(self, bus):
        """Test off removes every subscription of a handler."""

        def handler(event):
            pass

        bus.on("started", handler)
        bus.on("started", handler)

        assert bus.off("started", handler) is True
        assert bus.off("started", handler) is False
        assert bus.listener_count("started") == 0

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_delivery(self, bus, caplog):
        """Test one handler's exception is logged and others still run."""
        node = ComponentNode("app")
        seen = []

        def broken(event):
            raise RuntimeError("handler failed")

        bus.on("started", broken)
        bus.on("started", seen.append)

        with caplog.at_level(logging.ERROR, logger="reloadkit.events"):
            await bus.deliver(_event(node))

        assert len(seen) == 1
        assert "handler failed" in caplog.text

    @pytest.mark.asyncio
    async def test_async_handler(self, bus):
        """Test coroutine handlers are awaited."""
        node = ComponentNode("app")
        seen = []

        async def handler(event):
            seen.append(event.kind)

        bus.on("started", handler)
        await bus.deliver(_event(node))

        assert seen == [LifecycleEvent.STARTED]

    @pytest.mark.asyncio
    async def test_adopt_moves_subscriptions(self, bus):
        """Test adopted subscriptions fire on the new bus and unsubscribe there."""
        node = ComponentNode("app")
        old = EventBus()
        seen = []
        unsubscribe = old.on("started", seen.append)

        bus.adopt(old)

        assert len(old) == 0
        assert bus.listener_count("started") == 1
        await bus.deliver(_event(node))
        assert len(seen) == 1

        unsubscribe()
        assert len(bus) == 0


# =============================================================================
# Bubbling Tests
# =============================================================================


class TestEmit:
    """Tests for event bubbling."""

    @pytest.mark.asyncio
    async def test_bubbles_to_ancestors(self, tree):
        """Test events reach the node and then its parents."""
        app, db = tree
        seen = []
        db.on("started", lambda e: seen.append(("db", e.node.name)))
        app.on("started", lambda e: seen.append(("app", e.node.name)))

        delivered = await emit(_event(db))

        assert delivered == 2
        assert seen == [("db", "db"), ("app", "db")]

    @pytest.mark.asyncio
    async def test_does_not_bubble_to_refs(self):
        """Test referrers do not receive a shared child's events."""
        resolver = DependencyResolver()
        app = resolver.resolve("app")
        db = resolver.resolve("db", requester=app)
        cache = resolver.resolve("cache", requester=app)
        resolver.resolve("db", requester=cache)
        seen = []
        cache.on("started", seen.append)

        await emit(_event(db))

        assert seen == []

    @pytest.mark.asyncio
    async def test_detached_node_bubbles_through_former_parent(self, tree):
        """Test a node detached during teardown still reaches the root."""
        app, db = tree
        seen = []
        app.on("disposed", lambda e: seen.append(e.node.name))
        db.parent = None
        db.former_parent = app

        await emit(_event(db, LifecycleEvent.DISPOSED))

        assert seen == ["db"]

    @pytest.mark.asyncio
    async def test_unhandled_error_is_logged(self, tree, caplog):
        """Test an error event nobody handles is logged."""
        app, db = tree

        with caplog.at_level(logging.ERROR, logger="reloadkit.events"):
            delivered = await emit(
                _event(db, LifecycleEvent.ERROR, error=RuntimeError("lost"))
            )

        assert delivered == 0
        assert "Unhandled error in component db" in caplog.text

    @pytest.mark.asyncio
    async def test_handled_error_is_not_logged(self, tree, caplog):
        """Test an error event with a subscriber is not logged as unhandled."""
        app, db = tree
        app.on("error", lambda e: None)

        with caplog.at_level(logging.ERROR, logger="reloadkit.events"):
            await emit(_event(db, LifecycleEvent.ERROR, error=RuntimeError("seen")))

        assert "Unhandled" not in caplog.text
