"""
Unit tests for the events module.
"""

from unittest.mock import MagicMock

from src.ingestion.events import EventBus, IngestionEvent, RegistryEvent


class TestEventBus:
    """Tests for EventBus subscription and emission."""

    def test_listener_receives_payload(self):
        bus = EventBus()
        listener = MagicMock()
        bus.on(IngestionEvent.SOURCE_ADDED, listener)

        bus.emit(IngestionEvent.SOURCE_ADDED, source_id="docs")

        listener.assert_called_once_with({"event": "sourceAdded", "source_id": "docs"})

    def test_string_and_enum_names_are_equivalent(self):
        bus = EventBus()
        listener = MagicMock()
        bus.on("discoveryStarted", listener)

        bus.emit(IngestionEvent.DISCOVERY_STARTED, source_id="a")

        assert listener.call_count == 1

    def test_off_removes_listener(self):
        bus = EventBus()
        listener = MagicMock()
        bus.on(RegistryEvent.HANDLER_ENABLED, listener)

        assert bus.off(RegistryEvent.HANDLER_ENABLED, listener) is True
        assert bus.off(RegistryEvent.HANDLER_ENABLED, listener) is False
        bus.emit(RegistryEvent.HANDLER_ENABLED, source_id="a")
        listener.assert_not_called()

    def test_failing_listener_does_not_stop_others(self):
        """A raising listener should be logged and skipped."""
        bus = EventBus()
        failing = MagicMock(side_effect=RuntimeError("listener bug"))
        healthy = MagicMock()
        bus.on(IngestionEvent.ERROR, failing)
        bus.on(IngestionEvent.ERROR, healthy)

        bus.emit(IngestionEvent.ERROR, error="x")

        failing.assert_called_once()
        healthy.assert_called_once()

    def test_listener_count(self):
        bus = EventBus()
        assert bus.listener_count(IngestionEvent.ERROR) == 0
        bus.on(IngestionEvent.ERROR, MagicMock())
        assert bus.listener_count("error") == 1

    def test_emit_without_listeners(self):
        EventBus().emit(IngestionEvent.BATCH_PROCESSING_COMPLETED, source_id="a", payload=object())


class TestEventNames:
    """The event names are a stable external contract."""

    def test_ingestion_event_values(self):
        assert {e.value for e in IngestionEvent} == {
            "sourceAdded",
            "sourceRemoved",
            "sourceUpdated",
            "discoveryStarted",
            "discoveryCompleted",
            "discoveryFailed",
            "documentProcessingStarted",
            "documentProcessingCompleted",
            "documentProcessingFailed",
            "batchProcessingStarted",
            "batchProcessingCompleted",
            "error",
        }
