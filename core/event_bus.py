# anisync/core/event_bus.py
"""
Event bus for decoupled communication between the sync layer and its callers.
Uses Qt signals for type-safe event publishing and subscription.
"""

import logging
from PyQt6.QtCore import QObject, pyqtSignal
from typing import Callable

logger = logging.getLogger(__name__)


class EventBus(QObject):
    """
    Library, request and authentication events published by the orchestrator.
    Slots connected from the GUI thread receive them through queued delivery.
    """

    library_changed = pyqtSignal(str)             # service_name
    entry_changed = pyqtSignal(str, int)          # service_name, media_id
    request_finished = pyqtSignal(str, object)    # service_name, Response
    sync_failed = pyqtSignal(str, object)         # service_name, ErrorInfo
    sync_completed = pyqtSignal(str, int)         # service_name, entry count
    auth_state_changed = pyqtSignal(str, str)     # service_name, state
    active_service_changed = pyqtSignal(str)      # service_name

    def __init__(self):
        super().__init__()
        logger.debug("EventBus initialized")

    def publish(self, event_name: str, *args):
        """
        Publishes an event to the corresponding signal.
        """
        signal = self._signal(event_name)
        if signal is None:
            logger.warning(f"⚠️ Attempted to publish unknown event: {event_name}")
            return
        signal.emit(*args)
        logger.debug(f"📢 Event published: {event_name}")

    def subscribe(self, event_name: str, slot: Callable):
        """
        Subscribes a slot (callback function) to an event signal.
        """
        signal = self._signal(event_name)
        if signal is None:
            logger.warning(f"⚠️ Attempted to subscribe to unknown event: {event_name}")
            return
        signal.connect(slot)
        logger.debug(f"📩 Subscribed to event: {event_name}")

    def unsubscribe(self, event_name: str, slot: Callable):
        """
        Unsubscribes a slot from an event signal.
        """
        signal = self._signal(event_name)
        if signal is None:
            logger.warning(f"⚠️ Attempted to unsubscribe from unknown event: {event_name}")
            return
        try:
            signal.disconnect(slot)
            logger.debug(f"📤 Unsubscribed from event: {event_name}")
        except TypeError as e:
            logger.error(f"Error unsubscribing from event {event_name}: {e}")

    def _signal(self, event_name: str):
        if event_name.startswith("_") or not hasattr(type(self), event_name):
            return None
        if not isinstance(getattr(type(self), event_name), pyqtSignal):
            return None
        return getattr(self, event_name)
