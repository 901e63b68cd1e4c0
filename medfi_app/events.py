# medfi_app/events.py

import logging

logger = logging.getLogger(__name__)


class RefreshChannel:
    """Publish/subscribe channel telling independent views that new data exists."""

    def __init__(self):
        self._subscribers = []

    def subscribe(self, callback):
        """Registers ``callback(token)``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, token):
        # Copy so a subscriber may unsubscribe while being notified
        for callback in list(self._subscribers):
            try:
                callback(token)
            except Exception:
                # A broken view must not fail the upload that already succeeded
                logger.exception("Refresh subscriber %r failed", callback)
