from typing import List, Optional

from PySide6.QtCore import QObject, Signal

from repic.events import (
    EventBus,
    ImageLoadedEvent,
    ImageUnavailableEvent,
    LoadsCancelledEvent,
    PrefetchBatchFinishedEvent,
    PrefetchCompletedEvent,
    Subscription,
)


class PipelineSignals(QObject):
    """
    Re-emits image pipeline events as Qt signals so widgets can connect to
    them like to any other Qt signal.
    """

    imageLoaded = Signal(str, str)         # source, layer
    imageUnavailable = Signal(str, str)    # source, reason
    prefetchCompleted = Signal(str, str)   # source, local path
    prefetchBatchFinished = Signal(int, int, int)  # prefetch id, completed, failed
    loadsCancelled = Signal(int)           # new generation

    def __init__(self, parent: Optional[QObject] = None):
        super().__init__(parent)
        self._bus: Optional[EventBus] = None
        self._subscriptions: List[Subscription] = []

    def attach(self, bus: EventBus) -> None:
        if self._bus is bus:
            return
        self.detach()
        self._bus = bus
        self._subscriptions = [
            bus.subscribe(ImageLoadedEvent, self._on_loaded),
            bus.subscribe(ImageUnavailableEvent, self._on_unavailable),
            bus.subscribe(PrefetchCompletedEvent, self._on_prefetched),
            bus.subscribe(PrefetchBatchFinishedEvent, self._on_batch_finished),
            bus.subscribe(LoadsCancelledEvent, self._on_cancelled),
        ]

    def detach(self) -> None:
        if self._bus is None:
            return
        for subscription in self._subscriptions:
            self._bus.unsubscribe(subscription)
        self._subscriptions = []
        self._bus = None

    def _on_loaded(self, event: ImageLoadedEvent) -> None:
        self.imageLoaded.emit(event.source, event.layer)

    def _on_unavailable(self, event: ImageUnavailableEvent) -> None:
        self.imageUnavailable.emit(event.source, event.reason)

    def _on_prefetched(self, event: PrefetchCompletedEvent) -> None:
        self.prefetchCompleted.emit(event.source, str(event.local_path))

    def _on_batch_finished(self, event: PrefetchBatchFinishedEvent) -> None:
        self.prefetchBatchFinished.emit(event.prefetch_id, event.completed, event.failed)

    def _on_cancelled(self, event: LoadsCancelledEvent) -> None:
        self.loadsCancelled.emit(event.generation)
