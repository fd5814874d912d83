from .bus import Event, EventBus, Subscription
from .pipeline_events import (
    ImageLoadedEvent,
    ImageUnavailableEvent,
    LoadsCancelledEvent,
    PrefetchBatchFinishedEvent,
    PrefetchCompletedEvent,
)

__all__ = [
    "Event",
    "EventBus",
    "ImageLoadedEvent",
    "ImageUnavailableEvent",
    "LoadsCancelledEvent",
    "PrefetchBatchFinishedEvent",
    "PrefetchCompletedEvent",
    "Subscription",
]
