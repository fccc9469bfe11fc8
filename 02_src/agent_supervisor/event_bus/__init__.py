"""EventBus module."""

from .event_bus import EventBus, IEventBus, TopicHandler, build_message

__all__ = ["EventBus", "IEventBus", "TopicHandler", "build_message"]
