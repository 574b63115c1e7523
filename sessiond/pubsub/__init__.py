from .channel import InvalidationChannel, Message

__all__ = ["InvalidationChannel", "Message"]
