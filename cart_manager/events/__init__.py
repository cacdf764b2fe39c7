from .consumer import EventConsumer
from .handlers import CartEventHandlers

__all__ = ["EventConsumer", "CartEventHandlers"]
