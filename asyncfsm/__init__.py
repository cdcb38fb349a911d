"""Declarative asyncio finite state machines with validated transitions, plus demo machines."""

__version__ = "0.2.1"

__all__ = ["core", "validation", "machine", "worker", "comparison", "orders"]