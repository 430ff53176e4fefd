"""Real-time chat backend: rooms, ordered messages, reactions and live fan-out."""

__version__ = "0.1.0"
