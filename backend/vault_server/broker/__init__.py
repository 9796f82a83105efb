"""
Action broker: hands dispatchable actions to an external queue.

Backends:
    - Kafka (production)
    - In-memory (tests, local development)
"""

from .base import ActionPublisher, PublishReceipt, create_publisher, encode_message
from .kafka import KafkaActionPublisher
from .memory import InMemoryActionPublisher

__all__ = [
    "ActionPublisher",
    "InMemoryActionPublisher",
    "KafkaActionPublisher",
    "PublishReceipt",
    "create_publisher",
    "encode_message",
]
