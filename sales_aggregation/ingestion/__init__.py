"""
Data Ingestion Module
"""
from .stream_consumer import ConsumerConfig, SalesEventConsumer

__all__ = [
    "ConsumerConfig",
    "SalesEventConsumer",
]
