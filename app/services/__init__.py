"""
app/services package marker.
"""

from app.services.consumer_service import ConsumerService, ConsumerStats, get_consumer_service

__all__ = [
    "ConsumerService",
    "ConsumerStats",
    "get_consumer_service",
]
