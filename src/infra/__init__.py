"""
Инфраструктурный слой: пул PostgreSQL, кэш Redis и шина событий RabbitMQ.
"""

from src.infra.database import DatabaseManager, get_db
from src.infra.event_bus import DomainEvent, EventBus, EventTypes, get_event_bus
from src.infra.redis_client import RedisClient, get_redis

__all__ = [
    "DatabaseManager",
    "DomainEvent",
    "EventBus",
    "EventTypes",
    "get_db",
    "get_event_bus",
    "get_redis",
    "RedisClient",
]
