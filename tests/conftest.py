# tests/conftest.py
"""
Общие фикстуры и настройки для тестов.
"""

from __future__ import annotations

import json
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

# Устанавливаем переменные окружения перед импортом модулей
os.environ.setdefault("DB_PASSWORD", "test_password")
os.environ.setdefault("REDIS_PASSWORD", "")


# =============================================================================
# ФИКСТУРЫ КОНФИГУРАЦИИ
# =============================================================================

@pytest.fixture(scope="session")
def project_root() -> Path:
    """Корневая директория проекта."""
    return Path(__file__).parent.parent


@pytest.fixture(scope="session")
def config_path(project_root: Path) -> Path:
    """Путь к файлу конфигурации."""
    return project_root / "config" / "config.json"


@pytest.fixture
def mock_config() -> dict[str, Any]:
    """Мок конфигурации для тестов."""
    return {
        "_comment_system": "=== СИСТЕМА ===",
        "PROJECT_NAME": "ridepool_test",
        "VERSION": "1.0.0-test",
        "DEBUG": True,
        "ENVIRONMENT": "test",
        "LOG_LEVEL": "DEBUG",
        "LOG_TO_FILE": False,
        "LOG_FILE_PATH": "logs/test.log",
        "LOG_FORMAT": "json",
        "DB_HOST": "localhost",
        "DB_PORT": 5432,
        "DB_NAME": "ridepool_test",
        "DB_USER": "postgres",
        "DB_PASSWORD": "test_password",
        "DB_MIN_POOL_SIZE": 2,
        "DB_MAX_POOL_SIZE": 5,
        "DB_COMMAND_TIMEOUT": 30,
        "REDIS_HOST": "localhost",
        "REDIS_PORT": 6379,
        "REDIS_DB": 1,
        "REDIS_PASSWORD": "",
        "REDIS_NAMESPACE": "ridepool_test",
        "REDIS_MAX_CONNECTIONS": 10,
        "RIDE_SNAPSHOT_TTL": 15,
        "IDEMPOTENCY_KEY_TTL": 600,
        "RABBITMQ_HOST": "localhost",
        "RABBITMQ_PORT": 5672,
        "RABBITMQ_USER": "guest",
        "RABBITMQ_PASSWORD": "guest",
        "RABBITMQ_VHOST": "/",
        "RABBITMQ_EXCHANGE": "ridepool.test",
        "RABBITMQ_PREFETCH_COUNT": 5,
        "STORAGE_RETRY_ATTEMPTS": 2,
        "STORAGE_RETRY_DELAY": 0.01,
        "STEP_TIMEOUT": 1.5,
        "COMPENSATION_RETRY_ATTEMPTS": 4,
        "COMPENSATION_RETRY_DELAY": 0.01,
        "COMPENSATION_SWEEP_INTERVAL": 10,
        "COMPENSATION_SWEEP_BATCH": 25,
        "COMPENSATION_STALE_AFTER": 120,
        "BOOKINGS_PAGE_SIZE": 10,
        "BOOKINGS_MAX_PAGE_SIZE": 50,
        "CURRENCY": "INR",
        "TRANSACTIONS_PAGE_SIZE": 10,
        "TRANSACTIONS_MAX_PAGE_SIZE": 50,
        "MIN_DEPOSIT_INTENT": 10,
        "MIN_SETTLEMENT": 100,
    }


@pytest.fixture
def temp_config_file(tmp_path: Path, mock_config: dict[str, Any]) -> Path:
    """Создаёт временный файл конфигурации."""
    config_file = tmp_path / "config.json"
    config_file.write_text(json.dumps(mock_config, ensure_ascii=False, indent=2))
    return config_file


# =============================================================================
# ФИКСТУРЫ ИНФРАСТРУКТУРЫ (МОКИ)
# =============================================================================

@pytest.fixture
def mock_conn() -> AsyncMock:
    """Мок соединения asyncpg."""
    conn = AsyncMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock(return_value=None)
    conn.execute = AsyncMock(return_value="UPDATE 1")
    return conn


@pytest.fixture
def mock_db(mock_conn: AsyncMock) -> MagicMock:
    """
    Мок менеджера базы данных.
    transaction() и acquire() отдают mock_conn.
    """
    db = MagicMock()
    db.fetchrow = AsyncMock(return_value=None)
    db.fetch = AsyncMock(return_value=[])
    db.execute = AsyncMock(return_value="INSERT 0 1")
    db.fetchval = AsyncMock(return_value=None)

    @asynccontextmanager
    async def transaction(conn=None):
        yield conn if conn is not None else mock_conn

    @asynccontextmanager
    async def acquire():
        yield mock_conn

    db.transaction = MagicMock(side_effect=transaction)
    db.acquire = MagicMock(side_effect=acquire)
    return db


@pytest.fixture
def mock_redis() -> AsyncMock:
    """Мок клиента Redis."""
    redis = AsyncMock()
    redis.get = AsyncMock(return_value=None)
    redis.set = AsyncMock(return_value=True)
    redis.set_nx = AsyncMock(return_value=True)
    redis.delete = AsyncMock(return_value=1)
    redis.get_model = AsyncMock(return_value=None)
    redis.set_model = AsyncMock(return_value=True)
    return redis


@pytest.fixture
def mock_event_bus() -> AsyncMock:
    """Мок шины событий."""
    event_bus = AsyncMock()
    event_bus.publish = AsyncMock(return_value=None)
    event_bus.subscribe = AsyncMock(return_value=None)
    event_bus.is_connected = True
    return event_bus


# =============================================================================
# ФИКСТУРЫ МОДЕЛЕЙ
# =============================================================================

@pytest.fixture
def ride_id() -> str:
    return "0b6f4a52-3c1e-4d8a-9f51-2a7c5e9d1b01"


@pytest.fixture
def sample_ride_row(ride_id: str) -> dict[str, Any]:
    """Строка rides_schema.rides."""
    return {
        "id": ride_id,
        "driver_id": "driver-1",
        "seats_total": 4,
        "seats_available": 3,
        "price_per_seat": 250,
        "ride_type": "commercial_pool",
        "allow_auto_confirm": False,
        "status": "published",
    }
