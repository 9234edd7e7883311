# src/common/ids.py
"""
Идентификаторы сущностей.
"""

from uuid import UUID, uuid4


def new_id() -> str:
    """Новый UUID в строковом виде."""
    return str(uuid4())


def is_uuid(value: object) -> bool:
    """Проверяет, что значение является строковым UUID."""
    if not isinstance(value, str):
        return False
    try:
        UUID(value)
    except ValueError:
        return False
    return True
