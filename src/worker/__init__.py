# src/worker/__init__.py
"""
Фоновые воркеры: зачисление платежей и отложенные компенсации.
"""

from src.worker.base import BaseWorker
from src.worker.compensation import CompensationWorker
from src.worker.payments import PaymentConfirmedWorker

__all__ = ["BaseWorker", "CompensationWorker", "PaymentConfirmedWorker"]
