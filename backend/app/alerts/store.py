"""
store.py — Persistence boundary for AlertRecords.

The orchestrator only ever creates a record and then completes it once;
both operations are exposed here so the SQL backend can live elsewhere
(`backend.app.sos.sql_store`).
"""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Optional

from backend.app.alerts.models import AlertRecord, AlertStatus


@dataclass
class AlertCompletion:
    """Final counters written when a record leaves `sending`."""
    status: AlertStatus
    completed_at: datetime
    push_sent: int = 0
    push_failed: int = 0
    whatsapp_sent: int = 0
    whatsapp_failed: int = 0
    recipients_reached: int = 0
    error: Optional[str] = None


class AlertStore(ABC):
    """Write-once-then-complete storage for AlertRecords."""

    @abstractmethod
    async def create(self, record: AlertRecord) -> AlertRecord:
        ...

    @abstractmethod
    async def complete(self, alert_id: str, completion: AlertCompletion) -> Optional[AlertRecord]:
        """Move a `sending` record to its final state. None if unknown."""
        ...

    @abstractmethod
    async def get(self, alert_id: str) -> Optional[AlertRecord]:
        ...


class InMemoryAlertStore(AlertStore):
    """Dict-backed store for development and tests."""

    def __init__(self) -> None:
        self._records: Dict[str, AlertRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record: AlertRecord) -> AlertRecord:
        async with self._lock:
            if record.alert_id in self._records:
                raise ValueError(f"Alert {record.alert_id} already exists")
            self._records[record.alert_id] = copy.deepcopy(record)
        return record

    async def complete(self, alert_id: str, completion: AlertCompletion) -> Optional[AlertRecord]:
        async with self._lock:
            record = self._records.get(alert_id)
            if record is None:
                return None
            if record.status != AlertStatus.SENDING:
                return copy.deepcopy(record)
            record.status = completion.status
            record.completed_at = completion.completed_at
            record.push_sent = completion.push_sent
            record.push_failed = completion.push_failed
            record.whatsapp_sent = completion.whatsapp_sent
            record.whatsapp_failed = completion.whatsapp_failed
            record.recipients_reached = completion.recipients_reached
            record.error = completion.error
            return copy.deepcopy(record)

    async def get(self, alert_id: str) -> Optional[AlertRecord]:
        record = self._records.get(alert_id)
        return copy.deepcopy(record) if record else None
