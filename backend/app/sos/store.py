"""
store.py — Persistence boundaries for incidents and the user directory.

Two interchangeable backends implement these interfaces:

    memory — dicts guarded by an asyncio.Lock (dev, tests)
    sql    — SQLAlchemy 2.0 async ORM (backend.app.sos.sql_store)

═══════════════════════════════════════════════════════════════════════════
REVIEW TRANSITION
═══════════════════════════════════════════════════════════════════════════

`transition_review` is a compare-and-set: the pending check and the write
happen as one step (lock in memory, `UPDATE … WHERE status='pending'` in
SQL). Exactly one of several concurrent reviewers gets the report back;
the others get None.

Objects returned from the in-memory store are copies, so a caller
mutating a report cannot bypass these rules.
"""

from __future__ import annotations

import asyncio
import copy
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from backend.app.alerts.geo_fence import RecipientLookup, filter_recipients_by_radius, is_eligible
from backend.app.alerts.models import Recipient
from backend.app.sos.models import (
    AiClassification,
    AlertOutcome,
    Category,
    IncidentReport,
    IncidentStatus,
    Priority,
    ReviewRecord,
    UserRecord,
)


# ═══════════════════════════════════════════════════════════════════════════
# Query Filter
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class ReportFilter:
    """Optional criteria for listing reports; bounds apply to captured_at."""
    status: Optional[IncidentStatus] = None
    priority: Optional[Priority] = None
    category: Optional[Category] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    def matches(self, incident: IncidentReport) -> bool:
        if self.status is not None and incident.status != self.status:
            return False
        if self.priority is not None and incident.priority != self.priority:
            return False
        if self.category is not None and incident.category != self.category:
            return False
        if self.start is not None and incident.captured_at < self.start:
            return False
        if self.end is not None and incident.captured_at > self.end:
            return False
        return True


# ═══════════════════════════════════════════════════════════════════════════
# Interfaces
# ═══════════════════════════════════════════════════════════════════════════

class IncidentStore(ABC):

    @abstractmethod
    async def create(self, incident: IncidentReport) -> IncidentReport:
        ...

    @abstractmethod
    async def get(self, incident_id: str) -> Optional[IncidentReport]:
        ...

    @abstractmethod
    async def transition_review(
        self, incident_id: str, review: ReviewRecord,
    ) -> Optional[IncidentReport]:
        """
        Atomically move a pending report to `review.decision`.

        Returns the updated report, or None when the report is missing or
        no longer pending.
        """
        ...

    @abstractmethod
    async def record_alert_outcome(
        self, incident_id: str, outcome: AlertOutcome,
    ) -> Optional[IncidentReport]:
        """Attach the fan-out outcome to an approved report."""
        ...

    @abstractmethod
    async def set_ai_classification(
        self, incident_id: str, classification: AiClassification,
    ) -> Optional[IncidentReport]:
        """Merge the advisory AI verdict; review state is untouched."""
        ...

    @abstractmethod
    async def query(
        self, filters: ReportFilter, *, offset: int = 0, limit: int = 20,
    ) -> Tuple[List[IncidentReport], int]:
        """Matching reports newest first (by captured_at) and the total count."""
        ...

    @abstractmethod
    async def count_by_status(self, filters: ReportFilter) -> Dict[IncidentStatus, int]:
        ...

    @abstractmethod
    async def count_by_category(self, filters: ReportFilter) -> Dict[Category, int]:
        ...


class UserDirectory(RecipientLookup):
    """Read-only view of registered users."""

    @abstractmethod
    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    async def find_users_within(
        self, latitude: float, longitude: float, radius_m: float,
    ) -> List[Tuple[UserRecord, float]]:
        """Active users within `radius_m`, nearest first, with distance in km."""
        ...

    async def find_recipients_within(
        self,
        latitude: float,
        longitude: float,
        radius_m: float,
        *,
        exclude_user_id: Optional[str] = None,
    ) -> List[Recipient]:
        recipients: List[Recipient] = []
        for user, distance_km in await self.find_users_within(latitude, longitude, radius_m):
            recipient = user.to_recipient()
            recipient.distance_km = distance_km
            if is_eligible(recipient, exclude_user_id):
                recipients.append(recipient)
        return recipients


# ═══════════════════════════════════════════════════════════════════════════
# In-memory Backend
# ═══════════════════════════════════════════════════════════════════════════

class InMemoryIncidentStore(IncidentStore):

    def __init__(self) -> None:
        self._incidents: Dict[str, IncidentReport] = {}
        self._lock = asyncio.Lock()

    async def create(self, incident: IncidentReport) -> IncidentReport:
        async with self._lock:
            if incident.incident_id in self._incidents:
                raise ValueError(f"Incident {incident.incident_id} already exists")
            self._incidents[incident.incident_id] = copy.deepcopy(incident)
        return copy.deepcopy(incident)

    async def get(self, incident_id: str) -> Optional[IncidentReport]:
        incident = self._incidents.get(incident_id)
        return copy.deepcopy(incident) if incident else None

    async def transition_review(
        self, incident_id: str, review: ReviewRecord,
    ) -> Optional[IncidentReport]:
        async with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None or incident.status != IncidentStatus.PENDING:
                return None
            incident.status = review.decision
            incident.review = copy.deepcopy(review)
            return copy.deepcopy(incident)

    async def record_alert_outcome(
        self, incident_id: str, outcome: AlertOutcome,
    ) -> Optional[IncidentReport]:
        async with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None or incident.status != IncidentStatus.APPROVED:
                return None
            incident.alert_outcome = copy.deepcopy(outcome)
            return copy.deepcopy(incident)

    async def set_ai_classification(
        self, incident_id: str, classification: AiClassification,
    ) -> Optional[IncidentReport]:
        async with self._lock:
            incident = self._incidents.get(incident_id)
            if incident is None:
                return None
            incident.ai_classification = copy.deepcopy(classification)
            return copy.deepcopy(incident)

    def _matching(self, filters: ReportFilter) -> List[IncidentReport]:
        return [i for i in self._incidents.values() if filters.matches(i)]

    async def query(
        self, filters: ReportFilter, *, offset: int = 0, limit: int = 20,
    ) -> Tuple[List[IncidentReport], int]:
        matched = sorted(self._matching(filters), key=lambda i: i.captured_at, reverse=True)
        page = matched[offset:offset + limit]
        return [copy.deepcopy(i) for i in page], len(matched)

    async def count_by_status(self, filters: ReportFilter) -> Dict[IncidentStatus, int]:
        counts = Counter(i.status for i in self._matching(filters))
        return {status: counts.get(status, 0) for status in IncidentStatus}

    async def count_by_category(self, filters: ReportFilter) -> Dict[Category, int]:
        counts = Counter(i.category for i in self._matching(filters))
        return {category: n for category, n in counts.items() if n}


class InMemoryUserDirectory(UserDirectory):

    def __init__(self, users: Iterable[UserRecord] = ()) -> None:
        self._users: Dict[str, UserRecord] = {}
        for user in users:
            self.add_user(user)

    def add_user(self, user: UserRecord) -> None:
        self._users[user.user_id] = copy.deepcopy(user)

    async def get_user(self, user_id: str) -> Optional[UserRecord]:
        user = self._users.get(user_id)
        return copy.deepcopy(user) if user else None

    async def find_users_within(
        self, latitude: float, longitude: float, radius_m: float,
    ) -> List[Tuple[UserRecord, float]]:
        active = {u.user_id: u for u in self._users.values() if u.is_active}
        candidates = [u.to_recipient() for u in active.values()]
        targeted, _ = filter_recipients_by_radius(
            latitude, longitude, radius_m / 1000.0, candidates,
        )
        return [
            (copy.deepcopy(active[r.recipient_id]), r.distance_km or 0.0)
            for r in targeted
        ]
