"""
ORM tables for the SQL store backend.

    users        — directory entries (reporters and alert recipients)
    sos_reports  — incidents, flattened; outcome + AI verdict as JSON
    alerts       — AlertRecords

The radius lookup is a bounding-box range scan on (latitude, longitude)
followed by a Haversine check in Python, so no PostGIS extension is needed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from backend.app.core.database import Base


class UserRow(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(200))
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    push_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    __table_args__ = (
        Index("ix_users_lat_lon", "latitude", "longitude"),
    )


class IncidentRow(Base):
    __tablename__ = "sos_reports"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    reporter_id: Mapped[str] = mapped_column(String(64), index=True)
    reporter_name: Mapped[str] = mapped_column(String(200), default="")
    reporter_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    reporter_email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)

    video_url: Mapped[str] = mapped_column(Text)
    video_thumbnail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    video_duration: Mapped[int] = mapped_column(Integer, default=15)
    message: Mapped[str] = mapped_column(String(500))

    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    address: Mapped[str] = mapped_column(Text, default="")
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    captured_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    device_platform: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    device_version: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    device_model: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    status: Mapped[str] = mapped_column(String(16), default="pending")
    priority: Mapped[str] = mapped_column(String(16), default="medium")
    category: Mapped[str] = mapped_column(String(16), default="other")

    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    decision: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    alert_outcome: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    ai_classification: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_sos_status_captured", "status", "captured_at"),
        Index("ix_sos_lat_lon", "latitude", "longitude"),
        Index("ix_sos_priority_captured", "priority", "captured_at"),
        Index("ix_sos_category_captured", "category", "captured_at"),
    )


class AlertRow(Base):
    __tablename__ = "alerts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    incident_id: Mapped[str] = mapped_column(String(32), index=True)
    latitude: Mapped[float] = mapped_column(Float)
    longitude: Mapped[float] = mapped_column(Float)
    recipient_ids: Mapped[List[str]] = mapped_column(JSON)
    message: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), default="sending")
    dispatched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    push_sent: Mapped[int] = mapped_column(Integer, default=0)
    push_failed: Mapped[int] = mapped_column(Integer, default=0)
    whatsapp_sent: Mapped[int] = mapped_column(Integer, default=0)
    whatsapp_failed: Mapped[int] = mapped_column(Integer, default=0)
    recipients_reached: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
