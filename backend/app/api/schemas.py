"""
Pydantic schemas for the SOS API.

Separated from the route handlers so they are reusable across
the codebase (background workers, tests). Field-level bounds here are the
first line of validation; IncidentService re-checks everything so the
service is safe to call without the HTTP layer.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, StrictBool


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class LocationInput(BaseModel):
    """Where the reporter was when the video was captured."""
    latitude: float = Field(
        ..., ge=-90.0, le=90.0,
        description="Latitude in decimal degrees",
        examples=[28.7041],
    )
    longitude: float = Field(
        ..., ge=-180.0, le=180.0,
        description="Longitude in decimal degrees",
        examples=[77.1025],
    )
    accuracy: Optional[float] = Field(
        None, ge=0,
        description="GPS accuracy radius in metres",
    )


class DeviceInfoInput(BaseModel):
    platform: Optional[str] = Field(None, examples=["android"])
    version: Optional[str] = Field(None, examples=["14"])
    model: Optional[str] = Field(None, examples=["Pixel 8"])


class SOSReportRequest(BaseModel):
    """Body of POST /api/v1/sos/report."""
    user_id: str = Field(..., min_length=1, examples=["user_42"])
    video_url: str = Field(..., examples=["https://cdn.example.com/sos/clip.mp4"])
    video_thumbnail: Optional[str] = Field(None)
    video_duration: Optional[int] = Field(
        None, description="Clip length in seconds (1-30)", examples=[15],
    )
    message: Optional[str] = Field(None, examples=["Car accident, people injured"])
    location: LocationInput
    timestamp: Optional[datetime] = Field(
        None, description="Capture time; defaults to receipt time",
    )
    device_info: Optional[DeviceInfoInput] = None


class ReviewRequest(BaseModel):
    """Body of PUT /api/v1/sos/{sos_id}/review."""
    decision: str = Field(..., examples=["approved"], description="approved | rejected")
    admin_notes: Optional[str] = Field(None, examples=["Verified by dispatcher"])


class AiVerdictRequest(BaseModel):
    """Body of PUT /api/v1/sos/{sos_id}/classification."""
    is_emergency: StrictBool
    reason: str = Field("", examples=["Vehicle collision with visible injuries"])
    primary_service: Optional[str] = Field(
        None, examples=["Ambulance"], description="Police | Ambulance | Fire Brigade",
    )
    confidence: Optional[str] = Field(None, examples=["High"], description="High | Medium | Low")


class StampedeAlertRequest(BaseModel):
    """Body of POST /api/v1/sos/alerts/stampede."""
    message: str = Field(..., min_length=1, max_length=500, examples=["Crowd surge at gate 3"])
    crowd_density: float = Field(
        ..., gt=0, allow_inf_nan=False, examples=[6.5], description="People per square metre",
    )
    timestamp: Optional[datetime] = Field(None)


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class SOSReportResponse(BaseModel):
    success: bool = True
    sos_id: str
    message: str
    estimated_review_time: str


class ReviewResponse(BaseModel):
    success: bool = True
    message: str
    sos_report: Dict[str, Any]
    alert_result: Optional[Dict[str, Any]] = None
