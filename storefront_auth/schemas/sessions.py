"""Session listing schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel

from storefront_auth.services.login_service import SessionView


class DeviceResponse(BaseModel):
    type: Literal["desktop", "mobile", "tablet", "bot", "unknown"]
    name: str


class LocationResponse(BaseModel):
    city: str | None = None
    region: str | None = None
    country: str | None = None
    label: str = ""


class SessionResponse(BaseModel):
    """One device session as shown on the account security page."""

    id: str
    device: DeviceResponse
    location: LocationResponse
    ip: str
    created_at: datetime
    last_activity_at: datetime
    is_current: bool

    @classmethod
    def from_view(cls, view: SessionView) -> SessionResponse:
        session = view.session
        return cls(
            id=session.id,
            device=DeviceResponse(type=session.device.type, name=session.device.name),
            location=LocationResponse(
                city=session.location.city,
                region=session.location.region,
                country=session.location.country,
                label=session.location.label,
            ),
            ip=session.ip,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            is_current=view.is_current,
        )


class SessionListResponse(BaseModel):
    sessions: list[SessionResponse]


class RevokedSessionsResponse(BaseModel):
    revoked: int
