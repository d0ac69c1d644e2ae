"""Database-backed session record."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


class OAuthSession(Base):
    """Serialized session credential keyed by the opaque session id."""

    __tablename__ = "oauth_sessions"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    # Epoch seconds; SQLite drops tz info from DateTime columns.
    expires_at: Mapped[float] = mapped_column(Float, nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
