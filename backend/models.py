"""
SQLAlchemy models for HemoCount database.
Uses SQLAlchemy 2.0 style with mapped_column.

Only user preferences are persisted; count results and recipes are always
recomputed from the request.
"""

from datetime import datetime
from sqlalchemy import String, Text, DateTime
from sqlalchemy.orm import Mapped, mapped_column

from database import Base


class Settings(Base):
    """
    User preferences stored as key-value pairs.
    Holds the last used input mode and master mix source.
    """
    __tablename__ = "settings"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self) -> str:
        return f"<Settings(id={self.id}, key='{self.key}')>"
