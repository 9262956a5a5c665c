"""OwnerAccount ORM model: page usage and plan for a submitting principal."""

from datetime import datetime

from sqlalchemy import Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from docbatch.db import Base, utcnow


class OwnerAccount(Base):
    __tablename__ = "owner_accounts"

    owner_id: Mapped[str] = mapped_column(Text, primary_key=True)
    # plan: free | pro
    plan: Mapped[str] = mapped_column(Text, nullable=False, default="free")
    pages_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(nullable=False, default=utcnow, onupdate=utcnow)
