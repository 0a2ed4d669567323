from sqlalchemy.sql import func
from sqlalchemy import Column, String, DateTime
from app.db.database import Base


class Profile(Base):
    """Public profile snapshot joined onto messages, reactions and expenses"""
    __tablename__ = "profiles"

    id = Column(String, primary_key=True, unique=True, nullable=False)  # Same id as the auth user
    username = Column(String(100), nullable=True, index=True)
    full_name = Column(String(200), nullable=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    @property
    def display_name(self) -> str:
        return self.full_name or self.username or "Unknown"
