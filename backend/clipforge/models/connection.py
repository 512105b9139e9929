"""Platform connection model for social media publishing."""
import enum
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, Enum, Boolean, Text, UniqueConstraint

from clipforge.db.database import Base


class Platform(str, enum.Enum):
    """Supported publishing platforms."""
    YOUTUBE_SHORTS = "youtube_shorts"
    INSTAGRAM_REELS = "instagram_reels"


class AuthStatus(str, enum.Enum):
    """Connection authentication status."""
    CONNECTED = "connected"
    EXPIRED = "expired"
    ERROR = "error"


class PlatformConnection(Base):
    """An owner's connected account on one platform."""

    __tablename__ = "platform_connections"
    __table_args__ = (UniqueConstraint("owner_id", "platform", name="uq_owner_platform"),)

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(String(255), nullable=False, index=True)

    # Platform details
    platform = Column(Enum(Platform), nullable=False)
    handle = Column(String(255), nullable=True)  # @username or channel name
    platform_user_id = Column(String(255), nullable=True)  # Channel id / IG business account id

    # Authentication
    auth_status = Column(Enum(AuthStatus), default=AuthStatus.CONNECTED, nullable=False)
    access_token = Column(Text, nullable=True)  # Encrypted in production
    refresh_token = Column(Text, nullable=True)  # Encrypted in production
    token_expires_at = Column(DateTime, nullable=True)

    # Publish on clip completion
    auto_upload = Column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    last_upload_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<PlatformConnection(id={self.id}, platform={self.platform}, owner='{self.owner_id}')>"

    def to_dict(self):
        """Convert to dictionary (excludes sensitive auth data)."""
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "platform": self.platform.value,
            "handle": self.handle,
            "platform_user_id": self.platform_user_id,
            "auth_status": self.auth_status.value,
            "auto_upload": self.auto_upload,
            "token_expires_at": self.token_expires_at.isoformat() if self.token_expires_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "last_upload_at": self.last_upload_at.isoformat() if self.last_upload_at else None,
        }
