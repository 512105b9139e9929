"""Platform connection service layer."""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clipforge.models.connection import AuthStatus, Platform, PlatformConnection


def parse_platform(platform: str) -> Platform:
    try:
        return Platform(platform)
    except ValueError:
        valid_platforms = [p.value for p in Platform]
        raise ValueError(f"Invalid platform '{platform}'. Must be one of: {valid_platforms}")


class ConnectionService:
    """Service for an owner's connected publishing accounts."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert_connection(
        self,
        owner_id: str,
        platform: str,
        access_token: str,
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
        handle: Optional[str] = None,
        platform_user_id: Optional[str] = None,
        auto_upload: Optional[bool] = None,
    ) -> PlatformConnection:
        """Connect (or reconnect) an owner's account on a platform."""
        platform_enum = parse_platform(platform)
        if not access_token:
            raise ValueError("access_token is required")

        connection = await self.get_connection_for(owner_id, platform_enum)
        if connection is None:
            connection = PlatformConnection(owner_id=owner_id, platform=platform_enum)
            self.db.add(connection)

        connection.access_token = access_token
        connection.auth_status = AuthStatus.CONNECTED
        if refresh_token is not None:
            connection.refresh_token = refresh_token
        connection.token_expires_at = token_expires_at
        if handle is not None:
            connection.handle = handle
        if platform_user_id is not None:
            connection.platform_user_id = platform_user_id
        if auto_upload is not None:
            connection.auto_upload = auto_upload

        await self.db.flush()
        await self.db.refresh(connection)

        return connection

    async def get_connection(self, connection_id: int) -> Optional[PlatformConnection]:
        """Get a connection by ID."""
        result = await self.db.execute(
            select(PlatformConnection).where(PlatformConnection.id == connection_id)
        )
        return result.scalar_one_or_none()

    async def get_connection_for(self, owner_id: str, platform: Platform) -> Optional[PlatformConnection]:
        result = await self.db.execute(
            select(PlatformConnection).where(
                PlatformConnection.owner_id == owner_id,
                PlatformConnection.platform == platform,
            )
        )
        return result.scalar_one_or_none()

    async def list_connections(self, owner_id: str) -> List[PlatformConnection]:
        """List an owner's connections."""
        result = await self.db.execute(
            select(PlatformConnection)
            .where(PlatformConnection.owner_id == owner_id)
            .order_by(PlatformConnection.platform)
        )
        return list(result.scalars().all())

    async def update_connection(
        self,
        connection_id: int,
        handle: Optional[str] = None,
        auto_upload: Optional[bool] = None,
    ) -> PlatformConnection:
        """Update a connection."""
        connection = await self.get_connection(connection_id)
        if not connection:
            raise ValueError(f"Connection with ID {connection_id} not found")

        if handle is not None:
            connection.handle = handle
        if auto_upload is not None:
            connection.auto_upload = auto_upload

        await self.db.flush()
        await self.db.refresh(connection)

        return connection

    async def delete_connection(self, connection_id: int) -> bool:
        """Delete a connection."""
        connection = await self.get_connection(connection_id)
        if not connection:
            return False

        await self.db.delete(connection)
        await self.db.flush()

        return True

    async def update_auth(
        self,
        connection_id: int,
        auth_status: AuthStatus,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_expires_at: Optional[datetime] = None,
    ) -> PlatformConnection:
        """Update connection authentication status and tokens."""
        connection = await self.get_connection(connection_id)
        if not connection:
            raise ValueError(f"Connection with ID {connection_id} not found")

        connection.auth_status = auth_status
        if access_token is not None:
            connection.access_token = access_token
        if refresh_token is not None:
            connection.refresh_token = refresh_token
        if token_expires_at is not None:
            connection.token_expires_at = token_expires_at

        await self.db.flush()
        await self.db.refresh(connection)

        return connection

    async def mark_uploaded(self, connection_id: int) -> None:
        connection = await self.get_connection(connection_id)
        if connection:
            connection.last_upload_at = datetime.utcnow()
            await self.db.flush()

    async def get_connections_for_publishing(
        self,
        owner_id: str,
        platforms: Optional[List[str]] = None,
        auto_only: bool = True,
    ) -> List[PlatformConnection]:
        """
        Connections to publish a clip to.

        Expired connections are included: the publisher tries a token refresh
        and records the failure on the clip if that does not work.
        """
        query = select(PlatformConnection).where(
            PlatformConnection.owner_id == owner_id,
            PlatformConnection.auth_status != AuthStatus.ERROR,
        )
        if auto_only:
            query = query.where(PlatformConnection.auto_upload.is_(True))
        if platforms:
            platform_enums = [parse_platform(p) for p in platforms]
            query = query.where(PlatformConnection.platform.in_(platform_enums))

        result = await self.db.execute(query.order_by(PlatformConnection.platform))
        return list(result.scalars().all())
