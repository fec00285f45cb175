from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.src.contracts.models import DeviceRegistration, Platform, User


class UserRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, user_id: uuid.UUID) -> User | None:
        stmt = select(User).where(User.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def register_device(
        self, user_id: uuid.UUID, token: str, platform: Platform
    ) -> DeviceRegistration:
        """Store the user's current push token, replacing any previous one."""
        stmt = select(DeviceRegistration).where(DeviceRegistration.user_id == user_id)
        result = await self._session.execute(stmt)
        device = result.scalar_one_or_none()

        if device is None:
            device = DeviceRegistration(
                id=uuid.uuid4(),
                user_id=user_id,
                device_token=token,
                platform=platform,
            )
            self._session.add(device)
        else:
            device.device_token = token
            device.platform = platform

        await self._session.flush()
        return device
