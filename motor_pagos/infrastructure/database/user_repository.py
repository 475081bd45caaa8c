"""
user_repository.py
------------------
Historial de dispositivos e IPs del usuario para el motor de riesgo.
El alta y la edición del perfil viven en otro servicio.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from motor_pagos.domain.models import DeviceFingerprint, KnownLocation, User
from motor_pagos.services.risk_engine import UserRiskProfile


class UserRepository:

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, user_id: uuid.UUID) -> User | None:
        # device_fingerprints y known_locations se cargan con selectin
        result = await self.db.execute(
            select(User)
            .where(User.id == user_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_risk_profile(self, user_id: uuid.UUID) -> UserRiskProfile:
        """Usuario sin historial → perfil vacío (todo dispositivo es nuevo)."""
        user = await self.get(user_id)
        if user is None:
            return UserRiskProfile()
        return UserRiskProfile.from_user(user)

    async def record_device(
        self,
        user_id:    uuid.UUID,
        device_id:  str,
        user_agent: str | None,
        ip:         str,
    ) -> None:
        """
        Agrega el dispositivo y la IP al historial si son nuevos, o
        actualiza last_seen. No hace commit.
        """
        user = await self.get(user_id)
        if user is None:
            return

        now = datetime.now(timezone.utc)
        device = next((d for d in user.device_fingerprints if d.device_id == device_id), None)
        if device is not None:
            device.last_seen = now
        else:
            user.device_fingerprints.append(
                DeviceFingerprint(device_id=device_id, user_agent=user_agent, ip=ip)
            )

        if not any(loc.ip == ip for loc in user.known_locations):
            user.known_locations.append(KnownLocation(ip=ip))

        await self.db.flush()
