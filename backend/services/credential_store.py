"""Persistent storage for broker credentials and cloud tokens.

Both live in single-row tables.  Secret columns go through ``SecretBox`` so
they are Fernet-encrypted whenever ``AGENT_SECRETS_KEY`` is configured.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncEngine

from models.credentials import BrokerCredentials, CloudTokens
from models.database import (
    BrokerCredentialRow,
    CloudTokenRow,
    build_engine,
    build_sessionmaker,
    init_database,
)
from utils.logger import get_logger, mask_identifier
from utils.secrets import SecretBox

logger = get_logger("credential_store")

_ROW_ID = 1


class CredentialStore:
    def __init__(self, engine: AsyncEngine, secret_key: Optional[str] = None):
        self._engine = engine
        self._session_factory = build_sessionmaker(engine)
        self._box = SecretBox(secret_key)

    @classmethod
    def from_url(cls, database_url: str, secret_key: Optional[str] = None) -> "CredentialStore":
        return cls(build_engine(database_url), secret_key)

    @classmethod
    def from_settings(cls, settings) -> "CredentialStore":
        return cls.from_url(settings.DATABASE_URL, settings.AGENT_SECRETS_KEY)

    async def initialize(self) -> None:
        await init_database(self._engine)
        if not self._box.enabled:
            logger.warning("AGENT_SECRETS_KEY not set; credentials are stored unencrypted")

    async def close(self) -> None:
        await self._engine.dispose()

    # ==================== BROKER ====================

    async def store_broker_credentials(self, credentials: BrokerCredentials) -> None:
        async with self._session_factory() as session:
            row = await session.get(BrokerCredentialRow, _ROW_ID)
            if row is None:
                row = BrokerCredentialRow(id=_ROW_ID)
                session.add(row)
            row.username = credentials.username
            row.api_key = self._box.encrypt(credentials.api_key)
            await session.commit()
        logger.info("Broker credentials stored", username=mask_identifier(credentials.username))

    async def get_broker_credentials(self) -> Optional[BrokerCredentials]:
        async with self._session_factory() as session:
            row = await session.get(BrokerCredentialRow, _ROW_ID)
            if row is None:
                return None
            api_key = self._box.decrypt(row.api_key)
        if not row.username or not api_key:
            return None
        return BrokerCredentials(username=row.username, api_key=api_key)

    async def delete_broker_credentials(self) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(BrokerCredentialRow))
            await session.commit()
        logger.info("Broker credentials deleted")

    # ==================== CLOUD ====================

    async def store_cloud_tokens(self, tokens: CloudTokens) -> None:
        async with self._session_factory() as session:
            row = await session.get(CloudTokenRow, _ROW_ID)
            if row is None:
                row = CloudTokenRow(id=_ROW_ID)
                session.add(row)
            row.bot_id = tokens.bot_id
            row.access_token = self._box.encrypt(tokens.access_token)
            row.refresh_token = self._box.encrypt(tokens.refresh_token)
            row.device_fingerprint = tokens.device_fingerprint
            await session.commit()
        logger.info("Cloud tokens stored", bot_id=tokens.bot_id)

    async def get_cloud_tokens(self) -> Optional[CloudTokens]:
        async with self._session_factory() as session:
            result = await session.execute(select(CloudTokenRow).where(CloudTokenRow.id == _ROW_ID))
            row = result.scalar_one_or_none()
        if row is None:
            return None
        access_token = self._box.decrypt(row.access_token)
        refresh_token = self._box.decrypt(row.refresh_token)
        if not access_token or not refresh_token:
            return None
        return CloudTokens(
            bot_id=row.bot_id,
            access_token=access_token,
            refresh_token=refresh_token,
            device_fingerprint=row.device_fingerprint,
        )

    async def update_cloud_tokens(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
    ) -> bool:
        """Persist only the token fields a refresh actually returned."""
        async with self._session_factory() as session:
            row = await session.get(CloudTokenRow, _ROW_ID)
            if row is None:
                logger.warning("No cloud tokens stored; refresh result not persisted")
                return False
            if access_token:
                row.access_token = self._box.encrypt(access_token)
            if refresh_token:
                row.refresh_token = self._box.encrypt(refresh_token)
            await session.commit()
        logger.debug("Cloud tokens updated", refresh_token_rotated=bool(refresh_token))
        return True

    async def delete_cloud_tokens(self) -> None:
        async with self._session_factory() as session:
            await session.execute(delete(CloudTokenRow))
            await session.commit()
        logger.info("Cloud tokens deleted")
