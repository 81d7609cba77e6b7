from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select

from upsync.config import settings
from upsync.models import Setting
from upsync.observability.logger import get_logger

log = get_logger("tokens")

UP_BANK_TOKEN_KEY = "up_bank_token"


# ─── Fernet encryption (Up Bank token at rest) ──────
def get_fernet() -> Fernet:
    return Fernet(settings.encryption_key.encode())


def encrypt_value(value: str) -> str:
    return get_fernet().encrypt(value.encode()).decode()


def decrypt_value(encrypted: str) -> str:
    return get_fernet().decrypt(encrypted.encode()).decode()


class TokenProvider:
    """Supplies the decrypted Up Bank token for the instance owner."""

    def __init__(self, session_factory, owner_id: str = None):
        self.session_factory = session_factory
        self.owner_id = owner_id or settings.owner_id

    async def get_decrypted_token(self) -> str | None:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Setting).where(Setting.owner_id == self.owner_id, Setting.key == UP_BANK_TOKEN_KEY)
            )
            row = result.scalar_one_or_none()
        if not row or not row.value_encrypted:
            return None
        try:
            return decrypt_value(row.value_encrypted)
        except (InvalidToken, ValueError) as e:
            log.error("token_decrypt_failed", owner_id=self.owner_id, error=str(e) or type(e).__name__)
            return None

    async def store_token(self, token: str):
        encrypted = encrypt_value(token.strip())
        async with self.session_factory() as session:
            result = await session.execute(
                select(Setting).where(Setting.owner_id == self.owner_id, Setting.key == UP_BANK_TOKEN_KEY)
            )
            row = result.scalar_one_or_none()
            if row:
                row.value_encrypted = encrypted
            else:
                session.add(Setting(owner_id=self.owner_id, key=UP_BANK_TOKEN_KEY, value_encrypted=encrypted))
            await session.commit()
        log.info("token_stored", owner_id=self.owner_id)
