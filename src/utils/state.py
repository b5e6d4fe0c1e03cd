from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from db.stores import SettingsStore, SqliteSettingsStore
from utils import config
from utils.logger import get_logger
from utils.time_utils import utcnow

_logger = get_logger(__name__)


def hash_pin(pin: str) -> str:
    return hashlib.sha256((pin + config.PIN_SALT).encode("utf-8")).hexdigest()


def is_valid_pin(pin: str) -> bool:
    return (
        isinstance(pin, str)
        and pin.isdigit()
        and config.PIN_MIN_LENGTH <= len(pin) <= config.PIN_MAX_LENGTH
    )


@dataclass
class SessionState:
    """
    PIN gate for the operator session.

    Fields:
      - authenticated: True after a successful login, until logout
      - failed_attempts: consecutive wrong PINs since the last success
      - lockout_until: while in the future, login is refused without checking

    The counter and lockout are stored in the settings row, so restarting the
    program does not reset them.
    """

    settings: SettingsStore = field(default_factory=SqliteSettingsStore)
    authenticated: bool = False
    failed_attempts: int = 0
    lockout_until: Optional[datetime] = None

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.lockout_until is None:
            return False
        now = now or utcnow()
        if now >= self.lockout_until:
            # lockout expired, start counting afresh
            self.lockout_until = None
            self.failed_attempts = 0
            return False
        return True

    async def is_pin_setup(self) -> bool:
        settings = await self.settings.get()
        return bool(settings and settings.pin_hash)

    async def setup_pin(self, pin: str) -> bool:
        """Store a new PIN. Returns False if the PIN is not 4-6 digits."""
        if not is_valid_pin(pin):
            return False
        await self.settings.set_pin_hash(hash_pin(pin))
        _logger.info("PIN updated.")
        return True

    async def verify(self, pin: str) -> bool:
        settings = await self.settings.get()
        if not settings or not settings.pin_hash:
            return False
        return hash_pin(pin) == settings.pin_hash

    async def load(self) -> None:
        """Pick up the failed-attempt counter and lockout stored by earlier sessions."""
        settings = await self.settings.get()
        if settings is not None:
            self.failed_attempts = settings.failed_attempts
            self.lockout_until = settings.lockout_until

    async def _save(self) -> None:
        await self.settings.save_login_state(self.failed_attempts, self.lockout_until)

    async def login(self, pin: str, when: Optional[datetime] = None) -> bool:
        """Check the PIN; too many consecutive failures lock the session."""
        when = when or utcnow()
        await self.load()
        was_locked = self.lockout_until is not None
        if self.is_locked(when):
            return False
        if was_locked:
            await self._save()

        if await self.verify(pin):
            self.authenticated = True
            if self.failed_attempts:
                self.failed_attempts = 0
                await self._save()
            return True

        self.failed_attempts += 1
        if self.failed_attempts >= config.MAX_FAILED_ATTEMPTS:
            self.lockout_until = when + timedelta(seconds=config.LOCKOUT_SECONDS)
            _logger.warning(
                f"{self.failed_attempts} failed PIN attempts, locked until {self.lockout_until:%X}"
            )
        await self._save()
        return False

    def logout(self) -> None:
        self.authenticated = False

    async def change_pin(self, old_pin: str, new_pin: str) -> bool:
        if not await self.verify(old_pin):
            return False
        return await self.setup_pin(new_pin)
