"""
Admin-editable system settings consumed by the accrual and validation jobs.

Settings live in the ``settings`` table as a JSON document under
``admin_system_settings``; missing keys fall back to defaults. Reads are
cached for a short TTL so a busy worker does not hit the store per license.
"""

import time
from dataclasses import dataclass, asdict, fields, replace
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

import structlog
from sqlalchemy import select

from licenseflow.core.database import Database
from licenseflow.models.setting import SystemSetting
from licenseflow.utils.validation import to_decimal


logger = structlog.get_logger(__name__)

SYSTEM_SETTINGS_KEY = "admin_system_settings"


@dataclass(frozen=True)
class SystemSettings:
    """Settings snapshot read once per job invocation."""
    daily_earning_rate: Decimal = Decimal("0.08")
    max_earning_days: int = 25
    earning_cap_fraction: Decimal = Decimal("2.0")
    maintenance_mode: bool = False
    automatic_daily_earnings_processing: bool = True
    automatic_order_processing: bool = True
    validation_tolerance_percent: Decimal = Decimal("1")

    @property
    def earnings_enabled(self) -> bool:
        return not self.maintenance_mode and self.automatic_daily_earnings_processing

    @classmethod
    def from_mapping(cls, data: Dict[str, Any]) -> "SystemSettings":
        """Build from a stored JSON document, ignoring unknown keys."""
        known = {f.name for f in fields(cls)}
        values: Dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key not in known or value is None:
                continue
            if key in ("daily_earning_rate", "earning_cap_fraction", "validation_tolerance_percent"):
                values[key] = to_decimal(value)
            elif key == "max_earning_days":
                values[key] = int(value)
            elif isinstance(value, str):
                values[key] = value.strip().lower() in ("1", "true", "yes", "on")
            else:
                values[key] = bool(value)
        return replace(cls(), **values)

    def to_mapping(self) -> Dict[str, Any]:
        return {
            key: str(value) if isinstance(value, Decimal) else value
            for key, value in asdict(self).items()
        }


class SettingsProvider(Protocol):
    """Read access to system settings."""

    async def get_settings(self) -> SystemSettings:
        ...


class StaticSettingsProvider:
    """Fixed settings, used by tools and tests."""

    def __init__(self, settings: Optional[SystemSettings] = None, **overrides: Any):
        self._settings = replace(settings or SystemSettings(), **overrides)

    async def get_settings(self) -> SystemSettings:
        return self._settings

    def update(self, **overrides: Any) -> None:
        self._settings = replace(self._settings, **overrides)


class DatabaseSettingsProvider:
    """Settings stored in the database with a TTL cache."""

    def __init__(self, database: Database, cache_ttl: int = 300):
        self.database = database
        self.cache_ttl = cache_ttl
        self.logger = logger.bind(service="settings_provider")
        self._cached: Optional[SystemSettings] = None
        self._cached_at = 0.0

    async def get_settings(self) -> SystemSettings:
        if self._cached is not None and time.monotonic() - self._cached_at < self.cache_ttl:
            return self._cached

        async with self.database.session() as session:
            row = await session.get(SystemSetting, SYSTEM_SETTINGS_KEY)

        stored = row.value if row is not None and isinstance(row.value, dict) else {}
        settings = SystemSettings.from_mapping(stored)

        self._cached = settings
        self._cached_at = time.monotonic()
        self.logger.debug("System settings loaded", **settings.to_mapping())
        return settings

    async def update_settings(self, **changes: Any) -> SystemSettings:
        """Merge changes into the stored document and drop the cache."""
        async with self.database.session() as session:
            result = await session.execute(
                select(SystemSetting).where(SystemSetting.key == SYSTEM_SETTINGS_KEY)
            )
            row = result.scalar_one_or_none()
            current = SystemSettings.from_mapping(row.value if row is not None else {})
            updated = SystemSettings.from_mapping({**current.to_mapping(), **changes})

            if row is None:
                session.add(SystemSetting(key=SYSTEM_SETTINGS_KEY, value=updated.to_mapping()))
            else:
                row.value = updated.to_mapping()

        self.clear_cache()
        self.logger.info("System settings updated", changes=list(changes))
        return updated

    def clear_cache(self) -> None:
        self._cached = None
        self._cached_at = 0.0
