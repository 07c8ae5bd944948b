"""Admin-editable business settings.

Values come from the ``settings`` table layered over built-in defaults.
They are read at call time through a short TTL cache, so a change made by
an administrator is picked up without a restart.
"""

import os
import threading
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from recurbill.db.models import Setting
from recurbill.db.session import get_db_session
from recurbill.logging_config import get_logger

logger = get_logger(__name__)

DEFAULTS: Dict[str, Any] = {
    "tax.vatRate": "0.12",
    "tax.defaultWithholdingRate": "0.02",
    "tax.defaultWithholdingCode": "WC160",
    "billing.defaultDueDays": 15,
    "billing.defaultDescription": "Services",
}


class SettingsProvider:
    """Reads settings from the database with a TTL cache.

    Args:
        session_factory (sessionmaker, optional): Factory for database sessions.
        ttl_seconds (float, optional): Cache lifetime. Defaults to the
            SETTINGS_CACHE_TTL_SECONDS env var (300).
        clock (Callable[[], float], optional): Monotonic time source.
    """

    def __init__(
        self,
        session_factory=None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        if ttl_seconds is None:
            ttl_seconds = float(os.getenv("SETTINGS_CACHE_TTL_SECONDS", "300"))
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: Optional[Dict[str, Any]] = None
        self._loaded_at = 0.0
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, Any]:
        values = dict(DEFAULTS)
        try:
            with get_db_session(self.session_factory) as db:
                for row in db.query(Setting).all():
                    values[row.key] = row.value
        except SQLAlchemyError:
            # Fall back to defaults rather than blocking invoice generation.
            logger.exception("Error fetching settings, using defaults")
            return dict(DEFAULTS)
        return values

    def all(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            if self._cache is None or now - self._loaded_at >= self.ttl_seconds:
                self._cache = self._load()
                self._loaded_at = now
            return self._cache

    def get(self, key: str) -> Any:
        return self.all().get(key, DEFAULTS.get(key))

    def clear_cache(self) -> None:
        """Drop cached values; call after updating a setting."""
        with self._lock:
            self._cache = None
            self._loaded_at = 0.0

    def set(self, key: str, value: Any) -> None:
        with get_db_session(self.session_factory) as db:
            row = db.get(Setting, key)
            if row is None:
                db.add(Setting(key=key, value=value))
            else:
                row.value = value
        self.clear_cache()
        logger.info(f"Setting '{key}' updated")

    def vat_rate(self) -> Decimal:
        return Decimal(str(self.get("tax.vatRate")))

    def default_withholding_rate(self) -> Decimal:
        return Decimal(str(self.get("tax.defaultWithholdingRate")))

    def default_withholding_code(self) -> str:
        return str(self.get("tax.defaultWithholdingCode"))

    def default_due_days(self) -> int:
        return int(self.get("billing.defaultDueDays"))

    def default_description(self) -> str:
        return str(self.get("billing.defaultDescription"))
