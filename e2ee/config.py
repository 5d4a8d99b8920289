"""
Configuration for the E2EE core.

Values come from keyword arguments or from ``VAULTKE_E2EE_*`` environment
variables (a ``.env`` file in the working directory is honoured).
"""

import os
from dataclasses import dataclass
from datetime import timedelta

from dotenv import load_dotenv

MIN_SKIP_WINDOW = 1024


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class E2EEConfig:
    """
    Tunables for the key store, ratchet and codec.

    Attributes:
        database_url: SQLAlchemy async database URL
        one_time_pre_key_count: Pool size after initialisation or replenish
        low_water_mark: Replenish is scheduled when the pool drops below this
        skip_window: Out-of-order tolerance and replay bitmap width
        signed_pre_key_max_age: Rotation policy for signed pre-keys
        signed_pre_key_grace: How long a replaced signed pre-key is still accepted
        allow_weak_bundles: Hand out bundles without a one-time pre-key when the pool is empty
        debug_sink: Enable the local diagnostic logger
    """
    database_url: str = "sqlite+aiosqlite:///./vaultke_e2ee.db"
    one_time_pre_key_count: int = 100
    low_water_mark: int = 20
    skip_window: int = MIN_SKIP_WINDOW
    signed_pre_key_max_age: timedelta = timedelta(days=7)
    signed_pre_key_grace: timedelta = timedelta(hours=48)
    allow_weak_bundles: bool = True
    debug_sink: bool = False

    def __post_init__(self):
        if self.one_time_pre_key_count < 1:
            raise ValueError("one_time_pre_key_count must be positive")
        if self.low_water_mark < 0 or self.low_water_mark > self.one_time_pre_key_count:
            raise ValueError("low_water_mark must be between 0 and one_time_pre_key_count")
        # Narrowing the replay bitmap would forget delivered numbers.
        if self.skip_window < MIN_SKIP_WINDOW:
            raise ValueError(f"skip_window must be at least {MIN_SKIP_WINDOW}")
        if self.signed_pre_key_grace < timedelta(0):
            raise ValueError("signed_pre_key_grace must not be negative")

    @classmethod
    def from_env(cls, **overrides) -> "E2EEConfig":
        """Build a config from the environment; keyword arguments win"""
        load_dotenv()
        values = {
            "database_url": os.getenv("VAULTKE_E2EE_DATABASE_URL", cls.database_url),
            "one_time_pre_key_count": int(os.getenv("VAULTKE_E2EE_ONE_TIME_PRE_KEYS", cls.one_time_pre_key_count)),
            "low_water_mark": int(os.getenv("VAULTKE_E2EE_LOW_WATER_MARK", cls.low_water_mark)),
            "skip_window": int(os.getenv("VAULTKE_E2EE_SKIP_WINDOW", cls.skip_window)),
            "signed_pre_key_max_age": timedelta(hours=float(os.getenv("VAULTKE_E2EE_SPK_MAX_AGE_HOURS", 168))),
            "signed_pre_key_grace": timedelta(hours=float(os.getenv("VAULTKE_E2EE_SPK_GRACE_HOURS", 48))),
            "allow_weak_bundles": _env_bool("VAULTKE_E2EE_ALLOW_WEAK_BUNDLES", cls.allow_weak_bundles),
            "debug_sink": _env_bool("VAULTKE_E2EE_DEBUG", cls.debug_sink),
        }
        values.update(overrides)
        return cls(**values)
