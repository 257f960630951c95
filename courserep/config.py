"""
Configuration for the Course Representative Engine

Settings start from DEFAULT_CONFIG, are overridden by COURSEREP_* environment
variables, and finally by an explicit dictionary passed by the caller.
"""

import logging
import os
import random
from dataclasses import dataclass
from typing import Dict, Optional

ENV_PREFIX = "COURSEREP_"

DEFAULT_CONFIG = {
    'SECRET_KEY': 'dev-secret-key-change-in-production',
    'DEBUG': False,
    'LOG_LEVEL': 'INFO',

    # Document store: memory, json or redis
    'STORE_TYPE': 'memory',
    'STORE_PATH': 'data/courserep.json',
    'REDIS_HOST': 'localhost',
    'REDIS_PORT': 6379,
    'REDIS_DB': 0,
    'REDIS_PREFIX': 'courserep',

    # Notification transport: log or redis
    'NOTIFICATION_TRANSPORT': 'log',

    # Optimistic concurrency retries
    'RETRY_MAX_ATTEMPTS': 5,
    'RETRY_BASE_DELAY': 0.01,
    'RETRY_MAX_DELAY': 0.5,

    'ANNOUNCEMENT_DEFAULT_LIMIT': 20,
    'STREAM_HEARTBEAT_SECONDS': 15.0,
}


def _coerce(value: str, default):
    """Convert an environment string to the type of the default value"""
    if isinstance(default, bool):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return value


def load_config(overrides: Optional[Dict] = None) -> Dict:
    """
    Build the effective configuration

    Args:
        overrides: Optional configuration dictionary applied last

    Returns:
        New configuration dictionary
    """
    config = dict(DEFAULT_CONFIG)
    for key, default in DEFAULT_CONFIG.items():
        env_value = os.environ.get(f"{ENV_PREFIX}{key}")
        if env_value is not None:
            config[key] = _coerce(env_value, default)

    if overrides:
        config.update(overrides)
    return config


def configure_logging(level: str = "INFO") -> None:
    """Install a basic log format unless the host application already did"""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff for version-conflict retries"""
    max_attempts: int = 5
    base_delay: float = 0.01
    max_delay: float = 0.5

    @classmethod
    def from_config(cls, config: Dict) -> 'RetryPolicy':
        return cls(
            max_attempts=int(config.get('RETRY_MAX_ATTEMPTS', cls.max_attempts)),
            base_delay=float(config.get('RETRY_BASE_DELAY', cls.base_delay)),
            max_delay=float(config.get('RETRY_MAX_DELAY', cls.max_delay)),
        )

    def delay(self, attempt: int) -> float:
        """
        Backoff before the given retry, with full jitter

        Args:
            attempt: 1 for the first retry, 2 for the second, ...

        Returns:
            Seconds to sleep
        """
        if self.base_delay <= 0:
            return 0.0
        ceiling = min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))
        return random.uniform(0, ceiling)
