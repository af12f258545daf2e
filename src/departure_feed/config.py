"""config.py — Runtime settings, read from the environment.

Every setting has a default that works against a local flights.db.
Override with DEPARTURE_FEED_* variables:

    DEPARTURE_FEED_DB=/data/flights.db DEPARTURE_FEED_PORT=8080 departure-feed
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

ENV_PREFIX = "DEPARTURE_FEED_"


def _env_bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    value = env.get(ENV_PREFIX + name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _env_number(env: Mapping[str, str], name: str, default, cast):
    value = env.get(ENV_PREFIX + name)
    if value is None or not value.strip():
        return default
    try:
        number = cast(value)
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number, got {value!r}") from None
    if number <= 0:
        raise ValueError(f"{ENV_PREFIX}{name} must be positive, got {value!r}")
    return number


@dataclass
class FeedConfig:
    """Settings for one feed process."""

    db_path: str = "flights.db"
    host: str = "127.0.0.1"
    port: int = 7999
    # The dataset is New York departures; replay them on New York's clock
    timezone: str = "America/New_York"
    poll_interval: float = 10.0
    keepalive_interval: float = 30.0
    buffer_size: int = 1000
    debug: bool = False

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> FeedConfig:
        """Build a config from DEPARTURE_FEED_* variables (os.environ by default).

        Raises ValueError when a numeric setting isn't a positive number.
        """
        env = os.environ if env is None else env
        defaults = cls()
        return cls(
            db_path=env.get(ENV_PREFIX + "DB", defaults.db_path),
            host=env.get(ENV_PREFIX + "HOST", defaults.host),
            port=_env_number(env, "PORT", defaults.port, int),
            timezone=env.get(ENV_PREFIX + "TIMEZONE", defaults.timezone),
            poll_interval=_env_number(env, "POLL_INTERVAL", defaults.poll_interval, float),
            keepalive_interval=_env_number(
                env, "KEEPALIVE_INTERVAL", defaults.keepalive_interval, float
            ),
            buffer_size=_env_number(env, "BUFFER_SIZE", defaults.buffer_size, int),
            debug=_env_bool(env, "DEBUG"),
        )
