"""Django settings for the ballotbox election engine.

Every deployment-specific value comes from the environment. Values that are
fixed by the election rules (code alphabet, runoff window, minimum voter age)
live next to the code that enforces them, not here.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


def _env_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


BASE_DIR: Path = Path(__file__).resolve().parent.parent

DEBUG: bool = _env_bool("DEBUG")

# Only used for Django's own signing helpers; the election engine does not sign anything.
SECRET_KEY: str = os.getenv("SECRET_KEY", "ballotbox-insecure-development-key")

ALLOWED_HOSTS: list[str] = _env_list("ALLOWED_HOSTS", "localhost,127.0.0.1")

INSTALLED_APPS: list[str] = [
    "core.apps.CoreConfig",
]

MIDDLEWARE: list[str] = []

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

if os.getenv("DATABASE_HOST"):
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.postgresql",
            "HOST": os.getenv("DATABASE_HOST", ""),
            "PORT": os.getenv("DATABASE_PORT", "5432"),
            "NAME": os.getenv("DATABASE_NAME", "ballotbox"),
            "USER": os.getenv("DATABASE_USER", "ballotbox"),
            "PASSWORD": os.getenv("DATABASE_PASSWORD", ""),
            "CONN_MAX_AGE": int(os.getenv("DATABASE_CONN_MAX_AGE", "60")),
        }
    }
else:
    DATABASES = {
        "default": {
            "ENGINE": "django.db.backends.sqlite3",
            "NAME": os.getenv("DATABASE_NAME", str(BASE_DIR / "db.sqlite3")),
        }
    }

LANGUAGE_CODE = "en-us"
TIME_ZONE: str = os.getenv("TIME_ZONE", "UTC")
USE_I18N = False
USE_TZ = True

# Upper bound for one fake-vote injection request (demo tooling only).
ELECTION_FAKE_VOTES_MAX_BATCH: int = int(os.getenv("ELECTION_FAKE_VOTES_MAX_BATCH", "100"))

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "[{asctime}] {levelname} {name}: {message}",
            "style": "{",
        },
    },
    "handlers": {
        "stderr": {
            "class": "logging.StreamHandler",
            "formatter": "default",
        },
    },
    "loggers": {
        "core": {
            "handlers": ["stderr"],
            "level": LOG_LEVEL,
            "propagate": False,
        },
        "django": {
            "handlers": ["stderr"],
            "level": "WARNING",
            "propagate": False,
        },
    },
    "root": {
        "handlers": ["stderr"],
        "level": "WARNING",
    },
}

SENTRY_DSN: str = os.getenv("SENTRY_DSN", "")

if SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.django import DjangoIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=SENTRY_DSN,
        integrations=[
            DjangoIntegration(),
            LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        ],
        environment=os.getenv("SENTRY_ENVIRONMENT", "production"),
        traces_sample_rate=0.0,
        send_default_pii=False,
    )
