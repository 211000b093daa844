"""Relay server configuration.

All settings can be overridden via environment variables.
A .env file in the working directory is loaded first.
"""

import os

from dotenv import load_dotenv

load_dotenv()


class ConfigError(RuntimeError):
    """Raised at startup when mandatory configuration is missing."""


# --- Server ---
RELAY_HOST = os.environ.get("RELAY_HOST", "0.0.0.0")
RELAY_PORT = int(os.environ.get("PORT", "3000"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

# --- Object store (Supabase Storage) ---
SUPABASE_URL = os.environ.get("SUPABASE_URL", "").rstrip("/")
SUPABASE_SERVICE_KEY = os.environ.get("SUPABASE_SERVICE_KEY", "")
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY", "")
STORAGE_BUCKET = os.environ.get("STORAGE_BUCKET", "video-kiosk")
STORAGE_PREFIX = "videos"
MAX_UPLOAD_BYTES = int(os.environ.get("MAX_UPLOAD_BYTES", str(50 * 1024 * 1024)))

# --- Frontends / CORS ---
FRONTEND_TABLET_URL = os.environ.get("FRONTEND_TABLET_URL", "http://localhost:5173")
FRONTEND_PHONE_URL = os.environ.get("FRONTEND_PHONE_URL", "http://localhost:5174")
EXTRA_ALLOWED_ORIGINS = [
    o.strip() for o in os.environ.get("EXTRA_ALLOWED_ORIGINS", "").split(",") if o.strip()
]

# --- Sessions ---
RECORDING_SESSION_TIMEOUT = float(os.environ.get("RECORDING_SESSION_TIMEOUT", "300"))
SESSION_HISTORY_TTL = float(os.environ.get("SESSION_HISTORY_TTL", "600"))

# --- Heartbeat ---
HEARTBEAT_INTERVAL = float(os.environ.get("HEARTBEAT_INTERVAL", "15"))
HEARTBEAT_TIMEOUT = float(os.environ.get("HEARTBEAT_TIMEOUT", "60"))

REQUIRED_ENV_VARS = (
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
    "SUPABASE_ANON_KEY",
)


def allowed_origins() -> list[str]:
    """Origins accepted by CORS and the relay WebSocket handshake."""
    origins = [
        FRONTEND_TABLET_URL,
        FRONTEND_PHONE_URL,
        "http://localhost:5173",
        "https://localhost:5173",
        *EXTRA_ALLOWED_ORIGINS,
    ]
    # Preserve order, drop duplicates
    return list(dict.fromkeys(o.rstrip("/") for o in origins if o))


def validate():
    """Refuse to start without store credentials."""
    settings = globals()
    for name in REQUIRED_ENV_VARS:
        if not settings.get(name):
            raise ConfigError(f"Missing required environment variable: {name}")
