import os
from dataclasses import dataclass
from typing import Optional, Tuple

from dotenv import load_dotenv

# A local .env (if present) fills in variables not already set.
load_dotenv()


class ConfigError(RuntimeError):
    """Raised when the runtime configuration is unusable."""


def _env_bool(name: str, default: Optional[bool] = None) -> Optional[bool]:
    """Parse a boolean environment variable.

    Returns:
      - True/False if the env var is set to a recognizable value
      - default if unset or unrecognized

    Accepted truthy: 1, true, yes, y, on
    Accepted falsy:  0, false, no, n, off
    """

    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip().lower()
    if v in ("1", "true", "yes", "y", "on"):
        return True
    if v in ("0", "false", "no", "n", "off"):
        return False
    return default


@dataclass(frozen=True)
class Config:
    """Runtime configuration.

    IMPORTANT: Provide the session secret via environment variables or a .env file.
    There is no built-in default; `load_config()` refuses to build a config without one.
    """

    # -----------------
    # Core
    # -----------------
    # Preferred: set MOETV_DATABASE_URL (or DATABASE_URL) to use Postgres.
    # Fallback: MOETV_DB_PATH for SQLite.
    DB_DSN: str = "./moetv.sqlite"

    APP_ENV: str = "development"

    # -----------------
    # Auth (session JWT)
    # -----------------
    AUTH_JWT_SECRET: str = ""
    AUTH_SESSION_TTL_SECONDS: int = 24 * 60 * 60

    # Bootstrap first admin user if users table is empty.
    # Leave the password blank to skip bootstrapping.
    AUTH_BOOTSTRAP_ADMIN_EMAIL: str = "admin@moetv.com"
    AUTH_BOOTSTRAP_ADMIN_USERNAME: str = "admin"
    AUTH_BOOTSTRAP_ADMIN_PASSWORD: str = ""

    # Cookie-based browser sessions.
    AUTH_COOKIE_NAME: str = "session"
    AUTH_COOKIE_DOMAIN: Optional[str] = None
    AUTH_COOKIE_PATH: str = "/"
    AUTH_COOKIE_SAMESITE: str = "lax"  # lax|strict|none
    AUTH_COOKIE_SECURE: bool = False

    # -----------------
    # CORS (development)
    # -----------------
    CORS_ALLOW_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    def cors_origins(self) -> Tuple[str, ...]:
        return tuple(o.strip() for o in (self.CORS_ALLOW_ORIGINS or "").split(",") if o.strip())


def load_config() -> Config:
    """Build a Config from the environment.

    Raises ConfigError when no session signing secret is configured.
    """

    secret = (os.environ.get("MOETV_SESSION_SECRET") or os.environ.get("JWT_SECRET") or "").strip()
    if not secret:
        raise ConfigError("MOETV_SESSION_SECRET (or JWT_SECRET) must be set")

    app_env = os.environ.get("APP_ENV", "development")

    # If AUTH_COOKIE_SECURE is unset, secure cookies follow APP_ENV=production.
    secure = _env_bool("AUTH_COOKIE_SECURE", None)
    if secure is None:
        secure = app_env.strip().lower() == "production"

    return Config(
        DB_DSN=(
            os.environ.get("MOETV_DATABASE_URL")
            or os.environ.get("DATABASE_URL")
            or os.environ.get("MOETV_DB_PATH", "./moetv.sqlite")
        ),
        APP_ENV=app_env,
        AUTH_JWT_SECRET=secret,
        AUTH_SESSION_TTL_SECONDS=int(os.environ.get("AUTH_SESSION_TTL_SECONDS", str(24 * 60 * 60))),
        AUTH_BOOTSTRAP_ADMIN_EMAIL=os.environ.get("AUTH_BOOTSTRAP_ADMIN_EMAIL", "admin@moetv.com"),
        AUTH_BOOTSTRAP_ADMIN_USERNAME=os.environ.get("AUTH_BOOTSTRAP_ADMIN_USERNAME", "admin"),
        AUTH_BOOTSTRAP_ADMIN_PASSWORD=os.environ.get("AUTH_BOOTSTRAP_ADMIN_PASSWORD", ""),
        AUTH_COOKIE_NAME=os.environ.get("AUTH_COOKIE_NAME", "session"),
        AUTH_COOKIE_DOMAIN=(os.environ.get("AUTH_COOKIE_DOMAIN") or "").strip() or None,
        AUTH_COOKIE_PATH=os.environ.get("AUTH_COOKIE_PATH", "/"),
        AUTH_COOKIE_SAMESITE=os.environ.get("AUTH_COOKIE_SAMESITE", "lax"),
        AUTH_COOKIE_SECURE=bool(secure),
        CORS_ALLOW_ORIGINS=os.environ.get(
            "CORS_ALLOW_ORIGINS",
            "http://localhost:3000,http://127.0.0.1:3000",
        ),
    )
