"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for credvault happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. master_key -> MASTER_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment.

Security notes:
  [K1] MASTER_KEY encrypts the credential file. There is no fallback in any
       mode: a missing key is a hard startup failure. An auto-generated key
       would make the file unreadable after the next restart, and a fixed
       default would make the encryption decorative.

  [M6] Keys shorter than 32 chars are rejected outright.

  [M7] SECRET_KEY signs session lookups and is checked by
       require_session_secret(), which api/main.py calls at import. In
       production mode (DEBUG not set or false) a missing SECRET_KEY is a
       hard API startup failure; in dev mode a random one is generated with
       a warning. Sessions are in-memory, so a random key costs nothing that
       a restart would not cost anyway.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("credvault.config")

_MIN_KEY_LEN = 32


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    Environment variable name mapping: field names are uppercased automatically.
    E.g. `master_key` reads from MASTER_KEY, `debug` reads from DEBUG.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured" for both secrets.
    master_key: str = ""
    secret_key: str = ""

    # ------------------------------------------------------------------
    # Credential store
    # ------------------------------------------------------------------

    credentials_path: Path = Path("data") / "credentials.enc"
    password_iterations: int = Field(default=210_000, ge=10_000)

    # Only consulted when the store is empty at startup.
    bootstrap_admin_username: str = "admin"
    bootstrap_admin_password: str = ""

    # ------------------------------------------------------------------
    # Sessions and HTTP
    # ------------------------------------------------------------------

    session_idle_seconds: int = Field(default=30 * 60, gt=0)
    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    # Deployment policy: only admins may rotate their own credentials.
    credential_change_admin_only: bool = True
    # JSON lists in the environment, e.g. ALLOWED_HOSTS='["auth.example.com"]'.
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_master_key(self) -> "Settings":
        """Enforce the MASTER_KEY [K1] policy and the SECRET_KEY length [M6]."""
        if not self.master_key:
            raise ValueError(
                "MASTER_KEY is required. Set MASTER_KEY in your environment or .env file. "
                "It encrypts the credential file and has no default."
            )
        if len(self.master_key) < _MIN_KEY_LEN:
            raise ValueError(f"MASTER_KEY must be at least {_MIN_KEY_LEN} characters.")

        if self.secret_key and len(self.secret_key) < _MIN_KEY_LEN:
            raise ValueError(f"SECRET_KEY must be at least {_MIN_KEY_LEN} characters.")
        return self

    def require_session_secret(self) -> str:
        """Return SECRET_KEY, enforcing the [M7] policy.

        Only the API needs a session secret, so it calls this at import; the
        admin CLI never does and runs with MASTER_KEY alone.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions are signed with a throwaway key.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        return self.secret_key


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
