import logging
from typing import Any, ClassVar, FrozenSet

from pydantic_settings import BaseSettings, SettingsConfigDict

_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=True, extra="ignore"
    )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./nvcar.db"

    # Database pool (applies to client/server DBs like Postgres; SQLite uses NullPool)
    DB_POOL_PRE_PING: bool = True
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT_SECONDS: int = 30
    DB_POOL_RECYCLE_SECONDS: int = 1800

    # Applied for Postgres connections only. Ring-buffer writes are single-row
    # atomic updates, so READ COMMITTED is enough.
    DB_POSTGRES_ISOLATION_LEVEL: str = "READ COMMITTED"

    # JWT
    # NOTE: This default is intentionally insecure and must never be used outside dev/test.
    DEFAULT_JWT_SECRET: ClassVar[str] = "dev-secret-change-me-please-32chars!!"
    JWT_SECRET: str = DEFAULT_JWT_SECRET
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 120

    # Application
    LOG_LEVEL: str = "INFO"
    DEBUG: bool = False

    # Environment
    # Used for guardrails (e.g. dev-only auth helpers). Suggested values: dev|staging|prod.
    ENV: str = "dev"

    # Public address of this process. Synthetic actors call the API at
    # {PUBLIC_API_PROTOCOL}://{PUBLIC_API_HOST}:{PORT}{SIMULATION_TARGET_API_PREFIX}.
    PUBLIC_API_PROTOCOL: str = ""
    PUBLIC_API_HOST: str = "127.0.0.1"
    PORT: int = 8000
    API_PREFIX: str = "/api/v1"

    # Rate limiting (in-memory, best-effort)
    RATE_LIMIT_ENABLED: bool = True
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_REQUESTS_PER_WINDOW: int = 120

    # Observability
    METRICS_ENABLED: bool = True

    # --- Sandbox guard ---
    # Raw string on purpose: the guard reports the raw value in its diagnostics.
    SIMULATION_SANDBOX: str = ""
    SIMULATION_SANDBOX_MARKER: str = "sandbox"

    # --- Sandbox server (child process) ---
    SANDBOX_PORT: int = 8001
    SANDBOX_DATABASE_URL: str = "sqlite+aiosqlite:///./nvcar_sandbox.db"
    # Empty = no build step.
    SANDBOX_BUILD_COMMAND: str = ""
    # Artifact that must exist before the child is spawned (relative to repo root).
    SANDBOX_ENTRY: str = "app/main.py"
    SANDBOX_APP: str = "app.main:app"
    SANDBOX_CERTS_DIR: str = "../certs"
    SANDBOX_HEALTH_PATH: str = "/health"
    SANDBOX_HEALTH_TIMEOUT_SECONDS: float = 30.0
    SANDBOX_HEALTH_INTERVAL_SECONDS: float = 0.75
    SANDBOX_HEALTH_PROBE_TIMEOUT_SECONDS: float = 1.5
    SANDBOX_BUILD_OUTPUT_MAX_CHARS: int = 4000
    SANDBOX_STOP_GRACE_SECONDS: float = 5.0

    # --- Simulation runs ---
    # Prefix of the collaborator API (teacher/subadmin routes) on the target host.
    SIMULATION_TARGET_API_PREFIX: str = ""
    SIMULATION_HTTP_TIMEOUT_SECONDS: float = 15.0
    SIMULATION_PROXY_TIMEOUT_SECONDS: float = 30.0
    SIMULATION_SAMPLER_INTERVAL_SECONDS: float = 1.0
    SIMULATION_COLLECTOR_INTERVAL_SECONDS: float = 0.75
    SIMULATION_ACTOR_DRAIN_TIMEOUT_SECONDS: float = 20.0
    SIMULATION_CLEANUP_SEEDED_DATA: bool = False
    SIMULATION_HISTORY_LIMIT: int = 25
    SIMULATION_ACTOR_PASSWORD: str = "sim"
    # Low cost factor: hundreds of synthetic accounts are hashed per run.
    SIMULATION_BCRYPT_ROUNDS: int = 4

    # Admin API
    # NOTE: Shared secret accepted alongside ADMIN-role bearer tokens.
    # NOTE: This default is intentionally insecure and must never be used outside dev/test.
    DEFAULT_ADMIN_TOKEN: ClassVar[str] = "dev-admin-token-change-me"
    ADMIN_TOKEN: str = DEFAULT_ADMIN_TOKEN

    # --- Guardrails ---
    # Fail-fast on obviously insecure secrets outside dev/test.
    _SAFE_ENVS: ClassVar[FrozenSet[str]] = frozenset({"dev", "development", "test", "testing"})
    _UNSAFE_PLACEHOLDERS: ClassVar[FrozenSet[str]] = frozenset(
        {
            "change-me-in-production",
            "change-me",
            "changeme",
            "",
        }
    )

    def model_post_init(self, __context: Any) -> None:
        # Runs on every Settings() instantiation (including module-level `settings = Settings()`).
        self._guardrail_default_secrets()

    def _guardrail_default_secrets(self) -> None:
        env = (self.ENV or "").strip().lower()
        if env in self._SAFE_ENVS:
            return

        jwt_secret = (self.JWT_SECRET or "").strip()
        admin_token = (self.ADMIN_TOKEN or "").strip()

        def _is_unsafe(value: str, *, default_value: str) -> bool:
            v = (value or "").strip()
            vl = v.lower()
            if v == default_value:
                return True
            if vl in self._UNSAFE_PLACEHOLDERS:
                return True
            if "change-me" in vl:
                return True
            return False

        problems: list[str] = []
        if _is_unsafe(jwt_secret, default_value=self.DEFAULT_JWT_SECRET):
            problems.append("JWT_SECRET")
        if _is_unsafe(admin_token, default_value=self.DEFAULT_ADMIN_TOKEN):
            problems.append("ADMIN_TOKEN")

        if problems:
            fields = ", ".join(problems)
            raise RuntimeError(
                "Refusing to start with insecure default/placeholder secrets outside dev/test: "
                f"{fields}. "
                f"Got ENV={self.ENV!r}. "
                "Set secure values via environment variables (JWT_SECRET / ADMIN_TOKEN), "
                "or run with ENV=dev/test."
            )


settings = Settings()

