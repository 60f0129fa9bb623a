# config.py
from pydantic import PrivateAttr, SecretStr, field_validator
from pydantic_settings import BaseSettings


def _csv_set(value: str) -> set[str]:
    return {x.strip() for x in value.split(",") if x.strip()}


class Settings(BaseSettings):
    # JWT validation (shared-secret HMAC)
    jwt_secret: SecretStr = SecretStr("")  # JWT_SECRET: startup refuses an empty secret
    jwt_algorithms: str = "HS256"          # JWT_ALGORITHMS (CSV)
    jwt_audience: str | None = None        # JWT_AUDIENCE
    jwt_issuer: str | None = None          # JWT_ISSUER
    jwt_leeway: int = 0                    # JWT_LEEWAY (seconds)

    # Allowed upstream hosts, added to the built-in list.
    # EXTRA_WHITELIST=internal.example.org,api.partner.io
    extra_whitelist: str = ""              # EXTRA_WHITELIST

    # Proxy route and upstream dispatch
    route_prefix: str = "/proxy"           # ROUTE_PREFIX
    proxy_timeout: float = 30.0            # PROXY_TIMEOUT (seconds)
    max_body_bytes: int = 10 * 1024 * 1024  # MAX_BODY_BYTES (10 MB)
    max_redirects: int = 10                # MAX_REDIRECTS
    disconnect_poll_interval: float = 0.5  # DISCONNECT_POLL_INTERVAL (seconds)

    # Client address. Only enable behind a load balancer that overwrites X-Forwarded-For.
    trust_forwarded_for: bool = False      # TRUST_FORWARDED_FOR

    # Rate limiting (fixed window per client address)
    redis_url: str | None = None           # REDIS_URL: in-memory when unset
    rl_enabled: bool = True                # RL_ENABLED
    rl_window_seconds: int = 15 * 60       # RL_WINDOW_SECONDS
    rl_max_requests: int = 300             # RL_MAX_REQUESTS
    rl_max_keys: int = 100_000             # RL_MAX_KEYS (in-memory only)
    rl_grace_seconds: int = 60             # RL_GRACE_SECONDS (in-memory only)

    # development | production: affects log verbosity only.
    environment: str = "development"       # ENVIRONMENT

    # Pre-computed sets: parsed once at startup, not on every request.
    _extra_whitelist_set: set[str] = PrivateAttr(default_factory=set)
    _jwt_algorithms_list: list[str] = PrivateAttr(default_factory=list)

    @field_validator("route_prefix")
    @classmethod
    def _check_prefix(cls, value: str) -> str:
        value = value.rstrip("/")
        if not value.startswith("/"):
            raise ValueError("ROUTE_PREFIX must start with '/' and must not be '/'")
        return value

    def model_post_init(self, __context) -> None:
        self._extra_whitelist_set = _csv_set(self.extra_whitelist)
        self._jwt_algorithms_list = sorted(_csv_set(self.jwt_algorithms))

    @property
    def extra_whitelist_set(self) -> set[str]:
        return self._extra_whitelist_set

    @property
    def jwt_algorithms_list(self) -> list[str]:
        return self._jwt_algorithms_list

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() == "production"

    @property
    def log_level(self) -> str:
        return "INFO" if self.is_production else "DEBUG"

    model_config = {"env_file": ".env", "case_sensitive": False}


settings = Settings()
