import re
import warnings
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Literal "\n" / "\r" sequences and raw control characters sneak into env values
# pasted from dashboards; they are never part of a usable URL.
_ESCAPED_NEWLINES = re.compile(r"\\[nr]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


class Settings(BaseSettings):
    APP_NAME: str = "Mediation Edge Proxy"
    APP_ENV: str = "development"
    APP_VERSION: str = "1.0.0"
    API_PREFIX: str = "/api"

    # CORS
    BACKEND_CORS_ORIGINS: str = ""

    # Control plane (binding storage + passthrough target)
    CONTROL_PLANE_API_BASE_URL: str = ""
    CONTROL_PLANE_API_PROXY_TARGET: str = ""

    # Runtime routing
    RUNTIME_API_BASE_URL: str = ""           # explicit managed-default override
    RUNTIME_GATEWAY_HOSTNAME: str = ""       # CNAME target for customer domains
    RUNTIME_REQUIRE_GATEWAY_CNAME: bool = False
    MANAGED_RUNTIME_BASE_URL: str = ""
    MANAGED_RUNTIME_FALLBACK_DISABLED: bool = False

    # Timeouts (seconds)
    TLS_TIMEOUT_SECONDS: float = 8.0         # also bounds the DNS stage
    BINDING_STORE_TIMEOUT_SECONDS: float = 2.5
    UPSTREAM_TIMEOUT_SECONDS: float = 10.0   # bid probe, bid proxy, passthrough

    # Binding cache
    BINDING_CACHE_TTL_SECONDS: int = 30
    BINDING_CACHE_MAX_ENTRIES: int = 10_000
    BINDING_CACHE_REDIS_URL: str = ""        # empty = in-process cache

    # Probe
    PROBE_HEADERS_MAX_COUNT: int = 2
    PROBE_HEADERS_MAX_BYTES: int = 2048

    # Defaults handed to SDK clients
    DEFAULT_PLACEMENT_ID: str = "chat_from_answer_v1"
    DEFAULT_ENVIRONMENT: str = "prod"
    DEFAULT_KEY_NAME: str = "runtime-prod"
    TENANT_ID_EPOCH: str = "v1"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MEDIATION_",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator(
        "CONTROL_PLANE_API_BASE_URL",
        "CONTROL_PLANE_API_PROXY_TARGET",
        "RUNTIME_API_BASE_URL",
        "MANAGED_RUNTIME_BASE_URL",
        "RUNTIME_GATEWAY_HOSTNAME",
        mode="before",
    )
    @classmethod
    def _strip_control_chars(cls, value):
        if value is None:
            return ""
        value = _ESCAPED_NEWLINES.sub("", str(value))
        return _CONTROL_CHARS.sub("", value).strip()

    @model_validator(mode="after")
    def _validate_runtime_routing(self) -> "Settings":
        """Reject contradictory routing settings before the app starts serving."""
        if self.RUNTIME_REQUIRE_GATEWAY_CNAME and not self.RUNTIME_GATEWAY_HOSTNAME:
            raise ValueError(
                "MEDIATION_RUNTIME_REQUIRE_GATEWAY_CNAME is enabled but "
                "MEDIATION_RUNTIME_GATEWAY_HOSTNAME is empty; no domain could ever verify."
            )
        if self.APP_ENV in ("production", "staging"):
            if not self.MANAGED_RUNTIME_BASE_URL:
                warnings.warn(
                    "MEDIATION_MANAGED_RUNTIME_BASE_URL is not set; unverified and "
                    "unbound API keys will get 503 on /v2/bid.",
                    UserWarning,
                    stacklevel=2,
                )
        return self

    @property
    def is_production(self) -> bool:
        return self.APP_ENV == "production"

    @property
    def is_staging(self) -> bool:
        return self.APP_ENV == "staging"

    @property
    def is_development(self) -> bool:
        return self.APP_ENV == "development"

settings = Settings()
