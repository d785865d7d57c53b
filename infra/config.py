"""
Configuration Loading
---------------------
Builds ClientConfig objects from YAML files or environment variables.

Rules:
- Secrets are never stored in config files, only the NAME of the
  environment variable holding them (token_env, api_key_env, ...)
- YAML is validated with pydantic before any client is built
- ConfigManager holds process settings (logging) for the CLI;
  APICLIENT_* environment variables override its file values

Example clients.yaml:

    clients:
      github:
        base_url: https://api.github.com
        headers:
          Accept: application/vnd.github.v3+json
        auth:
          type: bearer
          token_env: GITHUB_TOKEN
        rate_limit: {requests: 30, window: 60, strategy: sliding}
"""

from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional
import logging
import os

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from api.auth import ApiKeyAuth, AuthStrategy, BasicAuth, BearerAuth, NoAuth, OAuth2Auth
from api.cache import CacheConfig, EvictionPolicy
from api.client import ClientConfig
from api.oauth2 import OAuth2Config
from api.rate_limiter import RateLimitConfig, RateLimitStrategy
from core.circuit_breaker import CircuitBreakerConfig

logger = logging.getLogger("apiclient.config")

ENV_OVERRIDE_PREFIX = "APICLIENT"


class ConfigError(Exception):
    """Invalid or incomplete client configuration."""


def _require_env(var: str, environ: Mapping[str, str]) -> str:
    value = environ.get(var)
    if not value:
        raise ConfigError(f"Environment variable not set: {var}")
    return value


class AuthSettings(BaseModel):
    """Authentication block. Secret fields name environment variables."""
    model_config = ConfigDict(extra="forbid")

    type: Literal["none", "bearer", "basic", "api-key", "oauth2"] = "none"
    token_env: Optional[str] = None
    username: Optional[str] = None
    password_env: Optional[str] = None
    api_key_env: Optional[str] = None
    header_name: str = "X-API-Key"
    client_id: Optional[str] = None
    client_secret_env: Optional[str] = None
    token_url: Optional[str] = None
    scope: Optional[str] = None
    grant_type: Literal["client_credentials", "refresh_token"] = "client_credentials"
    refresh_token_env: Optional[str] = None

    @model_validator(mode="after")
    def _check_required(self) -> "AuthSettings":
        required = {
            "bearer": ("token_env",),
            "basic": ("username", "password_env"),
            "api-key": ("api_key_env",),
            "oauth2": ("client_id", "client_secret_env", "token_url"),
        }.get(self.type, ())
        missing = [name for name in required if getattr(self, name) is None]
        if missing:
            raise ValueError(f"auth type '{self.type}' requires: {', '.join(missing)}")
        return self

    def to_strategy(self, environ: Mapping[str, str]) -> AuthStrategy:
        if self.type == "bearer":
            return BearerAuth(token=_require_env(self.token_env, environ))
        if self.type == "basic":
            return BasicAuth(username=self.username, password=_require_env(self.password_env, environ))
        if self.type == "api-key":
            return ApiKeyAuth(api_key=_require_env(self.api_key_env, environ), header_name=self.header_name)
        if self.type == "oauth2":
            return OAuth2Auth(OAuth2Config(
                client_id=self.client_id,
                client_secret=_require_env(self.client_secret_env, environ),
                token_url=self.token_url,
                scope=self.scope,
                grant_type=self.grant_type,
                refresh_token=_require_env(self.refresh_token_env, environ) if self.refresh_token_env else None,
            ))
        return NoAuth()


class RateLimitSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    requests: int = Field(100, gt=0)
    window: float = Field(60.0, gt=0)
    strategy: RateLimitStrategy = RateLimitStrategy.SLIDING


class CacheSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    ttl: float = Field(300.0, gt=0)
    max_size: int = Field(1000, gt=0)
    strategy: EvictionPolicy = EvictionPolicy.LRU
    include_body: bool = True


class CircuitBreakerSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    failure_threshold: int = Field(5, gt=0)
    recovery_timeout: float = Field(60.0, gt=0)


class ClientSettings(BaseModel):
    """One client entry of a YAML file."""
    model_config = ConfigDict(extra="forbid")

    base_url: str
    timeout: float = Field(30.0, gt=0)
    max_retries: int = Field(3, ge=0)
    retry_delay: float = Field(1.0, ge=0)
    headers: Dict[str, str] = Field(default_factory=dict)
    auth: AuthSettings = Field(default_factory=AuthSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    retry_on_transport_error: bool = True
    log_requests: bool = False
    log_responses: bool = False
    maintenance_interval: Optional[float] = Field(10.0, gt=0)

    def to_client_config(self, environ: Optional[Mapping[str, str]] = None) -> ClientConfig:
        environ = os.environ if environ is None else environ
        return ClientConfig(
            base_url=self.base_url,
            timeout=self.timeout,
            max_retries=self.max_retries,
            retry_delay=self.retry_delay,
            rate_limit=RateLimitConfig(**self.rate_limit.model_dump()),
            auth=self.auth.to_strategy(environ),
            cache=CacheConfig(**self.cache.model_dump()),
            circuit_breaker=CircuitBreakerConfig(**self.circuit_breaker.model_dump()),
            headers=dict(self.headers),
            retry_on_transport_error=self.retry_on_transport_error,
            log_requests=self.log_requests,
            log_responses=self.log_responses,
            maintenance_interval=self.maintenance_interval,
        )


class ClientsFile(BaseModel):
    clients: Dict[str, ClientSettings] = Field(default_factory=dict)


def parse_clients(data: Optional[Dict[str, Any]]) -> Dict[str, ClientSettings]:
    """Validate the parsed YAML document."""
    try:
        return ClientsFile.model_validate(data or {}).clients
    except PydanticValidationError as e:
        raise ConfigError(f"Invalid client configuration: {e}") from e


def load_client_configs(path: str, environ: Optional[Mapping[str, str]] = None) -> Dict[str, ClientConfig]:
    """
    Load every client defined in a YAML file.

    Raises ConfigError on a missing file, invalid shape or unset secret.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)

    settings = parse_clients(data)
    configs = {name: entry.to_client_config(environ) for name, entry in settings.items()}
    logger.info(f"Loaded {len(configs)} client(s) from {config_path}")
    return configs


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


def config_from_env(
    prefix: str = "EXTERNAL_API",
    environ: Optional[Mapping[str, str]] = None,
) -> ClientConfig:
    """
    Build the default client configuration from environment variables.

    Recognised (with the default prefix):
        EXTERNAL_API_BASE_URL, _TIMEOUT, _RETRIES,
        EXTERNAL_API_AUTH_TYPE (none|bearer|api-key), _TOKEN, _KEY, _KEY_HEADER,
        EXTERNAL_API_RATE_LIMIT_ENABLED / _REQUESTS / _WINDOW / _STRATEGY,
        EXTERNAL_API_CACHE_ENABLED / _TTL / _MAX_SIZE / _STRATEGY
    """
    env = os.environ if environ is None else environ

    def get(name: str, default: Optional[str] = None) -> Optional[str]:
        return env.get(f"{prefix}_{name}", default)

    auth_type = get("AUTH_TYPE", "none")
    auth: AuthStrategy
    if auth_type == "bearer":
        token = get("TOKEN")
        if not token:
            raise ConfigError(f"{prefix}_TOKEN is required for bearer auth")
        auth = BearerAuth(token=token)
    elif auth_type == "api-key":
        key = get("KEY")
        if not key:
            raise ConfigError(f"{prefix}_KEY is required for api-key auth")
        auth = ApiKeyAuth(api_key=key, header_name=get("KEY_HEADER") or "X-API-Key")
    elif auth_type == "none":
        auth = NoAuth()
    else:
        raise ConfigError(f"Unsupported {prefix}_AUTH_TYPE: {auth_type}")

    try:
        return ClientConfig(
            base_url=get("BASE_URL", "https://api.example.com"),
            timeout=float(get("TIMEOUT", "30")),
            max_retries=int(get("RETRIES", "3")),
            auth=auth,
            rate_limit=RateLimitConfig(
                enabled=_env_bool(get("RATE_LIMIT_ENABLED"), True),
                requests=int(get("RATE_LIMIT_REQUESTS", "100")),
                window=float(get("RATE_LIMIT_WINDOW", "60")),
                strategy=get("RATE_LIMIT_STRATEGY", "sliding"),
            ),
            cache=CacheConfig(
                enabled=_env_bool(get("CACHE_ENABLED"), True),
                ttl=float(get("CACHE_TTL", "300")),
                max_size=int(get("CACHE_MAX_SIZE", "1000")),
                strategy=get("CACHE_STRATEGY", "lru"),
            ),
        )
    except ValueError as e:
        raise ConfigError(f"Invalid {prefix}_* environment configuration: {e}") from e


LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


class LoggingSettings(BaseModel):
    """logging: section of the settings file."""
    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: bool = False
    dir: str = "logs"
    max_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    backup_count: int = Field(default=3, ge=0)

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value


class ConfigManager:
    """
    Process settings for the command-line tool, read from a YAML file.

    Environment variables override file values: 'logging.level' is
    overridden by APICLIENT_LOGGING_LEVEL. A missing file means defaults.
    """

    def __init__(self, config_path: str = "settings.yaml", env_prefix: str = ENV_OVERRIDE_PREFIX):
        self._config_path = Path(config_path)
        self._env_prefix = env_prefix
        self._config: Dict[str, Any] = {}
        self.reload()

    @property
    def path(self) -> Path:
        return self._config_path

    def reload(self) -> None:
        if not self._config_path.exists():
            logger.debug(f"No settings file at {self._config_path}, using defaults")
            self._config = {}
            return
        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {self._config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{self._config_path} must contain a mapping")
        self._config = data

    def _env_key(self, key: str) -> str:
        return f"{self._env_prefix}_{key.upper().replace('.', '_')}"

    def get(self, key: str, default: Any = None) -> Any:
        env_value = os.getenv(self._env_key(key))
        if env_value is not None:
            return env_value

        value: Any = self._config
        for part in key.split("."):
            if isinstance(value, dict) and part in value:
                value = value[part]
            else:
                return default
        return value

    def get_section(self, section: str) -> Dict[str, Any]:
        """A top-level section with environment overrides applied to its keys."""
        values = dict(self._config.get(section) or {})
        prefix = self._env_key(section) + "_"
        for name, value in os.environ.items():
            if name.startswith(prefix):
                values[name[len(prefix):].lower()] = value
        return values

    def logging_settings(self) -> LoggingSettings:
        try:
            return LoggingSettings.model_validate(self.get_section("logging"))
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid logging settings in {self._config_path}: {e}") from e
