import json
import os
from dataclasses import dataclass
from pathlib import Path

from costbridge.errors import ConfigError
from costbridge.provider.datadog import DEFAULT_SITE, PRICING_URL


@dataclass
class Config:
    datadog_site: "str" = DEFAULT_SITE
    datadog_api_key: "str" = ""
    datadog_app_key: "str" = ""
    openai_api_key: "str" = ""
    openai_org_id: "str" = ""
    log_level: "str" = "info"
    # console or json
    log_format: "str" = "console"

    # datadog usage APIs allow 10 requests every 30 seconds
    rate_limit_per_second: "float" = 0.25
    rate_limit_burst: "int" = 5
    # openai: one request every two seconds
    openai_rate_limit_per_second: "float" = 0.5
    openai_rate_limit_burst: "int" = 1
    # longest one request may wait on a rate limiter, unbounded when None
    rate_limit_wait_timeout_seconds: "float | None" = None
    max_attempts: "int" = 5
    retry_delay_seconds: "float" = 30.0
    http_timeout_seconds: "float" = 30.0
    pricing_url: "str" = PRICING_URL

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            datadog_site=os.environ.get("DD_SITE", DEFAULT_SITE),
            datadog_api_key=os.environ.get("DD_API_KEY", ""),
            datadog_app_key=os.environ.get("DD_APP_KEY", ""),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            openai_org_id=os.environ.get("OPENAI_ORG_ID", ""),
            log_level=os.environ.get("COSTBRIDGE_LOG_LEVEL", "info"),
        )

    @classmethod
    def from_file(cls, path: "str | Path") -> "Config":
        """
        reads the plugin's JSON config file. Only the keys present in
        the file override the defaults.
        """
        try:
            raw = Path(path).read_text()
        except OSError as exc:
            raise ConfigError(f"error reading config file @ {path}: {exc}") from exc

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"error parsing config file @ {path}: {exc}") from exc

        if not isinstance(data, dict):
            raise ConfigError(f"config file @ {path} must hold a JSON object")

        config = cls()
        config.datadog_site = data.get("datadog_site") or DEFAULT_SITE
        config.datadog_api_key = data.get("datadog_api_key", "")
        config.datadog_app_key = data.get("datadog_app_key", "")
        config.openai_api_key = data.get("openai_api_key", "")
        config.openai_org_id = data.get("openai_org_id", "")
        config.log_level = data.get("log_level") or "info"

        try:
            for key in (
                "rate_limit_per_second",
                "openai_rate_limit_per_second",
                "rate_limit_wait_timeout_seconds",
                "retry_delay_seconds",
                "http_timeout_seconds",
            ):
                if key in data:
                    setattr(config, key, float(data[key]))
            for key in ("rate_limit_burst", "openai_rate_limit_burst", "max_attempts"):
                if key in data:
                    setattr(config, key, int(data[key]))
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid numeric setting in config file @ {path}: {exc}") from exc

        return config

    @property
    def datadog_enabled(self) -> "bool":
        return bool(self.datadog_api_key and self.datadog_app_key)

    @property
    def openai_enabled(self) -> "bool":
        return bool(self.openai_api_key)
