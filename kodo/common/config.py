from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

ENV_FILE = Path(".env")

# camelCase names used by zone blocks in existing YAML/JSON deployment configs.
ZONE_CONF_KEYS: dict[str, str] = {
    "srcUpHosts": "src_up_hosts",
    "cdnUpHosts": "cdn_up_hosts",
    "rsHost": "rs_host",
    "rsfHost": "rsf_host",
    "apiHost": "api_host",
    "ioVipHost": "io_vip_host",
}


def _load_env_file() -> None:
    if not ENV_FILE.exists():
        return
    for raw_line in ENV_FILE.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _as_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    return value.lower() in {"1", "true", "t", "yes", "y", "on"}


def _as_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item).strip() for item in value if str(item).strip()]


@dataclass(frozen=True)
class ZoneConf:
    """Regional endpoint override for private deployments."""

    src_up_hosts: list[str] = field(default_factory=list)
    cdn_up_hosts: list[str] = field(default_factory=list)
    rs_host: str = ""
    rsf_host: str = ""
    api_host: str = ""
    io_vip_host: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "ZoneConf":
        """Build from a config block, accepting camelCase or snake_case keys."""
        values: dict[str, Any] = {}
        for key, value in data.items():
            name = ZONE_CONF_KEYS.get(key, key)
            if name not in ZONE_CONF_KEYS.values():
                raise ValueError(f"Unknown zone setting: {key}")
            values[name] = value

        return cls(
            src_up_hosts=_as_list(values.get("src_up_hosts")),
            cdn_up_hosts=_as_list(values.get("cdn_up_hosts")),
            rs_host=str(values.get("rs_host") or ""),
            rsf_host=str(values.get("rsf_host") or ""),
            api_host=str(values.get("api_host") or ""),
            io_vip_host=str(values.get("io_vip_host") or ""),
        )


@dataclass
class Settings:
    KODO_ACCESS_KEY: str | None = None
    KODO_SECRET_KEY: str | None = None
    KODO_BUCKET: str | None = None
    KODO_DOMAIN: str = ""
    KODO_USE_HTTPS: bool = False
    KODO_USE_CDN: bool = False
    KODO_SRC_UP_HOSTS: list[str] = field(default_factory=list)
    KODO_CDN_UP_HOSTS: list[str] = field(default_factory=list)
    KODO_RS_HOST: str = ""
    KODO_RSF_HOST: str = ""
    KODO_API_HOST: str = ""
    KODO_IO_VIP_HOST: str = ""

    def zone_conf(self) -> ZoneConf | None:
        """Return the zone override, or None when no zone host is configured."""
        zone = ZoneConf(
            src_up_hosts=list(self.KODO_SRC_UP_HOSTS),
            cdn_up_hosts=list(self.KODO_CDN_UP_HOSTS),
            rs_host=self.KODO_RS_HOST,
            rsf_host=self.KODO_RSF_HOST,
            api_host=self.KODO_API_HOST,
            io_vip_host=self.KODO_IO_VIP_HOST,
        )
        if zone == ZoneConf():
            return None
        return zone

    @classmethod
    def from_environment(cls) -> "Settings":
        _load_env_file()
        return cls(
            KODO_ACCESS_KEY=os.environ.get("KODO_ACCESS_KEY"),
            KODO_SECRET_KEY=os.environ.get("KODO_SECRET_KEY"),
            KODO_BUCKET=os.environ.get("KODO_BUCKET"),
            KODO_DOMAIN=os.environ.get("KODO_DOMAIN", cls.KODO_DOMAIN),
            KODO_USE_HTTPS=_as_bool(
                os.environ.get("KODO_USE_HTTPS"), cls.KODO_USE_HTTPS
            ),
            KODO_USE_CDN=_as_bool(os.environ.get("KODO_USE_CDN"), cls.KODO_USE_CDN),
            KODO_SRC_UP_HOSTS=_as_list(os.environ.get("KODO_SRC_UP_HOSTS")),
            KODO_CDN_UP_HOSTS=_as_list(os.environ.get("KODO_CDN_UP_HOSTS")),
            KODO_RS_HOST=os.environ.get("KODO_RS_HOST", cls.KODO_RS_HOST),
            KODO_RSF_HOST=os.environ.get("KODO_RSF_HOST", cls.KODO_RSF_HOST),
            KODO_API_HOST=os.environ.get("KODO_API_HOST", cls.KODO_API_HOST),
            KODO_IO_VIP_HOST=os.environ.get("KODO_IO_VIP_HOST", cls.KODO_IO_VIP_HOST),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_environment()
