from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import redis
import requests
import yaml

from image_server.cache_store import CacheStore


log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/params.yaml"

# Arc query: select image refs + crop-sets of the item (or image) with the given id.
METADATA_QUERY_TEMPLATE = (
    "jp/[NAMESPACE]?&q={%22select%22:{%22VirtualImageParams%22:{%22*%22:1},"
    "%22ImageAssetRefs%22:{%22Height%22:1,%22Width%22:1,%22URI%22:1},"
    "%22ImagesWithCaptions%22:{%22Image%22:{%22VirtualImageParams%22:{%22*%22:1},"
    "%22ImageAssetRefs%22:{%22Height%22:1,%22Width%22:1,%22URI%22:1}}},"
    "%22VirtualImageParams%22:{%22*%22:1},%22Images%22:{%22VirtualImageParams%22:{%22*%22:1},"
    "%22ImageAssetRefs%22:{%22Height%22:1,%22Width%22:1,%22URI%22:1}}},"
    "%22vars%22:{},%22where%22:{%22byId%22:[%22[KEYID]%22]},%22start%22:0,%22rows%22:1,"
    "%22omitNumFound%22:true,%22debug%22:{}}&stage=authoring&filterSchedules=true&dateFormat=UTC"
)

VARIANT_DIMENSIONS = ("resize", "crop")

# env var -> (section, key)
_ENV_OVERRIDES = {
    "REMOTE_IMG_URL": ("origin", "base_url"),
    "IMG_PATH": ("mirror", "dir"),
    "DEFAULT_IMG": ("mirror", "placeholder"),
    "IMG_ID_URL": ("metadata", "base_url"),
    "REDIS_PORT_6379_TCP_ADDR": ("redis", "host"),
    "REDIS_HOST": ("redis", "host"),
    "REDIS_PORT": ("redis", "port"),
    "VARIANT_DIMENSIONS": ("variants", "dimensions"),
}

_REQUIRED = {
    ("origin", "base_url"): "REMOTE_IMG_URL should point to the remote base url to pass the requested paths onto",
    ("mirror", "dir"): "IMG_PATH should point to the folder where local images will be stored",
    ("mirror", "placeholder"): "DEFAULT_IMG should be the path to the default image relative to IMG_PATH",
    ("metadata", "base_url"): "IMG_ID_URL should be the image data object server url with a slash on the end",
}


@dataclass
class ServiceConfig:
    """Settings for one server process (read once at startup)."""

    remote_base_url: str
    mirror_dir: Path
    placeholder_path: str
    metadata_base_url: str
    metadata_query_template: str = METADATA_QUERY_TEMPLATE
    origin_quality_suffix: str = "?q=.9"
    http_timeout_s: float = 10.0
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_timeout_s: float = 1.0
    key_prefix: str = "imageServer_"
    fetch_lock_ttl_s: int = 5
    result_ttl_s: int = 300
    metadata_ttl_s: int = 3600
    variant_dimensions: str = "resize"
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self.mirror_dir = Path(self.mirror_dir)
        if self.variant_dimensions not in VARIANT_DIMENSIONS:
            raise ValueError(
                f"variants.dimensions must be one of {VARIANT_DIMENSIONS}, got {self.variant_dimensions!r}"
            )

    @property
    def metadata_query(self) -> str:
        return self.metadata_base_url + self.metadata_query_template


def _read_yaml(path: str) -> Dict[str, Any]:
    if not Path(path).exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> ServiceConfig:
    """
    Build the ServiceConfig from a YAML file plus environment overrides.

    Precedence: environment > YAML > built-in defaults. The YAML path comes
    from `path`, else env IMAGE_SERVER_CONFIG, else config/params.yaml (a
    missing file is not an error).

    Raises:
        ValueError: if a required setting is missing or invalid.
    """
    env = os.environ if env is None else env
    P = _read_yaml(path or env.get("IMAGE_SERVER_CONFIG") or DEFAULT_CONFIG_PATH)

    for var, (section, key) in _ENV_OVERRIDES.items():
        val = env.get(var)
        if val:
            P.setdefault(section, {})[key] = val

    for (section, key), hint in _REQUIRED.items():
        if not str(P.get(section, {}).get(key) or "").strip():
            raise ValueError(f"Missing setting {section}.{key}: {hint}")

    origin = P.get("origin", {})
    mirror = P.get("mirror", {})
    meta = P.get("metadata", {})
    rds = P.get("redis", {})
    ttl = P.get("ttl", {})
    srv = P.get("server", {})

    return ServiceConfig(
        remote_base_url=str(origin["base_url"]),
        mirror_dir=Path(mirror["dir"]),
        placeholder_path=str(mirror["placeholder"]),
        metadata_base_url=str(meta["base_url"]),
        metadata_query_template=str(meta.get("query_template", METADATA_QUERY_TEMPLATE)),
        origin_quality_suffix=str(origin.get("quality_suffix", "?q=.9")),
        http_timeout_s=float(origin.get("timeout_s", 10.0)),
        redis_host=str(rds.get("host", "localhost")),
        redis_port=int(rds.get("port", 6379)),
        redis_db=int(rds.get("db", 0)),
        redis_timeout_s=float(rds.get("timeout_s", 1.0)),
        key_prefix=str(rds.get("key_prefix", "imageServer_")),
        fetch_lock_ttl_s=int(ttl.get("fetch_lock_s", 5)),
        result_ttl_s=int(ttl.get("result_s", 300)),
        metadata_ttl_s=int(ttl.get("metadata_s", 3600)),
        variant_dimensions=str(P.get("variants", {}).get("dimensions", "resize")).lower(),
        host=str(srv.get("host", "0.0.0.0")),
        port=int(srv.get("port", 8080)),
        log_level=str(P.get("logging", {}).get("level", "INFO")),
    )


@dataclass
class ServiceContext:
    """
    Shared process-wide collaborators, constructed once and handed to every
    component: settings, the cache store and the outbound HTTP session.
    """
    config: ServiceConfig
    store: CacheStore
    session: requests.Session = field(default_factory=requests.Session)

    @classmethod
    def from_config(cls, config: ServiceConfig, client: Optional[redis.Redis] = None) -> "ServiceContext":
        if client is None:
            client = redis.Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                socket_timeout=config.redis_timeout_s,
                socket_connect_timeout=config.redis_timeout_s,
            )
        store = CacheStore(
            client,
            prefix=config.key_prefix,
            lock_ttl_s=config.fetch_lock_ttl_s,
            result_ttl_s=config.result_ttl_s,
            metadata_ttl_s=config.metadata_ttl_s,
        )
        log.info(
            "Service context ready",
            extra={"extra": {"redis": f"{config.redis_host}:{config.redis_port}", "mirror_dir": str(config.mirror_dir)}},
        )
        return cls(config=config, store=store)
