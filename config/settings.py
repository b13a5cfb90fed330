"""config/settings.py

Sync layer configuration.

Values come from a YAML file (config/sync.yaml by default) and are then
overridden by environment variables, so serverless deployments can run with
env only. The resulting SyncConfig is frozen and validated manually in
__post_init__.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import yaml

DEFAULT_CONFIG_PATH = "config/sync.yaml"

DEFAULT_RPC_URL = "https://rpc-amoy.polygon.technology"
INFURA_URL_TEMPLATE = "https://polygon-amoy.infura.io/v3/{key}"
ALCHEMY_URL_TEMPLATE = "https://polygon-amoy.g.alchemy.com/v2/{key}"

TRACKED_CONTRACTS = ("JobBoard", "JobEscrow", "FreelancerFactory")


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class SyncConfig:
    """
    Settings shared by the router, the cache store and the reconciler.

    rpc_urls is ordered by priority (Infura, Alchemy, public default).
    """
    rpc_urls: Tuple[str, ...] = (DEFAULT_RPC_URL,)
    chain_id: int = 80002

    job_board_address: str = ""
    freelancer_factory_address: str = ""

    # Trigger auth
    cron_secret: str = ""

    # Cache policy
    enable_db_cache: bool = True
    cache_ttl_ms: int = 300_000
    stale_grace_ms: int = 600_000
    db_path: str = "data/sync_cache.duckdb"

    # Router
    rpc_backoff_ms: int = 500
    rpc_timeout_ms: int = 10_000

    # Reconciliation
    start_block: int = 0
    max_log_range: int = 2_000
    lease_ttl_sec: int = 300
    poll_interval_sec: int = 15
    tracked_contracts: Tuple[str, ...] = TRACKED_CONTRACTS

    # Metadata
    metadata_gateway: str = "ipfs.io"
    metadata_timeout_ms: int = 5_000

    def __post_init__(self):
        """Validate constraints manually, the same way for YAML and env values."""
        if not self.rpc_urls:
            raise ConfigError("rpc_urls must contain at least one endpoint")
        for url in self.rpc_urls:
            if not str(url).startswith(("http://", "https://")):
                raise ConfigError(f"rpc url must be http(s), got {url!r}")

        self._validate_range("chain_id", self.chain_id, 1)
        self._validate_range("cache_ttl_ms", self.cache_ttl_ms, 0)
        self._validate_range("stale_grace_ms", self.stale_grace_ms, 0)
        self._validate_range("rpc_backoff_ms", self.rpc_backoff_ms, 0, 60_000)
        self._validate_range("rpc_timeout_ms", self.rpc_timeout_ms, 100, 120_000)
        self._validate_range("start_block", self.start_block, 0)
        self._validate_range("max_log_range", self.max_log_range, 1, 100_000)
        self._validate_range("lease_ttl_sec", self.lease_ttl_sec, 1, 86_400)
        self._validate_range("poll_interval_sec", self.poll_interval_sec, 1, 3_600)
        self._validate_range("metadata_timeout_ms", self.metadata_timeout_ms, 100, 60_000)

        unknown = [c for c in self.tracked_contracts if c not in TRACKED_CONTRACTS]
        if unknown:
            raise ConfigError(f"unknown tracked contracts: {unknown}")

    def _validate_range(self, name: str, value: Any, min_val: float, max_val: Optional[float] = None) -> None:
        try:
            val = float(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{name} must be numeric, got {value!r}")

        if val < min_val:
            raise ConfigError(f"{name} {val} is below minimum {min_val}")
        if max_val is not None and val > max_val:
            raise ConfigError(f"{name} {val} is above maximum {max_val}")

    @property
    def cache_ttl_sec(self) -> float:
        return self.cache_ttl_ms / 1000.0

    @property
    def stale_grace_sec(self) -> float:
        return self.stale_grace_ms / 1000.0

    @property
    def rpc_backoff_sec(self) -> float:
        return self.rpc_backoff_ms / 1000.0

    @property
    def rpc_timeout_sec(self) -> float:
        return self.rpc_timeout_ms / 1000.0

    @property
    def metadata_timeout_sec(self) -> float:
        return self.metadata_timeout_ms / 1000.0

    def to_dict(self) -> Dict[str, Any]:
        """Loggable view; the cron secret is masked."""
        out = {f.name: getattr(self, f.name) for f in fields(self)}
        out["cron_secret"] = "***" if self.cron_secret else ""
        out["rpc_urls"] = [mask_url(u) for u in self.rpc_urls]
        return out


def mask_url(url: str) -> str:
    # API keys sit in the last path segment for Infura/Alchemy
    head, sep, tail = url.rpartition("/")
    if sep and len(tail) > 12 and not head.endswith(":/"):
        return f"{head}/{tail[:4]}***"
    return url


def _parse_bool(value: str) -> bool:
    # ENABLE_DB_CACHE kill switch: anything but literal "false" keeps the cache on
    return str(value).strip().lower() != "false"


def _rpc_urls_from_env(env: Mapping[str, str]) -> Optional[Tuple[str, ...]]:
    explicit = env.get("RPC_URLS")
    if explicit:
        return tuple(u.strip() for u in explicit.split(",") if u.strip())

    urls = []
    if env.get("INFURA_API_KEY"):
        urls.append(INFURA_URL_TEMPLATE.format(key=env["INFURA_API_KEY"]))
    if env.get("ALCHEMY_API_KEY"):
        urls.append(ALCHEMY_URL_TEMPLATE.format(key=env["ALCHEMY_API_KEY"]))
    if env.get("DEFAULT_RPC_URL"):
        urls.append(env["DEFAULT_RPC_URL"])
    elif urls:
        urls.append(DEFAULT_RPC_URL)
    return tuple(urls) if urls else None


_ENV_INT_KEYS = {
    "CACHE_TTL_MS": "cache_ttl_ms",
    "CACHE_STALE_GRACE_MS": "stale_grace_ms",
    "RPC_BACKOFF_MS": "rpc_backoff_ms",
    "RPC_TIMEOUT_MS": "rpc_timeout_ms",
    "SYNC_START_BLOCK": "start_block",
    "MAX_LOG_RANGE": "max_log_range",
    "LEASE_TTL_SEC": "lease_ttl_sec",
    "POLL_INTERVAL_SEC": "poll_interval_sec",
    "METADATA_TIMEOUT_MS": "metadata_timeout_ms",
    "CHAIN_ID": "chain_id",
}

_ENV_STR_KEYS = {
    "CRON_SECRET": "cron_secret",
    "JOB_BOARD_ADDRESS": "job_board_address",
    "FREELANCER_FACTORY_ADDRESS": "freelancer_factory_address",
    "SYNC_DB_PATH": "db_path",
    "IPFS_GATEWAY": "metadata_gateway",
}


def _read_yaml(path: Path) -> Dict[str, Any]:
    raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must be a YAML mapping (dict at top-level)")
    sync = raw.get("sync", raw)
    if not isinstance(sync, dict):
        raise ConfigError("sync must be a mapping")
    return dict(sync)


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> SyncConfig:
    """
    Load SyncConfig from YAML and environment.

    Args:
        path: YAML file; a missing default file is fine, a missing explicit one is not
        env: Environment mapping (defaults to os.environ)

    Returns:
        Validated SyncConfig
    """
    env = os.environ if env is None else env
    values: Dict[str, Any] = {}

    p = Path(path or env.get("SYNC_CONFIG", DEFAULT_CONFIG_PATH))
    if p.exists():
        values.update(_read_yaml(p))
    elif path is not None:
        raise ConfigError(f"Config not found: {p}")

    known = {f.name for f in fields(SyncConfig)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {unknown}")

    for env_key, name in _ENV_STR_KEYS.items():
        if env.get(env_key):
            values[name] = env[env_key]
    for env_key, name in _ENV_INT_KEYS.items():
        if env.get(env_key):
            try:
                values[name] = int(env[env_key])
            except ValueError:
                raise ConfigError(f"{env_key} must be an integer, got {env[env_key]!r}")
    if "ENABLE_DB_CACHE" in env:
        values["enable_db_cache"] = _parse_bool(env["ENABLE_DB_CACHE"])

    urls = _rpc_urls_from_env(env)
    if urls:
        values["rpc_urls"] = urls
    for key in ("rpc_urls", "tracked_contracts"):
        if key in values:
            values[key] = tuple(values[key])

    return SyncConfig(**values)
