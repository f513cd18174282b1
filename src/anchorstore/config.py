from __future__ import annotations

"""Runtime configuration.

Precedence (lowest to highest):
  1) StoreConfig defaults
  2) YAML file at ANCHORSTORE_CONFIG (or the explicit `path` argument)
  3) ANCHORSTORE_<KEY> environment variables (lists are comma-separated)

Values are validated once here; invalid input raises ConfigError instead of
silently falling back, because a wrong backend order or timeout changes what
gets written where.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from anchorstore.backends.arweave import ArweaveBackend
from anchorstore.backends.base import StorageBackend
from anchorstore.backends.ipfs import IpfsBackend
from anchorstore.backends.on_ledger import OnLedgerBackend
from anchorstore.errors import ConfigError
from anchorstore.retriever import HttpGateway
from anchorstore.tagger import DEFAULT_APP_NAME, DEFAULT_PROTOCOL
from anchorstore.uri import UriType

Json = Dict[str, Any]

ENV_PREFIX = "ANCHORSTORE_"
KNOWN_BACKENDS = ("arweave", "ipfs", "none")

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off", ""}


@dataclass(frozen=True)
class StoreConfig:
    chain_id: int = 1
    registry: str = ""
    app_name: str = DEFAULT_APP_NAME
    protocol: str = DEFAULT_PROTOCOL

    backends: Tuple[str, ...] = ("arweave", "ipfs")
    on_ledger_fallback: bool = False

    arweave_upload_url: str = "https://upload.ardrive.io"
    arweave_gateways: Tuple[str, ...] = ("https://arweave.net", "https://ar-io.net", "https://g8way.io")
    arweave_graphql_url: str = "https://arweave.net/graphql"
    ipfs_api_url: str = "http://127.0.0.1:5001"
    ipfs_gateways: Tuple[str, ...] = ("https://ipfs.io",)

    write_timeout_s: float = 30.0
    read_timeout_s: float = 10.0
    max_attempts: int = 3
    backoff_base_ms: int = 250
    backoff_cap_ms: int = 4000
    clearance_ttl_s: float = 300.0
    confirmations: int = 1

    uploader_privkey: str = ""
    ledger_url: str = ""
    max_document_bytes: int = 0

    def backend_order(self) -> List[str]:
        order = list(self.backends)
        if self.on_ledger_fallback and "none" not in order:
            order.append("none")
        return order

    def redacted(self) -> Json:
        out: Json = {}
        for f in fields(self):
            v = getattr(self, f.name)
            out[f.name] = list(v) if isinstance(v, tuple) else v
        if out.get("uploader_privkey"):
            out["uploader_privkey"] = "***"
        return out


_FIELD_TYPES: Dict[str, str] = {
    "chain_id": "int",
    "registry": "str",
    "app_name": "str",
    "protocol": "str",
    "backends": "list",
    "on_ledger_fallback": "bool",
    "arweave_upload_url": "str",
    "arweave_gateways": "list",
    "arweave_graphql_url": "str",
    "ipfs_api_url": "str",
    "ipfs_gateways": "list",
    "write_timeout_s": "float",
    "read_timeout_s": "float",
    "max_attempts": "int",
    "backoff_base_ms": "int",
    "backoff_cap_ms": "int",
    "clearance_ttl_s": "float",
    "confirmations": "int",
    "uploader_privkey": "str",
    "ledger_url": "str",
    "max_document_bytes": "int",
}


def _coerce(key: str, value: Any) -> Any:
    kind = _FIELD_TYPES[key]
    try:
        if kind == "int":
            if isinstance(value, bool):
                raise ValueError("bool is not an int")
            return int(str(value).strip())
        if kind == "float":
            if isinstance(value, bool):
                raise ValueError("bool is not a float")
            return float(str(value).strip())
        if kind == "bool":
            if isinstance(value, bool):
                return value
            s = str(value).strip().lower()
            if s in _TRUE:
                return True
            if s in _FALSE:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if kind == "list":
            if value is None:
                return ()
            items = value.split(",") if isinstance(value, str) else list(value)
            return tuple(s for s in (str(x).strip() for x in items) if s)
        return "" if value is None else str(value).strip()
    except (TypeError, ValueError) as e:
        raise ConfigError("invalid_config", f"bad_value:{key}", {"key": key, "value": str(value)[:200], "error": str(e)}) from e


def _read_yaml(path: Path) -> Json:
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError("invalid_config", "config_unreadable", {"path": str(path), "error": str(e)}) from e
    try:
        obj = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigError("invalid_config", "config_not_yaml", {"path": str(path), "error": str(e)[:300]}) from e
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ConfigError("invalid_config", "config_not_mapping", {"path": str(path)})
    unknown = sorted(str(k) for k in obj if k not in _FIELD_TYPES)
    if unknown:
        raise ConfigError("invalid_config", "unknown_keys", {"path": str(path), "keys": unknown})
    return dict(obj)


def _validate(cfg: StoreConfig) -> StoreConfig:
    def bad(key: str, why: str) -> ConfigError:
        return ConfigError("invalid_config", why, {"key": key, "value": str(getattr(cfg, key))[:200]})

    if cfg.chain_id <= 0:
        raise bad("chain_id", "chain_id_must_be_positive")
    for name in cfg.backends:
        if name not in KNOWN_BACKENDS:
            raise bad("backends", f"unknown_backend:{name}")
    if len(set(cfg.backends)) != len(cfg.backends):
        raise bad("backends", "duplicate_backend")
    if not cfg.backend_order():
        raise bad("backends", "no_backends")
    if "arweave" in cfg.backends and not cfg.arweave_upload_url:
        raise bad("arweave_upload_url", "arweave_upload_url_required")
    if "ipfs" in cfg.backends and not cfg.ipfs_api_url:
        raise bad("ipfs_api_url", "ipfs_api_url_required")
    for key in ("write_timeout_s", "read_timeout_s", "clearance_ttl_s"):
        if not getattr(cfg, key) > 0:
            raise bad(key, "must_be_positive")
    for key in ("max_attempts", "confirmations"):
        if getattr(cfg, key) < 1:
            raise bad(key, "must_be_at_least_1")
    for key in ("backoff_base_ms", "backoff_cap_ms", "max_document_bytes"):
        if getattr(cfg, key) < 0:
            raise bad(key, "must_not_be_negative")
    return cfg


def load_config(path: Optional[str] = None, *, environ: Optional[Mapping[str, str]] = None) -> StoreConfig:
    env = os.environ if environ is None else environ
    values: Json = {}

    path_s = path or (env.get(f"{ENV_PREFIX}CONFIG") or "").strip()
    if path_s:
        p = Path(path_s).expanduser()
        if not p.is_file():
            raise ConfigError("invalid_config", "config_not_found", {"path": str(p)})
        values.update(_read_yaml(p))

    for key in _FIELD_TYPES:
        raw = env.get(f"{ENV_PREFIX}{key.upper()}")
        if raw is not None:
            values[key] = raw

    coerced = {k: _coerce(k, v) for k, v in values.items()}
    return _validate(StoreConfig(**coerced))


# ----------------------------
# Builders
# ----------------------------


def build_backends(cfg: StoreConfig) -> List[StorageBackend]:
    out: List[StorageBackend] = []
    for name in cfg.backend_order():
        if name == "arweave":
            out.append(
                ArweaveBackend(
                    upload_url=cfg.arweave_upload_url,
                    gateway_url=cfg.arweave_gateways[0] if cfg.arweave_gateways else "",
                    graphql_url=cfg.arweave_graphql_url,
                    privkey=cfg.uploader_privkey,
                    timeout_s=cfg.write_timeout_s,
                    read_timeout_s=cfg.read_timeout_s,
                    max_bytes=cfg.max_document_bytes,
                )
            )
        elif name == "ipfs":
            out.append(IpfsBackend(api_url=cfg.ipfs_api_url, timeout_s=cfg.write_timeout_s, max_bytes=cfg.max_document_bytes))
        elif name == "none":
            out.append(OnLedgerBackend())
    return out


def build_gateways(cfg: StoreConfig) -> List[HttpGateway]:
    out: List[HttpGateway] = []
    for url in cfg.arweave_gateways:
        out.append(HttpGateway(url, [UriType.ARWEAVE], timeout_s=cfg.read_timeout_s))
    for url in cfg.ipfs_gateways:
        out.append(HttpGateway(url, [UriType.IPFS], timeout_s=cfg.read_timeout_s))
    return out
