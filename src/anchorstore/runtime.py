from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from anchorstore.backends.base import StorageBackend
from anchorstore.config import StoreConfig, build_backends, build_gateways, load_config
from anchorstore.errors import ConfigError
from anchorstore.gate import PreValidationGate
from anchorstore.ledger.http import HttpLedgerClient
from anchorstore.ledger.types import LedgerClient
from anchorstore.publisher import Publisher
from anchorstore.resolver import PriorityResolver
from anchorstore.retriever import Gateway, MultiGatewayRetriever
from anchorstore.structured_logging import log_event

log = logging.getLogger(__name__)


@dataclass
class Runtime:
    cfg: StoreConfig
    ledger: LedgerClient
    gate: PreValidationGate
    resolver: PriorityResolver
    publisher: Publisher
    retriever: MultiGatewayRetriever


def build_runtime(
    cfg: Optional[StoreConfig] = None,
    *,
    ledger: Optional[LedgerClient] = None,
    backends: Optional[Sequence[StorageBackend]] = None,
    gateways: Optional[Sequence[Gateway]] = None,
    clock: Callable[[], float] = time.time,
    sleep: Callable[[float], None] = time.sleep,
) -> Runtime:
    """Wire the publish/read pipeline from configuration.

    Explicit ledger/backends/gateways override what the config would build
    (tests pass in-memory ones).
    """
    cfg = cfg if cfg is not None else load_config()

    if ledger is None:
        if not cfg.ledger_url:
            raise ConfigError("invalid_config", "ledger_url_required", {"key": "ledger_url"})
        ledger = HttpLedgerClient(cfg.ledger_url, timeout_s=cfg.read_timeout_s)

    gate = PreValidationGate(ledger, clearance_ttl_s=cfg.clearance_ttl_s, clock=clock)
    resolver = PriorityResolver(
        list(backends) if backends is not None else build_backends(cfg),
        gate=gate,
        max_attempts=cfg.max_attempts,
        backoff_base_ms=cfg.backoff_base_ms,
        backoff_cap_ms=cfg.backoff_cap_ms,
        sleep=sleep,
    )
    publisher = Publisher(
        gate=gate,
        resolver=resolver,
        ledger=ledger,
        chain_id=cfg.chain_id,
        app_name=cfg.app_name,
        protocol=cfg.protocol,
        clock=clock,
    )
    retriever = MultiGatewayRetriever(
        list(gateways) if gateways is not None else build_gateways(cfg),
        timeout_s=cfg.read_timeout_s,
        confirmations=cfg.confirmations,
    )

    log_event(
        log,
        "runtime_ready",
        chain_id=cfg.chain_id,
        backends=[b.name for b in resolver.backends],
        gateways=[g.name for g in retriever.gateways],
    )
    return Runtime(cfg=cfg, ledger=ledger, gate=gate, resolver=resolver, publisher=publisher, retriever=retriever)
