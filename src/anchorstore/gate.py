from __future__ import annotations

"""Pre-validation gate.

Runs the ledger simulation for an operation before any storage write and
remembers the latest verdict per operation fingerprint. The resolver only
writes when the clearance it is handed is still the latest successful verdict
for the exact operation being published.
"""

import http.client
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from anchorstore import metrics
from anchorstore.errors import ValidationRejected
from anchorstore.ledger.types import LedgerClient, Operation, operation_fingerprint
from anchorstore.structured_logging import log_event

log = logging.getLogger(__name__)

_MAX_VERDICTS = 4096


@dataclass(frozen=True)
class Clearance:
    fingerprint: str
    op_type: str
    checked_at: float
    expires_at: float


class PreValidationGate:
    def __init__(
        self,
        ledger: LedgerClient,
        *,
        clearance_ttl_s: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.clearance_ttl_s = float(clearance_ttl_s)
        self._clock = clock
        self._lock = threading.Lock()
        # fingerprint -> latest Clearance (None after a rejection)
        self._verdicts: "OrderedDict[str, Optional[Clearance]]" = OrderedDict()

    def _record(self, fingerprint: str, clearance: Optional[Clearance]) -> None:
        with self._lock:
            self._verdicts[fingerprint] = clearance
            self._verdicts.move_to_end(fingerprint)
            while len(self._verdicts) > _MAX_VERDICTS:
                self._verdicts.popitem(last=False)

    def validate(self, op: Operation) -> Clearance:
        """Simulate `op` against current ledger state.

        Returns a Clearance on success; raises ValidationRejected otherwise.
        A simulation that cannot be performed is a rejection too.
        """
        fp = operation_fingerprint(op)
        try:
            verdict = self.ledger.simulate(op)
        except (OSError, http.client.HTTPException) as e:
            self._record(fp, None)
            metrics.inc_counter("gate.unavailable")
            log_event(log, "prevalidation_unavailable", level=logging.WARNING, op_type=op.op_type, error=str(e))
            raise ValidationRejected(
                "simulation_unavailable",
                "ledger_simulation_failed",
                {"op_type": op.op_type, "error": str(e)[:300]},
            ) from e

        if not verdict.ok:
            self._record(fp, None)
            metrics.inc_counter("gate.rejected")
            log_event(log, "prevalidation_rejected", op_type=op.op_type, code=verdict.code, reason=verdict.reason)
            details: Dict[str, Any] = dict(verdict.details or {})
            details.setdefault("op_type", op.op_type)
            raise ValidationRejected(verdict.code, verdict.reason, details)

        now = float(self._clock())
        clearance = Clearance(fingerprint=fp, op_type=op.op_type, checked_at=now, expires_at=now + self.clearance_ttl_s)
        self._record(fp, clearance)
        metrics.inc_counter("gate.cleared")
        log_event(log, "prevalidation_ok", op_type=op.op_type, fingerprint=fp)
        return clearance

    def is_current(self, clearance: Optional[Clearance], op: Operation) -> bool:
        if clearance is None:
            return False
        if clearance.fingerprint != operation_fingerprint(op):
            return False
        if not float(self._clock()) < clearance.expires_at:
            return False
        with self._lock:
            latest = self._verdicts.get(clearance.fingerprint)
        return latest is clearance
