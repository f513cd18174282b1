from __future__ import annotations

from typing import Sequence

from anchorstore.backends.base import WriteReceipt
from anchorstore.errors import NotFound
from anchorstore.tagger import Tag


class OnLedgerBackend:
    """Last-resort policy: keep the document with the caller and record no locator.

    Only present in a resolver chain when configuration enables it.
    """

    name = "none"
    scheme = ""
    permanent = False

    def write(self, data: bytes, tags: Sequence[Tag]) -> WriteReceipt:
        return WriteReceipt(backend=self.name, id="", locator="")

    def read(self, content_id: str) -> bytes:
        raise NotFound(self.name, "no_offchain_copy", {"id": content_id})
