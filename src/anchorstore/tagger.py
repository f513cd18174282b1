from __future__ import annotations

"""Deterministic tag derivation for stored documents.

derive_tags() is a pure function of (document, context). The only time value
it uses is context.timestamp, which the caller injects. Tags are written once
with the document and are never mutated afterwards.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

Json = Dict[str, Any]

CONTENT_TYPE_JSON = "application/json"
DEFAULT_APP_NAME = "anchorstore"
DEFAULT_PROTOCOL = "ERC-8004"

DATA_TYPE_REGISTRATION = "Registration"
DATA_TYPE_FEEDBACK = "Feedback"

REQUIRED_TAG_NAMES: Tuple[str, ...] = (
    "Content-Type",
    "App-Name",
    "Protocol",
    "Data-Type",
    "Chain-Id",
    "Timestamp",
    "Has-MCP",
    "Has-A2A",
    "Has-Wallet",
    "Active",
)

MAX_TAG_VALUE_CHARS = 256

# (tag name, document key) pairs copied when present.
_SEARCHABLE_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("Agent-Name", "name"),
    ("Score", "score"),
    ("Tag1", "tag1"),
    ("Tag2", "tag2"),
    ("Capability", "capability"),
    ("Skill", "skill"),
)

_WALLET_KEYS = ("wallet", "agentWallet", "walletAddress")


@dataclass(frozen=True)
class Tag:
    name: str
    value: str

    def to_json(self) -> Json:
        return {"name": self.name, "value": self.value}


@dataclass(frozen=True)
class TagContext:
    chain_id: int
    data_type: str
    timestamp: Union[datetime, str, None]
    app_name: str = DEFAULT_APP_NAME
    protocol: str = DEFAULT_PROTOCOL
    resource_id: Optional[str] = None
    extra: Mapping[str, str] = field(default_factory=dict)


def _iso_utc(ts: Union[datetime, str, None]) -> str:
    if ts is None:
        raise ValueError("timestamp must be injected")
    if isinstance(ts, str):
        s = ts.strip()
        if not s:
            raise ValueError("timestamp must be injected")
        ts = datetime.fromisoformat(s.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.") + f"{ts.microsecond // 1000:03d}Z"


def _flag(v: bool) -> str:
    return "true" if v else "false"


def _scalar(v: Any) -> Optional[str]:
    if v is None or isinstance(v, (dict, list)):
        return None
    if isinstance(v, bool):
        return _flag(v)
    s = str(v).strip()
    if not s:
        return None
    return s[:MAX_TAG_VALUE_CHARS]


def _endpoint_kinds(document: Mapping[str, Any]) -> set:
    kinds = set()
    endpoints = document.get("endpoints")
    if not isinstance(endpoints, list):
        return kinds
    for ep in endpoints:
        if not isinstance(ep, dict):
            continue
        kind = ep.get("type") or ep.get("name")
        if isinstance(kind, str) and kind.strip():
            kinds.add(kind.strip().lower())
    return kinds


def _has_wallet(document: Mapping[str, Any]) -> bool:
    for k in _WALLET_KEYS:
        v = document.get(k)
        if isinstance(v, dict) and v.get("address"):
            return True
        if isinstance(v, str) and v.strip():
            return True
    return False


def derive_tags(document: Mapping[str, Any], context: TagContext) -> Tuple[Tag, ...]:
    if not isinstance(document, Mapping):
        raise TypeError("document must be a JSON object")
    data_type = str(context.data_type or "").strip()
    if not data_type:
        raise ValueError("data_type is required")

    kinds = _endpoint_kinds(document)
    tags: List[Tag] = [
        Tag("Content-Type", CONTENT_TYPE_JSON),
        Tag("App-Name", str(context.app_name)),
        Tag("Protocol", str(context.protocol)),
        Tag("Data-Type", data_type),
        Tag("Chain-Id", str(int(context.chain_id))),
        Tag("Timestamp", _iso_utc(context.timestamp)),
        Tag("Has-MCP", _flag("mcp" in kinds)),
        Tag("Has-A2A", _flag("a2a" in kinds)),
        Tag("Has-Wallet", _flag(_has_wallet(document))),
        Tag("Active", _flag(bool(document.get("active", False)))),
    ]

    resource_id = _scalar(context.resource_id)
    if resource_id is not None:
        tags.append(Tag("Agent-Id", resource_id))

    for tag_name, key in _SEARCHABLE_FIELDS:
        v = _scalar(document.get(key))
        if v is not None:
            tags.append(Tag(tag_name, v))

    reserved = set(REQUIRED_TAG_NAMES)
    for name in sorted(context.extra or {}):
        v = _scalar(context.extra[name])
        if v is None or name in reserved:
            continue
        tags.append(Tag(str(name), v))

    return tuple(tags)


def missing_required_tags(tags: Sequence[Tag]) -> List[str]:
    present = {t.name for t in tags if str(t.value)}
    return [n for n in REQUIRED_TAG_NAMES if n not in present]


def tags_to_json(tags: Sequence[Tag]) -> List[Json]:
    return [t.to_json() for t in tags]


def tags_from_json(raw: Any) -> Tuple[Tag, ...]:
    out: List[Tag] = []
    if not isinstance(raw, list):
        return ()
    for item in raw:
        if isinstance(item, dict) and "name" in item and "value" in item:
            out.append(Tag(str(item["name"]), str(item["value"])))
    return tuple(out)
