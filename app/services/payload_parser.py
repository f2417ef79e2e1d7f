"""Kommo webhook payloads -> canonical inbound events.

Kommo posts the same logical event in several encodings depending on which
integration fired it. Bodies are decoded once (JSON or form-urlencoded, with
bracket keys such as ``message[add][0][entity_id]`` expanded into nested
mappings) and then handed to an ordered list of named strategies; the first
strategy that recognizes the shape wins.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional
from urllib.parse import parse_qsl

IMAGE = "image"
FILE = "file"
PROOF_KINDS = frozenset({IMAGE, FILE})
DEFAULT_ATTACHMENT_NAME = "attachment"

MESSAGE_ADD = "message_add"
SALESBOT = "salesbot"
CHATS_API = "chats_api"
STANDARD = "standard"

MEDIA_KINDS = {
    "picture": IMAGE,
    "image": IMAGE,
    "sticker": IMAGE,
    "video": FILE,
    "file": FILE,
    "voice": FILE,
    "audio": FILE,
}

_BRACKET_PART = re.compile(r"\[([^\]]*)\]")


class PayloadError(ValueError):
    pass


@dataclass(frozen=True)
class Attachment:
    url: str
    kind: Optional[str]
    name: str = DEFAULT_ATTACHMENT_NAME

    @property
    def is_proof_candidate(self) -> bool:
        return bool(self.url) and self.kind in PROOF_KINDS


@dataclass(frozen=True)
class InboundEvent:
    lead_id: Optional[int]
    is_incoming: bool
    attachment: Optional[Attachment] = None
    message_text: Optional[str] = None
    source: str = field(default="", compare=False)

    @property
    def needs_attachment_lookup(self) -> bool:
        """Salesbot triggers carry no message; the attachment lives in the lead's feed."""
        return self.source == SALESBOT


@dataclass(frozen=True)
class ContactHints:
    email: Optional[str] = None
    phone: Optional[str] = None
    name: Optional[str] = None

    @property
    def complete(self) -> bool:
        return bool(self.email and self.phone and self.name)


def _split_key(key: str) -> list[str]:
    head, sep, rest = key.partition("[")
    if not sep or not key.endswith("]"):
        return [key]
    return [head, *_BRACKET_PART.findall(sep + rest)]


def expand_bracket_keys(pairs: Iterable[tuple[Any, Any]]) -> dict:
    """{'a[b][0]': 1} -> {'a': {'b': {'0': 1}}}; plain keys pass through."""
    result: dict = {}
    for key, value in pairs:
        parts = _split_key(str(key))
        node = result
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        last = parts[-1]
        existing = node.get(last)
        if isinstance(existing, dict) and isinstance(value, dict):
            node[last] = {**value, **existing}
        else:
            node[last] = value
    return result


def decode_body(raw_body: bytes, content_type: Optional[str]) -> dict:
    """Decode a webhook body. Raises PayloadError for undecodable JSON."""
    text = raw_body.decode("utf-8", "replace") if raw_body else ""
    if not text.strip():
        return {}

    if content_type and "application/x-www-form-urlencoded" in content_type.lower():
        return expand_bracket_keys(parse_qsl(text, keep_blank_values=True))

    try:
        payload = json.loads(text)
    except ValueError as exc:
        raise PayloadError("Invalid JSON payload") from exc
    if not isinstance(payload, dict):
        raise PayloadError("Invalid payload format")
    return expand_bracket_keys(payload.items())


def _items(container: Any) -> list:
    """Indexed children of a list or of a {'0': ..., '1': ...} mapping, in index order."""
    if isinstance(container, list):
        return container
    if isinstance(container, dict):
        keys = sorted(container, key=lambda k: (0, int(k)) if str(k).isdigit() else (1, str(k)))
        return [container[key] for key in keys]
    return []


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value
    return None


def media_kind(raw_type: Any) -> Optional[str]:
    if not raw_type:
        return None
    raw = str(raw_type).strip().lower()
    return MEDIA_KINDS.get(raw, raw)


def _parse_message_add(payload: dict) -> Optional[InboundEvent]:
    message = _as_dict(payload.get("message"))
    items = [item for item in _items(message.get("add")) if isinstance(item, dict) and "entity_id" in item]
    if not items:
        return None
    item = items[0]
    attachment_field = _as_dict(item.get("attachment"))

    attachment = None
    url = item.get("media") or item.get("file") or attachment_field.get("link")
    if url:
        type_value = attachment_field.get("type") or item.get("message_type")
        attachment = Attachment(
            url=str(url),
            kind=IMAGE if type_value in ("picture", "image") else FILE,
            name=str(item.get("file_name") or attachment_field.get("file_name") or DEFAULT_ATTACHMENT_NAME),
        )

    return InboundEvent(
        lead_id=_to_int(item.get("entity_id")),
        is_incoming=item.get("type") == "incoming",
        attachment=attachment,
        message_text=_text(item.get("text")),
        source=MESSAGE_ADD,
    )


def _parse_salesbot(payload: dict) -> Optional[InboundEvent]:
    lead_id = parse_lead_trigger(payload, actions=("add", "update"))
    if lead_id is None:
        return None
    return InboundEvent(lead_id=lead_id, is_incoming=True, source=SALESBOT)


def _parse_chats_api(payload: dict) -> Optional[InboundEvent]:
    message = _as_dict(payload.get("message"))
    inner = _as_dict(message.get("message"))
    if not inner.get("type"):
        return None

    lead_id = _to_int(_as_dict(message.get("conversation")).get("id")) or _to_int(message.get("talk_id"))
    attachment = None
    if inner.get("media"):
        attachment = Attachment(
            url=str(inner["media"]),
            kind=media_kind(inner.get("type")),
            name=str(inner.get("file_name") or DEFAULT_ATTACHMENT_NAME),
        )

    return InboundEvent(
        lead_id=lead_id,
        is_incoming=bool(_as_dict(message.get("sender")).get("id")),
        attachment=attachment,
        message_text=_text(inner.get("text")),
        source=CHATS_API,
    )


def _parse_standard(payload: dict) -> Optional[InboundEvent]:
    message = payload.get("message") if isinstance(payload.get("message"), dict) else payload
    if "entity_id" not in message:
        return None

    attachment = None
    attachments = [item for item in _items(message.get("attachments")) if isinstance(item, dict)]
    if attachments:
        first = attachments[0]
        url = first.get("link") or first.get("url")
        if url:
            attachment = Attachment(
                url=str(url),
                kind=media_kind(first.get("type")),
                name=str(first.get("file_name") or first.get("name") or DEFAULT_ATTACHMENT_NAME),
            )

    return InboundEvent(
        lead_id=_to_int(message.get("entity_id")),
        is_incoming=message.get("message_type") == "in",
        attachment=attachment,
        message_text=_text(message.get("text")),
        source=STANDARD,
    )


MESSAGE_STRATEGIES: tuple[tuple[str, Callable[[dict], Optional[InboundEvent]]], ...] = (
    (MESSAGE_ADD, _parse_message_add),
    (SALESBOT, _parse_salesbot),
    (CHATS_API, _parse_chats_api),
    (STANDARD, _parse_standard),
)


def parse_message_event(payload: dict) -> Optional[InboundEvent]:
    """Canonical event for a decoded payload, or None when no strategy matches."""
    if not isinstance(payload, dict):
        return None
    for _name, strategy in MESSAGE_STRATEGIES:
        event = strategy(payload)
        if event is not None:
            return event
    return None


def parse_lead_trigger(payload: dict, actions: tuple[str, ...] = ("status", "update", "add")) -> Optional[int]:
    """Lead id from a ``leads[<action>][N][id]`` trigger, trying actions in order."""
    leads = _as_dict(payload.get("leads"))
    for action in actions:
        for item in _items(leads.get(action)):
            lead_id = _to_int(_as_dict(item).get("id"))
            if lead_id is not None:
                return lead_id
    return None


def _walk(node: Any, path: tuple[str, ...] = ()) -> Iterable[tuple[tuple[str, ...], Any]]:
    if isinstance(node, dict):
        for key, value in node.items():
            yield from _walk(value, (*path, str(key)))
    elif isinstance(node, list):
        for index, value in enumerate(node):
            yield from _walk(value, (*path, str(index)))
    else:
        yield path, node


def extract_contact_hints(payload: dict) -> ContactHints:
    email = phone = name = None
    for path, value in _walk(payload):
        if not path or not _text(value):
            continue
        leaf = path[-1].lower()
        if email is None and "email" in leaf:
            email = value.strip()
        elif phone is None and ("phone" in leaf or "telefono" in leaf):
            phone = value.strip()
        elif name is None and leaf == "name":
            name = value.strip()
    return ContactHints(email=email, phone=phone, name=name)
