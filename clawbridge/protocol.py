"""Wire formats spoken by OpenClaw-style gateways.

Two mutually exclusive variants are supported, one per BridgeClient:

- ``KeyedProtocol``: request/response frames correlated by ``id``, with a
  ``connect`` handshake before ordinary traffic.
- ``SingleSlotProtocol``: unkeyed ``message``/``response`` frames where only
  one request is ever in flight.

Inbound frames are decoded into a plain dict first and normalized into an
``InboundFrame`` by explicit field lookups, so loosely typed gateway payloads
never leak past this module.
"""

from __future__ import annotations

import itertools
import json
import platform
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from .errors import MalformedInboundMessage

PROTOCOL_VERSION = 3

# Payload fields that may carry the reply text, in lookup order.
TEXT_FIELDS = ("text", "content", "message")


@dataclass
class Response:
    """A reply to one ``send_message`` call."""

    text: str
    pages: list[str]
    message_id: Optional[str] = None


@dataclass
class ClientIdentity:
    """How this client describes itself in the connect handshake."""

    client_id: str = "clawbridge"
    version: str = "0.1.0"
    platform: str = field(default_factory=lambda: platform.system().lower() or "unknown")
    mode: str = "node"
    role: str = "node"
    scopes: list[str] = field(default_factory=lambda: ["node.read", "node.write"])
    caps: list[str] = field(default_factory=list)
    locale: str = "en-US"
    auth: dict[str, Any] = field(default_factory=dict)  # Opaque, passed through as-is

    @property
    def user_agent(self) -> str:
        return f"{self.client_id}/{self.version}"


class FrameKind:
    RESULT = "result"
    FAILURE = "failure"
    EVENT = "event"
    UNKNOWN = "unknown"


@dataclass
class InboundFrame:
    """Normalized view of one inbound gateway frame."""

    kind: str
    frame_type: str = ""
    ok: bool = False
    request_id: Optional[str] = None
    response: Optional[Response] = None
    error: str = ""
    event: str = ""
    payload: dict[str, Any] = field(default_factory=dict)


def _first_non_empty_str(payload: dict[str, Any], keys: tuple[str, ...]) -> str:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _extract_error_message(raw: Any) -> str:
    if isinstance(raw, dict):
        error = raw.get("error")
        if isinstance(error, dict):
            message = str(error.get("message") or "").strip()
            if message:
                return message
        elif isinstance(error, str) and error.strip():
            return error.strip()
        text = str(raw.get("message") or "").strip()
        if text:
            return text
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return "Unknown error"


def build_response(payload: Any, message_id: Optional[str] = None) -> Optional[Response]:
    """Normalize a success payload into a Response.

    Returns None when the payload carries neither text nor pages.
    """
    if isinstance(payload, str):
        payload = {"text": payload}
    if not isinstance(payload, dict):
        return None

    text = _first_non_empty_str(payload, TEXT_FIELDS)
    raw_pages = payload.get("pages")
    pages = [p for p in raw_pages if isinstance(p, str)] if isinstance(raw_pages, list) else []

    if not pages and text:
        pages = [text]
    elif pages and not text:
        text = "\n".join(pages)
    if not pages:
        return None

    if message_id is None:
        raw_id = payload.get("messageId")
        message_id = raw_id if isinstance(raw_id, str) and raw_id else None
    return Response(text=text, pages=pages, message_id=message_id)


def decode_json(raw: Any) -> dict[str, Any]:
    """Decode one raw transport message into a dict."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedInboundMessage(f"Frame is not UTF-8: {e}") from e
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedInboundMessage(f"Invalid JSON received: {e}") from e
    if not isinstance(data, dict):
        raise MalformedInboundMessage(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _decode_event(data: dict[str, Any]) -> InboundFrame:
    payload = data.get("payload")
    return InboundFrame(
        kind=FrameKind.EVENT,
        frame_type="event",
        event=str(data.get("event") or data.get("name") or ""),
        payload=payload if isinstance(payload, dict) else {},
    )


class GatewayProtocol:
    """Strategy interface for one wire format."""

    name = ""
    keyed = False

    def build_handshake(self, identity: ClientIdentity) -> Optional[dict[str, Any]]:
        """Return the connect request, or None if this variant has no handshake."""
        return None

    def new_request_id(self) -> Optional[str]:
        return None

    def build_request(self, request_id: Optional[str], text: str) -> dict[str, Any]:
        raise NotImplementedError

    def decode(self, raw: Any) -> InboundFrame:
        raise NotImplementedError


class KeyedProtocol(GatewayProtocol):
    """Variant A: ``req``/``res``/``event`` frames correlated by id."""

    name = "keyed"
    keyed = True

    def __init__(
        self,
        channel: str = "clawbridge",
        account_id: str = "default",
        id_start: Optional[int] = None,
    ):
        self.channel = channel
        self.account_id = account_id
        # Seeded from wall-clock millis so ids stay unique across restarts
        start = id_start if id_start is not None else int(time.time() * 1000)
        self._message_ids = itertools.count(start)
        self._connect_ids = itertools.count(start)

    def build_handshake(self, identity: ClientIdentity) -> dict[str, Any]:
        return {
            "type": "req",
            "id": f"connect-{next(self._connect_ids)}",
            "method": "connect",
            "params": {
                "minProtocol": PROTOCOL_VERSION,
                "maxProtocol": PROTOCOL_VERSION,
                "client": {
                    "id": identity.client_id,
                    "version": identity.version,
                    "platform": identity.platform,
                    "mode": identity.mode,
                },
                "role": identity.role,
                "scopes": list(identity.scopes),
                "caps": list(identity.caps),
                "commands": [],
                "permissions": {},
                "auth": dict(identity.auth),
                "locale": identity.locale,
                "userAgent": identity.user_agent,
            },
        }

    def new_request_id(self) -> str:
        return f"msg-{next(self._message_ids)}"

    def build_request(self, request_id: Optional[str], text: str) -> dict[str, Any]:
        return {
            "type": "req",
            "id": request_id,
            "method": "send",
            "params": {
                "channel": self.channel,
                "accountId": self.account_id,
                "text": text,
            },
        }

    def decode(self, raw: Any) -> InboundFrame:
        data = decode_json(raw)
        msg_type = str(data.get("type") or "")
        raw_id = data.get("id")
        request_id = str(raw_id) if raw_id not in (None, "") else None

        if msg_type == "res":
            payload = data.get("payload")
            payload_dict = payload if isinstance(payload, dict) else {}
            if data.get("ok") is True:
                response = build_response(payload)
                if response is None:
                    return InboundFrame(
                        kind=FrameKind.FAILURE,
                        frame_type=msg_type,
                        ok=True,
                        request_id=request_id,
                        error="Response carried no text",
                        payload=payload_dict,
                    )
                return InboundFrame(
                    kind=FrameKind.RESULT,
                    frame_type=msg_type,
                    ok=True,
                    request_id=request_id,
                    response=response,
                    payload=payload_dict,
                )
            return InboundFrame(
                kind=FrameKind.FAILURE,
                frame_type=msg_type,
                request_id=request_id,
                error=_extract_error_message(data),
                payload=payload_dict,
            )

        if msg_type == "event":
            return _decode_event(data)

        return InboundFrame(kind=FrameKind.UNKNOWN, frame_type=msg_type, request_id=request_id)


class SingleSlotProtocol(GatewayProtocol):
    """Variant B: one unkeyed request in flight at a time."""

    name = "single"
    keyed = False

    def build_request(self, request_id: Optional[str], text: str) -> dict[str, Any]:
        return {"type": "message", "text": text}

    def decode(self, raw: Any) -> InboundFrame:
        data = decode_json(raw)
        msg_type = str(data.get("type") or "")
        raw_id = data.get("messageId")
        message_id = raw_id if isinstance(raw_id, str) and raw_id else None

        if msg_type == "response":
            response = build_response(data, message_id=message_id)
            if response is None:
                return InboundFrame(
                    kind=FrameKind.FAILURE,
                    frame_type=msg_type,
                    error="Response carried no text",
                )
            return InboundFrame(kind=FrameKind.RESULT, frame_type=msg_type, ok=True, response=response)

        if msg_type == "error":
            return InboundFrame(
                kind=FrameKind.FAILURE,
                frame_type=msg_type,
                error=_extract_error_message(data),
            )

        if msg_type == "event":
            return _decode_event(data)

        return InboundFrame(kind=FrameKind.UNKNOWN, frame_type=msg_type)


def get_protocol(name: str, **kwargs: Any) -> GatewayProtocol:
    """Build a protocol strategy by name (``keyed`` or ``single``)."""
    if name == KeyedProtocol.name:
        return KeyedProtocol(**kwargs)
    if name == SingleSlotProtocol.name:
        return SingleSlotProtocol()
    raise ValueError(f"Unknown protocol variant: {name!r} (expected 'keyed' or 'single')")
