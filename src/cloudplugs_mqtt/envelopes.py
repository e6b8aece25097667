"""
Payload envelopes for the CloudPlugs MQTT contract.

Pure builders for outbound JSON payloads and parsers for correlated replies.
Requests carry "id" (correlation key); replies echo it. Enrollment requests
also carry a random "nonce" which the platform may echo.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from cloudplugs_mqtt.errors import AuthError, PlatformError, ProtocolError

logger = logging.getLogger(__name__)

_AUTH_CODES = (401, 403)


@dataclass(frozen=True, slots=True)
class DataEnvelope:
    """A published data record. ttl is seconds; None leaves it to the platform."""

    data: Any
    ttl: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"data": self.data}
        if self.ttl is not None:
            out["ttl"] = self.ttl
        if self.ttl is not None and isinstance(self.data, dict) and "expire_at" in self.data:
            # the platform ignores ttl when expire_at is present; sent as given
            logger.debug("Data carries expire_at; ttl=%s will be ignored by the platform", self.ttl)
        return out

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def to_bytes(self) -> bytes:
        return self.to_json().encode("utf-8")


@dataclass(frozen=True, slots=True)
class PropertyGetRequest:
    id: str
    key: str

    def to_bytes(self) -> bytes:
        return json.dumps({"id": self.id, "key": self.key}).encode("utf-8")


@dataclass(frozen=True, slots=True)
class PropertySetRequest:
    id: str
    key: str
    value: Any

    def to_bytes(self) -> bytes:
        return json.dumps({"id": self.id, "key": self.key, "value": self.value}).encode("utf-8")


@dataclass(frozen=True, slots=True)
class EnrollRequest:
    hwid: str
    nonce: str
    model_id: str
    password: str
    ctrl_hwid: Optional[str] = None

    def to_bytes(self) -> bytes:
        payload: dict[str, Any] = {
            "id": self.hwid,
            "nonce": self.nonce,
            "hwid": self.hwid,
            "model": self.model_id,
            "pass": self.password,
        }
        if self.ctrl_hwid is not None:
            payload["ctrl"] = self.ctrl_hwid
        return json.dumps(payload).encode("utf-8")


@dataclass(frozen=True, slots=True)
class EnrollResult:
    plug_id: str
    auth: str
    raw: dict[str, Any] = field(default_factory=dict, compare=False)


@dataclass(frozen=True, slots=True)
class Reply:
    """A decoded reply: correlation id, optional nonce and the whole body."""

    id: str
    nonce: Optional[str]
    body: dict[str, Any]

    @classmethod
    def parse(cls, payload: bytes) -> Optional["Reply"]:
        """
        Decode a reply candidate. Returns None when the payload is not a JSON
        object with a string "id", i.e. it cannot be correlated at all.
        """
        try:
            body = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, ValueError):
            return None
        if not isinstance(body, dict):
            return None
        cid = body.get("id")
        if not isinstance(cid, str) or not cid:
            return None
        nonce = body.get("nonce")
        return cls(id=cid, nonce=nonce if isinstance(nonce, str) else None, body=body)

    def raise_for_error(self) -> None:
        """Raise AuthError/PlatformError if the platform answered with an error."""
        err = self.body.get("error")
        if err is None:
            return
        code = self.body.get("code")
        if not isinstance(code, int) or isinstance(code, bool):
            code = None
        message = str(err) or "request failed"
        if code in _AUTH_CODES:
            raise AuthError(message)
        raise PlatformError(message, code)


def property_value(reply: Reply) -> Any:
    reply.raise_for_error()
    if "value" not in reply.body:
        raise ProtocolError(f"property reply {reply.id} has no 'value'")
    return reply.body["value"]


def property_set_ack(reply: Reply) -> None:
    reply.raise_for_error()


def enroll_result(reply: Reply) -> EnrollResult:
    reply.raise_for_error()
    plug_id = reply.body.get("plugid")
    auth = reply.body.get("auth")
    if not isinstance(plug_id, str) or not plug_id:
        raise ProtocolError(f"enroll reply for {reply.id} has no 'plugid'")
    if not isinstance(auth, str) or not auth:
        raise ProtocolError(f"enroll reply for {reply.id} has no 'auth'")
    return EnrollResult(plug_id=plug_id, auth=auth, raw=reply.body)
