"""
MQTT Topic Schema for the CloudPlugs client.

Plug-scoped topics live under <plug_id>/, where plug_id is an explicit
target plug or the client's own identity.
Data: <plug>/data/<channel>.
Properties: <plug>/prop/get, <plug>/prop/set, replies on <plug>/prop/reply.
Enrollment (no plug identity yet, scoped by hardware id):
enroll/<hwid>/thing, enroll/<hwid>/ctrl, replies on enroll/<hwid>/reply.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from cloudplugs_mqtt.errors import ValidationError

_RESERVED = ("/", "+", "#", "\x00")


class TopicSchemaError(ValidationError):
    """Raised when an invalid identifier or channel is used to construct topics."""


def validate_identity(value: str, what: str = "identity") -> str:
    """Plug ids, hardware ids and property keys: one non-empty topic level."""
    if not isinstance(value, str) or not value:
        raise TopicSchemaError(f"{what} must be a non-empty string")
    for ch in _RESERVED:
        if ch in value:
            raise TopicSchemaError(f"{what} {value!r} contains reserved character {ch!r}")
    return value


def validate_channel(channel: str, *, wildcards: bool = False) -> str:
    """
    A channel may span several levels ("a/b/c").
    Wildcards are only accepted for subscriptions: '+' as a whole level,
    '#' as the whole last level.
    """
    if not isinstance(channel, str) or not channel:
        raise TopicSchemaError("channel must be a non-empty string")
    if "\x00" in channel:
        raise TopicSchemaError("channel must not contain NUL")
    levels = channel.split("/")
    for i, level in enumerate(levels):
        if not level:
            raise TopicSchemaError(f"channel {channel!r} has an empty level")
        if "+" in level or "#" in level:
            if not wildcards:
                raise TopicSchemaError(f"wildcards not allowed here: {channel!r}")
            if level == "+":
                continue
            if level == "#" and i == len(levels) - 1:
                continue
            raise TopicSchemaError(f"misplaced wildcard in {channel!r}")
    return channel


@dataclass(frozen=True, slots=True)
class TopicSchema:
    """
    Topic builder for one client.
    plug_id is the client's own identity; None until the device is enrolled.
    """

    plug_id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.plug_id is not None:
            validate_identity(self.plug_id, "plug_id")

    def scope(self, plug_id: Optional[str] = None) -> str:
        """The plug a topic is scoped to: the explicit target, else our own."""
        if plug_id is not None:
            return validate_identity(plug_id, "plug_id")
        if self.plug_id is None:
            raise TopicSchemaError("no plug_id configured and no target plug given")
        return self.plug_id

    # -------------------------
    # Data
    # -------------------------
    def data(self, channel: str, plug_id: Optional[str] = None) -> str:
        validate_channel(channel)
        return f"{self.scope(plug_id)}/data/{channel}"

    def subscription(
        self, channel: str, *, prefix: bool = True, plug_id: Optional[str] = None
    ) -> str:
        """Prefixed: <plug>/data/<channel>. Unprefixed: the channel verbatim."""
        validate_channel(channel, wildcards=True)
        if not prefix:
            if plug_id is not None:
                raise TopicSchemaError("a target plug_id requires prefix=True")
            return channel
        return f"{self.scope(plug_id)}/data/{channel}"

    # -------------------------
    # Properties
    # -------------------------
    def property_get(self, plug_id: Optional[str] = None) -> str:
        return f"{self.scope(plug_id)}/prop/get"

    def property_set(self, plug_id: Optional[str] = None) -> str:
        return f"{self.scope(plug_id)}/prop/set"

    def property_reply(self, plug_id: Optional[str] = None) -> str:
        return f"{self.scope(plug_id)}/prop/reply"

    # -------------------------
    # Enrollment
    # -------------------------
    @staticmethod
    def enroll(hwid: str) -> str:
        return f"enroll/{validate_identity(hwid, 'hwid')}/thing"

    @staticmethod
    def enroll_ctrl(hwid: str) -> str:
        return f"enroll/{validate_identity(hwid, 'hwid')}/ctrl"

    @staticmethod
    def enroll_reply(hwid: str) -> str:
        return f"enroll/{validate_identity(hwid, 'hwid')}/reply"
