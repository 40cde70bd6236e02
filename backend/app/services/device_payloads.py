"""Typed device instructions and their wire encoding.

Commands are built as tagged variants and only turned into the terminal's
line-oriented ``KEY=value`` form at enqueue time, through a PayloadCodec.
The protocol handler that consumes the queue is the only reader of the
encoded string.
"""

from __future__ import annotations

from typing import Literal, Protocol, Union

from pydantic import BaseModel


class UpsertUser(BaseModel):
    kind: Literal["upsert_user"] = "upsert_user"
    code: str
    name: str
    privilege: int = 0
    credential: str = ""
    card: str = ""


class DeleteUser(BaseModel):
    kind: Literal["delete_user"] = "delete_user"
    code: str


DevicePayload = Union[UpsertUser, DeleteUser]


class PayloadCodec(Protocol):
    def encode(self, payload: DevicePayload) -> str: ...


def _clean(value: object) -> str:
    # Tabs and newlines are field/record separators on the wire.
    return str(value).replace("\t", " ").replace("\r", " ").replace("\n", " ")


class AdmsCodec:
    """Push-protocol ``DATA UPDATE/DELETE USERINFO`` encoding."""

    def encode(self, payload: DevicePayload) -> str:
        if isinstance(payload, UpsertUser):
            fields = [
                ("PIN", payload.code),
                ("Name", payload.name),
                ("Pri", payload.privilege),
                ("Passwd", payload.credential),
                ("Card", payload.card),
                ("Grp", 1),
                ("TZ", 1),
                ("Verify", 0),
            ]
            body = "\t".join(f"{key}={_clean(val)}" for key, val in fields)
            return f"DATA UPDATE USERINFO {body}"
        if isinstance(payload, DeleteUser):
            return f"DATA DELETE USERINFO PIN={_clean(payload.code)}"
        raise TypeError(f"Unsupported payload variant: {type(payload).__name__}")


default_codec = AdmsCodec()
