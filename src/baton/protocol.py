"""Control channel messages exchanged during a listener hand-off.

The child sends the literal token ``get_listener``; the parent answers with
a JSON :class:`~baton.listener.ListenerRecord` and closes the connection.
"""

from __future__ import annotations

from typing import TypeAlias

import msgspec

from .errors import ProtocolError
from .listener import ListenerRecord

GET_LISTENER = b"get_listener"
REQUEST_SIZE = len(GET_LISTENER)
MAX_RECORD_BYTES = 4096


class RequestListener(msgspec.Struct, frozen=True):
    pass


# Closed set of requests a child may send.
ControlMessage: TypeAlias = RequestListener

_record_decoder = msgspec.json.Decoder(ListenerRecord)


def encode_message(message: ControlMessage) -> bytes:
    match message:
        case RequestListener():
            return GET_LISTENER
    raise ProtocolError(f"cannot encode control message {message!r}")


def decode_message(data: bytes) -> ControlMessage:
    if data == GET_LISTENER:
        return RequestListener()
    raise ProtocolError(f"unknown control message {data[:32]!r}")


def encode_record(record: ListenerRecord) -> bytes:
    return msgspec.json.encode(record)


def decode_record(data: bytes) -> ListenerRecord:
    try:
        return _record_decoder.decode(data)
    except msgspec.DecodeError as exc:
        raise ProtocolError(f"malformed listener record: {exc}") from exc
