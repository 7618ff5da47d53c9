"""Private Unix-socket rendezvous between a restarting parent and its child."""

from __future__ import annotations

import stat
from pathlib import Path

import anyio
from anyio.abc import SocketListener, SocketStream
from anyio.streams.buffered import BufferedByteReceiveStream

from .errors import ChannelBindFailed, ChildStartupTimeout, ProtocolError
from .listener import ListenerRecord
from .logging import get_logger
from .protocol import (
    MAX_RECORD_BYTES,
    REQUEST_SIZE,
    ControlMessage,
    RequestListener,
    decode_message,
    decode_record,
    encode_message,
    encode_record,
)

logger = get_logger(__name__)


async def _clear_endpoint(path: Path) -> None:
    try:
        mode = path.stat().st_mode
    except FileNotFoundError:
        return
    except OSError as exc:
        raise ChannelBindFailed(f"cannot inspect control channel {path}: {exc}") from exc
    if not stat.S_ISSOCK(mode):
        raise ChannelBindFailed(f"{path} exists and is not a socket")

    try:
        stream = await anyio.connect_unix(path)
    except OSError:
        # Nobody listening: left over from an earlier cycle.
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            raise ChannelBindFailed(f"cannot remove stale {path}: {exc}") from exc
        logger.info("channel.stale_removed", path=str(path))
        return
    await stream.aclose()
    raise ChannelBindFailed(f"{path} is in use by another process")


class ControlChannel:
    """Server side of the control channel; serves exactly one child."""

    def __init__(self, path: Path, listener: SocketListener) -> None:
        self.path = path
        self._listener = listener
        self._accepted = False

    @classmethod
    async def open(cls, path: str | Path) -> ControlChannel:
        path = Path(path)
        await _clear_endpoint(path)
        try:
            listener = await anyio.create_unix_listener(path, mode=0o600)
        except OSError as exc:
            raise ChannelBindFailed(f"cannot bind control channel {path}: {exc}") from exc
        logger.debug("channel.opened", path=str(path))
        return cls(path, listener)

    async def accept(self, timeout: float) -> SocketStream:
        if self._accepted:
            raise ProtocolError("control channel already accepted its client")
        try:
            with anyio.fail_after(max(timeout, 0)):
                stream = await self._listener.accept()
        except TimeoutError as exc:
            raise ChildStartupTimeout(f"no child connected within {timeout:g}s") from exc
        self._accepted = True
        logger.debug("channel.accepted", path=str(self.path))
        return stream

    async def aclose(self) -> None:
        await self._listener.aclose()
        self.path.unlink(missing_ok=True)
        logger.debug("channel.closed", path=str(self.path))

    async def __aenter__(self) -> ControlChannel:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


async def connect(path: str | Path) -> SocketStream:
    try:
        return await anyio.connect_unix(path)
    except OSError as exc:
        raise ProtocolError(f"cannot reach control channel {path}: {exc}") from exc


async def receive_request(stream: SocketStream, timeout: float) -> ControlMessage:
    buffered = BufferedByteReceiveStream(stream)
    try:
        with anyio.fail_after(max(timeout, 0)):
            data = await buffered.receive_exactly(REQUEST_SIZE)
    except TimeoutError as exc:
        raise ChildStartupTimeout(f"child sent no request within {timeout:g}s") from exc
    except (anyio.IncompleteRead, anyio.BrokenResourceError) as exc:
        raise ProtocolError("child hung up before sending a request") from exc
    return decode_message(data)


async def send_record(stream: SocketStream, record: ListenerRecord) -> None:
    try:
        await stream.send(encode_record(record))
    except (anyio.BrokenResourceError, anyio.ClosedResourceError) as exc:
        raise ProtocolError(f"failed to send listener record: {exc}") from exc


async def _receive_until_eof(stream: SocketStream, limit: int) -> bytes:
    chunks: list[bytes] = []
    size = 0
    while True:
        try:
            chunk = await stream.receive()
        except anyio.EndOfStream:
            return b"".join(chunks)
        size += len(chunk)
        if size > limit:
            raise ProtocolError(f"listener record exceeds {limit} bytes")
        chunks.append(chunk)


async def request_listener(path: str | Path, timeout: float) -> ListenerRecord:
    """Child side: ask the parent for its listener and wait for the record."""
    try:
        with anyio.fail_after(timeout):
            stream = await connect(path)
            async with stream:
                await stream.send(encode_message(RequestListener()))
                data = await _receive_until_eof(stream, MAX_RECORD_BYTES)
    except TimeoutError as exc:
        raise ChildStartupTimeout(f"parent did not answer within {timeout:g}s") from exc
    except anyio.BrokenResourceError as exc:
        raise ProtocolError(f"control channel {path} dropped: {exc}") from exc
    record = decode_record(data)
    logger.info("channel.record_received", addr=record.addr, fd=record.fd)
    return record
