"""Exceptions raised while restarting a running server."""

from __future__ import annotations


class BatonError(Exception):
    pass


class RestartError(BatonError):
    """A failure that aborts the current restart cycle only."""


class UnsupportedTransport(RestartError):
    pass


class ReconstructionFailed(RestartError):
    pass


class SpawnFailed(RestartError):
    pass


class ChildStartupTimeout(RestartError):
    pass


class ChannelBindFailed(RestartError):
    pass


class ProtocolError(RestartError):
    """The control channel conversation did not follow the handshake."""
