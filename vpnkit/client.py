"""Client for the port-forwarding control API of a running server.

The server can expose and unexpose TCP and UDP ports and Unix domain
sockets, list what is exposed, and dump its internal state.
"""

from __future__ import annotations

import http.client
import json
import shutil
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from typing import BinaryIO

from .port import Port, Protocol
from .transport import choose

LIST_PATH = "/forwards/list"
EXPOSE_PORT_PATH = "/forwards/expose/port"
EXPOSE_PIPE_PATH = "/forwards/expose/pipe"
UNEXPOSE_PORT_PATH = "/forwards/unexpose/port"
UNEXPOSE_PIPE_PATH = "/forwards/unexpose/pipe"
DUMP_STATE_PATH = "/forwards/dump"

HTTP_TIMEOUT = 120.0


class ExposeError(Exception):
    """An error exposing a port that should be reported through to the user."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return self.message


class Implementation(ABC):
    """Exposes and unexposes ports."""

    @abstractmethod
    def expose(self, port: Port) -> None:
        """Start forwarding the given port."""

    @abstractmethod
    def unexpose(self, port: Port) -> None:
        """Stop forwarding the given port."""

    @abstractmethod
    def list_exposed(self) -> list[Port]:
        """Return the ports currently exposed."""

    @abstractmethod
    def dump_state(self, stream: BinaryIO) -> None:
        """Write a human-readable description of the internal state to stream."""


class _TransportConnection(http.client.HTTPConnection):
    """An HTTP connection carried over a Unix domain socket or AF_VSOCK."""

    def __init__(self, socket_path: str, timeout: float | None) -> None:
        super().__init__("unix", timeout=timeout)
        self._socket_path = socket_path
        self._transport = choose(socket_path)

    def connect(self) -> None:
        self.sock = self._transport.dial(self._socket_path)
        if self.timeout is not None:
            self.sock.settimeout(self.timeout)


def _encode_port(port: Port) -> bytes:
    return (json.dumps(port.to_dict()) + "\n").encode("utf-8")


def _unexpected_status(path: str, status: int) -> http.client.HTTPException:
    return http.client.HTTPException(f"{path} returned unexpected status: {status}")


def _decode_expose_error(body: bytes) -> ExposeError:
    try:
        data = json.loads(body)
    except ValueError as exc:
        raise ValueError(f"failed to decode: {exc}") from exc
    if not isinstance(data, dict):
        raise ValueError(f"failed to decode: expected an object, got {type(data).__name__}")
    message = data.get("message", "")
    if not isinstance(message, str):
        raise ValueError("failed to decode: message is not a string")
    return ExposeError(message)


class Client(Implementation):
    """Talks to the control API over the transport chosen for path."""

    def __init__(self, path: str, timeout: float | None = HTTP_TIMEOUT) -> None:
        self.path = path
        self.timeout = timeout

    @contextmanager
    def _open(
        self, method: str, url: str, body: bytes | None = None
    ) -> Iterator[http.client.HTTPResponse]:
        conn = _TransportConnection(self.path, self.timeout)
        try:
            headers = {"Content-Type": "application/json"} if body is not None else {}
            conn.request(method, url, body=body, headers=headers)
            yield conn.getresponse()
        finally:
            conn.close()

    def expose(self, port: Port) -> None:
        path = EXPOSE_PIPE_PATH if port.proto == Protocol.UNIX else EXPOSE_PORT_PATH
        with self._open("PUT", path, _encode_port(port)) as response:
            status = response.status
            body = response.read()
        if status == 400:
            raise _decode_expose_error(body)
        if status != 200:
            raise _unexpected_status(path, status)

    def unexpose(self, port: Port) -> None:
        path = UNEXPOSE_PIPE_PATH if port.proto == Protocol.UNIX else UNEXPOSE_PORT_PATH
        with self._open("DELETE", path, _encode_port(port)) as response:
            status = response.status
            response.read()
        if status != 200:
            raise _unexpected_status(path, status)

    def list_exposed(self) -> list[Port]:
        with self._open("GET", LIST_PATH) as response:
            status = response.status
            body = response.read()
        if status != 200:
            raise _unexpected_status(LIST_PATH, status)
        data = json.loads(body)
        if data is None:
            return []
        if not isinstance(data, list):
            raise ValueError(f"expected a list of ports, got {type(data).__name__}")
        return [Port.from_dict(item) for item in data]

    def dump_state(self, stream: BinaryIO) -> None:
        with self._open("GET", DUMP_STATE_PATH) as response:
            if response.status != 200:
                raise _unexpected_status(DUMP_STATE_PATH, response.status)
            shutil.copyfileobj(response, stream)