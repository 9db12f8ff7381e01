"""HTTP server that exposes port control to clients."""

from __future__ import annotations

import io
import json
import logging
import os
import socket
import socketserver
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any
from urllib.parse import urlsplit

from .client import (
    DUMP_STATE_PATH,
    EXPOSE_PIPE_PATH,
    EXPOSE_PORT_PATH,
    LIST_PATH,
    UNEXPOSE_PIPE_PATH,
    UNEXPOSE_PORT_PATH,
    ExposeError,
    Implementation,
)
from .port import Port, Protocol
from .transport import UnixTransport, choose

_log = logging.getLogger(__name__)

_PORTS_ONLY = "exposed ports can only be TCP or UDP"
_PIPES_ONLY = "exposed pipes can only have proto=Unix"

_Response = tuple[int, "str | None", bytes]


class _BadRequest(Exception):
    pass


def _json(obj: Any) -> bytes:
    return (json.dumps(obj, ensure_ascii=False) + "\n").encode("utf-8")


def _json_response(status: int, obj: Any) -> _Response:
    return status, "application/json; charset=UTF-8", _json(obj)


def _bind(body: bytes) -> Port:
    if not body:
        return Port()
    try:
        return Port.from_dict(json.loads(body))
    except (ValueError, TypeError) as exc:
        raise _BadRequest(str(exc)) from exc


def _expose(impl: Implementation, port: Port) -> _Response:
    try:
        impl.expose(port)
    except ExposeError as exc:
        return _json_response(400, {"message": exc.message})
    return 200, None, b""


def _expose_port(impl: Implementation, body: bytes) -> _Response:
    port = _bind(body)
    if port.proto not in (Protocol.TCP, Protocol.UDP):
        return _json_response(400, _PORTS_ONLY)
    return _expose(impl, port)


def _expose_pipe(impl: Implementation, body: bytes) -> _Response:
    port = _bind(body)
    if port.proto != Protocol.UNIX:
        return _json_response(400, _PIPES_ONLY)
    return _expose(impl, port)


def _unexpose_port(impl: Implementation, body: bytes) -> _Response:
    port = _bind(body)
    if port.proto not in (Protocol.TCP, Protocol.UDP):
        return _json_response(400, _PORTS_ONLY)
    impl.unexpose(port)
    return 200, None, b""


def _unexpose_pipe(impl: Implementation, body: bytes) -> _Response:
    port = _bind(body)
    if port.proto != Protocol.UNIX:
        return _json_response(400, _PIPES_ONLY)
    impl.unexpose(port)
    return 200, None, b""


def _list(impl: Implementation, body: bytes) -> _Response:
    return _json_response(200, [port.to_dict() for port in impl.list_exposed()])


def _dump_state(impl: Implementation, body: bytes) -> _Response:
    buffer = io.BytesIO()
    try:
        impl.dump_state(buffer)
    except Exception:
        _log.exception("dumping state failed")
    return 200, "text/plain", buffer.getvalue()


_Action = Callable[[Implementation, bytes], _Response]

# POST is accepted on the mutating routes for backwards compatibility.
_ROUTES: dict[str, dict[str, _Action]] = {
    EXPOSE_PORT_PATH: {"PUT": _expose_port, "POST": _expose_port},
    EXPOSE_PIPE_PATH: {"PUT": _expose_pipe, "POST": _expose_pipe},
    UNEXPOSE_PORT_PATH: {"DELETE": _unexpose_port, "POST": _unexpose_port},
    UNEXPOSE_PIPE_PATH: {"DELETE": _unexpose_pipe, "POST": _unexpose_pipe},
    LIST_PATH: {"GET": _list},
    DUMP_STATE_PATH: {"GET": _dump_state},
}


class _Handler(BaseHTTPRequestHandler):
    server: _ControlHTTPServer

    def address_string(self) -> str:
        addr = self.client_address
        if isinstance(addr, tuple) and addr:
            return str(addr[0])
        return str(addr) or "local"

    def log_message(self, format: str, *args: Any) -> None:
        _log.debug("%s - %s", self.address_string(), format % args)

    def _read_body(self) -> bytes:
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length > 0 else b""

    def _send(self, status: int, content_type: str | None, body: bytes) -> None:
        self.send_response(status)
        if content_type is not None:
            self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def _dispatch(self) -> None:
        route = _ROUTES.get(urlsplit(self.path).path)
        if route is None:
            self._send(*_json_response(404, {"message": "Not Found"}))
            return
        action = route.get(self.command)
        if action is None:
            self._send(*_json_response(405, {"message": "Method Not Allowed"}))
            return
        try:
            response = action(self.server.impl, self._read_body())
        except _BadRequest as exc:
            response = _json_response(400, {"message": str(exc)})
        except Exception:
            _log.exception("handling %s %s failed", self.command, self.path)
            response = _json_response(500, {"message": "Internal Server Error"})
        self._send(*response)

    do_GET = _dispatch
    do_PUT = _dispatch
    do_POST = _dispatch
    do_DELETE = _dispatch


class _ControlHTTPServer(socketserver.ThreadingMixIn, HTTPServer):
    daemon_threads = True

    def __init__(self, listener: socket.socket, impl: Implementation) -> None:
        super().__init__(listener.getsockname(), _Handler, bind_and_activate=False)
        self.socket.close()
        self.socket = listener
        self.impl = impl


class Server:
    """Serves the port-control API on an already listening socket."""

    def __init__(
        self,
        listener: socket.socket,
        impl: Implementation,
        socket_path: str | None = None,
    ) -> None:
        self._httpd = _ControlHTTPServer(listener, impl)
        self._socket_path = socket_path
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()

    def start(self) -> None:
        """Serve requests in a background thread."""
        with self._lock:
            if self._thread is not None:
                raise RuntimeError("server already started")
            self._thread = threading.Thread(
                target=self._httpd.serve_forever, name="vpnkit-control", daemon=True
            )
            self._thread.start()

    def stop(self) -> None:
        """Stop serving and close the listening socket."""
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is not None:
            self._httpd.shutdown()
            thread.join()
        self._httpd.server_close()
        if self._socket_path is not None:
            try:
                os.remove(self._socket_path)
            except FileNotFoundError:
                pass
            self._socket_path = None

    def __enter__(self) -> Server:
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()


def new_server(path: str, impl: Implementation) -> Server:
    """Listen on path and return a Server handling port-control requests with impl."""
    transport = choose(path)
    listener = transport.listen(path)
    socket_path = path if isinstance(transport, UnixTransport) else None
    return Server(listener, impl, socket_path)