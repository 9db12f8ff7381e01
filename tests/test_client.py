import http.client
import io
import json
import os
import socketserver
import tempfile
import threading
from http.server import BaseHTTPRequestHandler

import pytest

from vpnkit.client import (
    DUMP_STATE_PATH,
    EXPOSE_PIPE_PATH,
    EXPOSE_PORT_PATH,
    LIST_PATH,
    UNEXPOSE_PIPE_PATH,
    UNEXPOSE_PORT_PATH,
    Client,
    ExposeError,
    Implementation,
)
from vpnkit.port import Port, Protocol


class _Recorder:
    def __init__(self):
        self.requests = []
        self.status = 200
        self.body = b""


def _make_handler(recorder):
    class Handler(BaseHTTPRequestHandler):
        def _handle(self):
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length)
            recorder.requests.append(
                (self.command, self.path, self.headers.get("Content-Type"), body)
            )
            self.send_response(recorder.status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(recorder.body)))
            self.end_headers()
            self.wfile.write(recorder.body)

        do_GET = _handle
        do_PUT = _handle
        do_POST = _handle
        do_DELETE = _handle

        def log_message(self, format, *args):
            pass

    return Handler


@pytest.fixture
def fake():
    with tempfile.TemporaryDirectory() as directory:
        path = os.path.join(directory, "ctl")
        recorder = _Recorder()
        server = socketserver.ThreadingUnixStreamServer(path, _make_handler(recorder))
        server.daemon_threads = True
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        try:
            yield recorder, Client(path)
        finally:
            server.shutdown()
            server.server_close()
            thread.join()


def test_expose_tcp_sends_put_to_port_path(fake):
    recorder, client = fake
    client.expose(Port(proto=Protocol.TCP, in_port=1, out_port=1))
    method, path, content_type, body = recorder.requests[0]
    assert (method, path, content_type) == ("PUT", EXPOSE_PORT_PATH, "application/json")
    assert json.loads(body) == {"proto": "tcp", "in_port": 1, "out_port": 1}
    assert body.endswith(b"\n")


def test_expose_unix_sends_put_to_pipe_path(fake):
    recorder, client = fake
    client.expose(Port(proto=Protocol.UNIX, in_path="/tmp/foo", out_path="/tmp/bar"))
    method, path, _, body = recorder.requests[0]
    assert (method, path) == ("PUT", EXPOSE_PIPE_PATH)
    assert json.loads(body) == {"proto": "unix", "in_path": "/tmp/foo", "out_path": "/tmp/bar"}


@pytest.mark.parametrize(
    "port, expected_path",
    [
        (Port(proto=Protocol.UDP, in_port=2, out_port=2), UNEXPOSE_PORT_PATH),
        (Port(proto=Protocol.UNIX, in_path="/tmp/foo", out_path="/tmp/bar"), UNEXPOSE_PIPE_PATH),
    ],
)
def test_unexpose_sends_delete(fake, port, expected_path):
    recorder, client = fake
    client.unexpose(port)
    method, path, _, body = recorder.requests[0]
    assert (method, path) == ("DELETE", expected_path)
    assert Port.from_dict(json.loads(body)) == port


def test_expose_bad_request_raises_expose_error(fake):
    recorder, client = fake
    recorder.status = 400
    recorder.body = b'{"message":"EADDRESSINUSE"}\n'
    with pytest.raises(ExposeError) as info:
        client.expose(Port(proto=Protocol.TCP, in_port=1, out_port=1))
    assert info.value.message == "EADDRESSINUSE"
    assert str(info.value) == "EADDRESSINUSE"


def test_expose_bad_request_without_object_fails_to_decode(fake):
    recorder, client = fake
    recorder.status = 400
    recorder.body = b'"exposed ports can only be TCP or UDP"\n'
    with pytest.raises(ValueError, match="failed to decode"):
        client.expose(Port(proto=Protocol.TCP, in_port=1, out_port=1))


def test_expose_unexpected_status(fake):
    recorder, client = fake
    recorder.status = 503
    with pytest.raises(http.client.HTTPException, match=f"{EXPOSE_PORT_PATH} returned unexpected status: 503"):
        client.expose(Port(proto=Protocol.TCP, in_port=1, out_port=1))


def test_unexpose_unexpected_status(fake):
    recorder, client = fake
    recorder.status = 404
    with pytest.raises(http.client.HTTPException, match="returned unexpected status: 404"):
        client.unexpose(Port(proto=Protocol.TCP, in_port=1, out_port=1))


def test_list_exposed_null_is_empty(fake):
    recorder, client = fake
    recorder.body = b"null\n"
    assert client.list_exposed() == []
    assert recorder.requests[0][:2] == ("GET", LIST_PATH)


def test_list_exposed_round_trips_ports(fake):
    recorder, client = fake
    ports = [
        Port(proto=Protocol.TCP, out_ip="127.0.0.1", out_port=8081, in_ip="127.0.0.1", in_port=8080),
        Port(proto=Protocol.UNIX, out_path="/tmp/bar", in_path="/tmp/foo", annotation="kubernetes"),
    ]
    recorder.body = json.dumps([p.to_dict() for p in ports]).encode()
    assert client.list_exposed() == ports


def test_list_exposed_unexpected_status(fake):
    recorder, client = fake
    recorder.status = 500
    with pytest.raises(http.client.HTTPException, match=f"{LIST_PATH} returned unexpected status: 500"):
        client.list_exposed()


def test_dump_state_copies_body(fake):
    recorder, client = fake
    recorder.body = b"multiplexer state\n"
    out = io.BytesIO()
    client.dump_state(out)
    assert out.getvalue() == b"multiplexer state\n"
    assert recorder.requests[0][:2] == ("GET", DUMP_STATE_PATH)


def test_dial_missing_socket_raises():
    with tempfile.TemporaryDirectory() as directory:
        client = Client(os.path.join(directory, "missing"))
        with pytest.raises(OSError):
            client.list_exposed()


def test_implementation_is_abstract():
    with pytest.raises(TypeError):
        Implementation()