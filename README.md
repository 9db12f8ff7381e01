# vpnkit

Python tools for talking to a VPNKit networking service. The package has no
dependencies outside the standard library.

## What is in the package

- `vpnkit.port`: `Port` and `Protocol` (`TCP`, `UDP`, `UNIX`) describe TCP,
  UDP and Unix domain socket forwards. `str(port)` gives a readable summary.
  `Port.spec()` writes the compact colon-separated spec, and `parse_port` reads
  one back; Unix paths are base64-encoded in the spec. `Port.to_dict()` and
  `Port.from_dict()` convert to and from the JSON form, which leaves out empty
  fields. The module also has the default AF_VSOCK ports
  `DEFAULT_CONTROL_VSOCK` and `DEFAULT_DATA_VSOCK`.
- `vpnkit.config`: `DHCPConfiguration`, `HTTPConfiguration` and
  `GatewayForwards` (a list of `Forward`) each have `write(stream)`. It writes
  the service's JSON configuration document to a text stream.
- `vpnkit.transport`: `choose(path)` returns a `VsockTransport` when `path` is
  an AF_VSOCK address (`"<port>"` or `"<cid>/<port>"`, parsed by
  `parse_vsock_address` into a `VsockAddress`). Otherwise it returns a
  `UnixTransport`. Both have `dial(path)` and `listen(path)`, which return
  sockets. `shorten_unix_socket_path` falls back to a relative path when an
  absolute socket path is longer than the platform limit, and raises
  `ValueError` if even that does not fit.
- `vpnkit.client`: `Client(path)` speaks the HTTP control API over the transport
  chosen for `path`. It has `expose`, `unexpose`, `list_exposed` and
  `dump_state(stream)`; `dump_state` writes bytes to a binary stream. When the
  server answers 400 to an expose request, `expose` raises `ExposeError` with
  the server's message. Other unexpected statuses raise
  `http.client.HTTPException`. `Implementation` is the abstract interface that
  both `Client` and server back ends provide.
- `vpnkit.server`: `new_server(path, impl)` listens on `path` and returns a
  `Server` that answers the same API using any `Implementation`. `start()` runs
  it in a background thread. `stop()` shuts it down and removes the Unix socket
  file. A `Server` can also be used as a context manager.
- `vpnkit.vmnet`: `Vmnet.connect(path)` opens a vmnet connection on a Unix
  domain socket and exchanges `InitMessage`s. `connect_vif(uuid)` attaches a
  virtual Ethernet interface (`Vif`) and gets its IPv4 address by DHCP.
  `connect_vif_ip(uuid, ip)` asks for a fixed address instead. A refusal is
  raised as `ConnectionError`. `Vif.read()` and `Vif.write(packet)` move whole
  Ethernet frames.
- `vpnkit.frames`: `EthernetFrame`, `Ipv4`, `Udpv4` and `DhcpRequest` build and
  parse the frames the DHCP exchange needs (`parse_ethernet_frame`,
  `parse_ipv4`, `parse_udpv4`). `PcapWriter` writes a pcap capture, cutting
  each packet to 1500 bytes.
- `vpnkit.vmnetd`: the client side of the privileged helper protocol on
  `VMNETD_SOCKET_PATH`. `listen_tcp_vmnet(ip, port)` and
  `listen_udp_vmnet(ip, port)` ask the helper to bind a low port and return the
  socket it passes back. Failures raise `VmnetdError`. The module also has the
  wire codecs (`HandshakeMessage`, `BindIpv4`, `write_init_message`,
  `read_init_message`, `write_bind_ipv4`, `read_bind_ipv4`, `write_command`,
  `read_command`) and `is_permission_denied`.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Example: a client

```python
import ipaddress

from vpnkit.client import Client, ExposeError
from vpnkit.port import Port, Protocol, parse_port

port = Port(
    proto=Protocol.TCP,
    out_ip=ipaddress.ip_address("127.0.0.1"),
    out_port=8080,
    in_ip=ipaddress.ip_address("192.168.65.2"),
    in_port=80,
)
print(port)          # tcp forward from 127.0.0.1:8080 to 192.168.65.2:80
assert parse_port(port.spec()).spec() == port.spec()

client = Client("/tmp/vpnkit-control.sock")
try:
    client.expose(port)
except ExposeError as exc:
    print("refused:", exc)
for exposed in client.list_exposed():
    print(exposed)
client.unexpose(port)
```

## Example: a server

```python
from vpnkit.client import Implementation
from vpnkit.server import new_server


class Table(Implementation):
    def __init__(self):
        self.ports = {}

    def expose(self, port):
        self.ports[str(port)] = port

    def unexpose(self, port):
        self.ports.pop(str(port), None)

    def list_exposed(self):
        return list(self.ports.values())

    def dump_state(self, stream):
        stream.write(f"{len(self.ports)} ports\n".encode())


with new_server("/tmp/vpnkit-control.sock", Table()):
    ...  # requests are served in a background thread
```

The server accepts `PUT` on the expose routes, `DELETE` on the unexpose routes,
and `POST` on both. It answers 400 when a port is sent to the pipe route or a
pipe to the port route.

## What the package does not do

- It has no back end that forwards traffic. `new_server` only serves the control
  API, and the `Implementation` you pass decides what "expose" means. Nothing
  here listens on exposed ports or relays connections, and there is no
  connection multiplexer.
- It installs no command-line programs.
- Transports cover Unix domain sockets and Linux AF_VSOCK only. Windows named
  pipes and Hyper-V sockets are not supported. `set_security_descriptor` only
  records the value.
- `vpnkit.vmnetd` needs the helper daemon to be running at
  `VMNETD_SOCKET_PATH`. It does not provide that daemon.