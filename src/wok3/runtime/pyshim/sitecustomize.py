"""
Port virtualization shim for Python dev servers.

This directory is put on PYTHONPATH of every worktree process, so Python
imports this module at interpreter startup. When the worktree runs with a
port offset, socket bind/connect calls for known ports are shifted by the
offset. Outbound rewriting only applies to loopback/unspecified hosts.
"""

import json
import os
import socket
import sys

OFFSET_ENV_VAR = "__WOK3_PORT_OFFSET__"
KNOWN_PORTS_ENV_VAR = "__WOK3_KNOWN_PORTS__"
DEBUG_ENV_VAR = "__WOK3_DEBUG__"

LOOPBACK_HOSTS = {"", "localhost", "0.0.0.0", "::", "::1"}

SHIM_DIR = os.path.dirname(os.path.realpath(__file__))


def read_settings(environ=None):
    """Return (offset, known_ports) from the environment, or (0, frozenset())."""
    environ = os.environ if environ is None else environ
    try:
        offset = int(environ.get(OFFSET_ENV_VAR, "0"))
        known = frozenset(int(p) for p in json.loads(environ.get(KNOWN_PORTS_ENV_VAR, "[]")))
    except (TypeError, ValueError):
        return 0, frozenset()
    return offset, known


def is_loopback(host):
    if host is None:
        return True
    if isinstance(host, bytes):
        host = host.decode("ascii", "replace")
    host = str(host).strip("[]")
    return host in LOOPBACK_HOSTS or host.startswith("127.")


def rewrite_address(address, offset, known_ports, loopback_only):
    """
    Shift the port of an AF_INET/AF_INET6 address tuple when it is known.

    Handles ``(host, port)`` and ``(host, port, flowinfo, scope_id)``; any
    other address (unix socket paths, malformed tuples) is returned as-is.
    """
    if offset <= 0 or not known_ports:
        return address
    if not isinstance(address, tuple) or len(address) not in (2, 4):
        return address

    host, port = address[0], address[1]
    if not isinstance(port, int) or port not in known_ports:
        return address
    if loopback_only and not is_loopback(host):
        return address

    if os.environ.get(DEBUG_ENV_VAR):
        kind = "connect" if loopback_only else "bind"
        print(f"[wok3] {kind} :{port} -> :{port + offset}", file=sys.stderr)
    return (host, port + offset) + tuple(address[2:])


def install(environ=None):
    """Patch socket.socket when an offset is configured. Returns True if patched."""
    offset, known = read_settings(environ)
    if offset <= 0 or not known:
        return False
    if getattr(socket.socket, "_wok3_patched", False):
        return True

    orig_bind = socket.socket.bind
    orig_connect = socket.socket.connect
    orig_connect_ex = socket.socket.connect_ex

    def bind(self, address):
        return orig_bind(self, rewrite_address(address, offset, known, False))

    def connect(self, address):
        return orig_connect(self, rewrite_address(address, offset, known, True))

    def connect_ex(self, address):
        return orig_connect_ex(self, rewrite_address(address, offset, known, True))

    socket.socket.bind = bind
    socket.socket.connect = connect
    socket.socket.connect_ex = connect_ex
    socket.socket._wok3_patched = True
    return True


def chain_next_sitecustomize():
    """
    Run the sitecustomize this module shadows on sys.path, if any.

    Distributions and tools such as coverage ship their own sitecustomize;
    it is imported with this directory hidden from sys.path.
    """
    this = sys.modules.pop("sitecustomize", None)
    saved_path = sys.path[:]
    sys.path[:] = [p for p in saved_path if os.path.realpath(p or os.curdir) != SHIM_DIR]
    try:
        import sitecustomize  # noqa: F401
    except ImportError as e:
        if e.name != "sitecustomize":
            raise
    finally:
        sys.path[:] = saved_path
        if this is not None:
            sys.modules["sitecustomize"] = this


if __name__ == "sitecustomize":
    install()
    chain_next_sitecustomize()
