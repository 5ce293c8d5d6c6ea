"""
Tests for port discovery.
"""

import shlex
import shutil
import sys

import pytest

from wok3.core.ports import discover_ports, parse_lsof_listening

LSOF_OUTPUT = """\
COMMAND   PID USER   FD   TYPE DEVICE SIZE/OFF NODE NAME
node    41230  dev   23u  IPv4 0x1234      0t0  TCP *:3000 (LISTEN)
node    41230  dev   24u  IPv6 0x1235      0t0  TCP [::1]:3000 (LISTEN)
node    41288  dev   21u  IPv4 0x1236      0t0  TCP 127.0.0.1:5173 (LISTEN)
node    41288  dev   22u  IPv4 0x1237      0t0  TCP 127.0.0.1:6969 (LISTEN)
node    41288  dev   25u  IPv4 0x1238      0t0  TCP 127.0.0.1:51234->127.0.0.1:3000 (ESTABLISHED)
"""


class TestParseLsof:
    """Tests for lsof output parsing."""

    def test_listening_ports_sorted_and_unique(self):
        assert parse_lsof_listening(LSOF_OUTPUT) == [3000, 5173, 6969]

    def test_exclude(self):
        assert parse_lsof_listening(LSOF_OUTPUT, exclude={6969}) == [3000, 5173]

    def test_empty(self):
        assert parse_lsof_listening("") == []


class TestDiscoverPorts:
    """Tests for running discovery."""

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path):
        result = await discover_ports("true", tmp_path / "missing")

        assert not result.success
        assert "not found" in result.error

    @pytest.mark.asyncio
    async def test_process_without_ports(self, tmp_path):
        if shutil.which("lsof") is None or shutil.which("pgrep") is None:
            pytest.skip("requires lsof and pgrep")
        logs = []

        result = await discover_ports("echo hello", tmp_path, stabilize_seconds=1, on_log=logs.append)

        assert result.ports == []
        assert not result.success
        assert any("hello" in line for line in logs)
        assert result.logs == logs

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_finds_listening_port(self, tmp_path):
        if sys.platform == "win32" or shutil.which("lsof") is None or shutil.which("pgrep") is None:
            pytest.skip("requires lsof and pgrep")
        server = (
            "import socket, time\n"
            "s = socket.socket()\n"
            "s.bind(('127.0.0.1', 0))\n"
            "s.listen()\n"
            "print(s.getsockname()[1], flush=True)\n"
            "time.sleep(30)\n"
        )
        command = f"{shlex.quote(sys.executable)} -c {shlex.quote(server)}"

        result = await discover_ports(command, tmp_path, stabilize_seconds=2)

        assert result.success, result.logs
        printed = [line.rsplit(" ", 1)[-1] for line in result.logs if "[port-discovery:output]" in line]
        assert result.ports == [int(printed[0])]
