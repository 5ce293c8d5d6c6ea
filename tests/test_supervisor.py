"""
Tests for dev-server process supervision.

These spawn real shell processes, so they are skipped on Windows.
"""

import asyncio
import sys

import httpx
import pytest

from wok3.core.errors import ProcessSpawnError
from wok3.core.supervisor import ProcessSupervisor, StopOutcome, is_pid_alive, run_process

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="requires a POSIX shell")


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


class TestRunProcess:
    """Tests for run-to-completion helper."""

    @pytest.mark.asyncio
    async def test_success_captures_output(self, tmp_path):
        result = await run_process("echo hello", cwd=str(tmp_path))
        assert result.success
        assert result.stdout.strip() == "hello"

    @pytest.mark.asyncio
    async def test_failure_reports_exit_code(self, tmp_path):
        result = await run_process("echo oops >&2; exit 4", cwd=str(tmp_path))
        assert not result.success
        assert result.exit_code == 4
        assert "oops" in result.stderr

    @pytest.mark.asyncio
    async def test_timeout(self, tmp_path):
        result = await run_process("sleep 10", cwd=str(tmp_path), timeout=0.3)
        assert result.timed_out
        assert not result.success


class TestSpawnAndStop:
    """Tests for spawn, log capture and stop."""

    @pytest.mark.asyncio
    async def test_output_captured_in_order(self, tmp_path):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("wt", "echo one; echo two; sleep 30", tmp_path)

        await wait_for(lambda: len(supervisor.logs("wt")) >= 2)
        assert supervisor.logs("wt")[:2] == ["one", "two"]

        assert await supervisor.stop("wt", grace_seconds=2) == StopOutcome.GRACEFUL

    @pytest.mark.asyncio
    async def test_log_buffer_is_bounded(self, tmp_path):
        supervisor = ProcessSupervisor(log_buffer_lines=5)
        await supervisor.spawn("wt", "for i in 1 2 3 4 5 6 7 8 9; do echo $i; done; sleep 30", tmp_path)

        await wait_for(lambda: supervisor.logs("wt")[-1:] == ["9"])
        assert supervisor.logs("wt") == ["5", "6", "7", "8", "9"]
        await supervisor.stop("wt", grace_seconds=2)

    @pytest.mark.asyncio
    async def test_child_receives_environment(self, tmp_path):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("wt", 'echo "port=$APP_PORT"; sleep 30', tmp_path, {"APP_PORT": "3010"})

        await wait_for(lambda: "port=3010" in supervisor.logs("wt"))
        await supervisor.stop("wt", grace_seconds=2)

    @pytest.mark.asyncio
    async def test_stop_kills_whole_process_group(self, tmp_path):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("wt", "sleep 30 & echo child=$!; wait", tmp_path)

        await wait_for(lambda: any(line.startswith("child=") for line in supervisor.logs("wt")))
        child_pid = int(supervisor.logs("wt")[0].split("=")[1])
        assert is_pid_alive(child_pid)

        await supervisor.stop("wt", grace_seconds=2)
        await wait_for(lambda: not is_pid_alive(child_pid))

    @pytest.mark.asyncio
    async def test_stop_escalates_to_sigkill(self, tmp_path):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("wt", "trap '' TERM; sleep 30", tmp_path)
        await asyncio.sleep(0.2)

        assert await supervisor.stop("wt", grace_seconds=0.3) == StopOutcome.FORCED
        assert not supervisor.is_running("wt")

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, tmp_path):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("wt", "sleep 30", tmp_path)

        assert await supervisor.stop("wt", grace_seconds=2) == StopOutcome.GRACEFUL
        assert await supervisor.stop("wt", grace_seconds=2) == StopOutcome.NOT_RUNNING
        assert await supervisor.stop("never-started") == StopOutcome.NOT_RUNNING

    @pytest.mark.asyncio
    async def test_double_spawn_rejected(self, tmp_path):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("wt", "sleep 30", tmp_path)
        try:
            with pytest.raises(ProcessSpawnError, match="already running"):
                await supervisor.spawn("wt", "sleep 30", tmp_path)
        finally:
            await supervisor.stop_all(grace_seconds=2)

    @pytest.mark.asyncio
    async def test_missing_directory_rejected(self, tmp_path):
        supervisor = ProcessSupervisor()
        with pytest.raises(ProcessSpawnError, match="does not exist"):
            await supervisor.spawn("wt", "true", tmp_path / "gone")


class TestExitClassification:
    """Tests for crash vs requested stop."""

    @pytest.mark.asyncio
    async def test_unrequested_exit_reported_as_crash(self, tmp_path):
        exits = []
        supervisor = ProcessSupervisor(on_exit=lambda wid, rc, requested: exits.append((wid, rc, requested)))
        await supervisor.spawn("wt", "echo boom; exit 3", tmp_path)

        await wait_for(lambda: exits)
        assert exits == [("wt", 3, False)]
        assert supervisor.logs("wt") == ["boom"]
        assert not supervisor.is_running("wt")

    @pytest.mark.asyncio
    async def test_requested_stop_flagged(self, tmp_path):
        exits = []

        async def on_exit(wid, rc, requested):
            exits.append((wid, requested))

        supervisor = ProcessSupervisor(on_exit=on_exit)
        await supervisor.spawn("wt", "sleep 30", tmp_path)
        await supervisor.stop("wt", grace_seconds=2)

        # The handler has run by the time stop() returns
        assert exits == [("wt", True)]

    @pytest.mark.asyncio
    async def test_failing_exit_handler_does_not_propagate(self, tmp_path):
        def on_exit(wid, rc, requested):
            raise RuntimeError("handler bug")

        supervisor = ProcessSupervisor(on_exit=on_exit)
        await supervisor.spawn("wt", "sleep 30", tmp_path)
        assert await supervisor.stop("wt", grace_seconds=2) == StopOutcome.GRACEFUL


class TestLiveness:
    """Tests for the HTTP readiness probe."""

    @pytest.mark.asyncio
    async def test_live_when_endpoint_answers(self, tmp_path, monkeypatch):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("wt", "sleep 30", tmp_path)
        calls = []

        async def fake_get(self, url, **kwargs):
            calls.append(url)
            if len(calls) < 3:
                raise httpx.ConnectError("refused")
            return httpx.Response(404)

        monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)
        try:
            live = await supervisor.wait_until_live(
                "wt", "http://127.0.0.1:3010/", interval_seconds=0.01, timeout_seconds=5
            )
        finally:
            await supervisor.stop("wt", grace_seconds=2)

        assert live is True
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_timeout_returns_false(self, tmp_path, monkeypatch):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("wt", "sleep 30", tmp_path)

        async def fake_get(self, url, **kwargs):
            return httpx.Response(503)

        monkeypatch.setattr(httpx.AsyncClient, "get", fake_get)
        try:
            live = await supervisor.wait_until_live(
                "wt", "http://127.0.0.1:3010/", interval_seconds=0.01, timeout_seconds=0.1
            )
        finally:
            await supervisor.stop("wt", grace_seconds=2)

        assert live is False

    @pytest.mark.asyncio
    async def test_exited_process_is_not_live(self, tmp_path):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("wt", "exit 1", tmp_path)
        await wait_for(lambda: not supervisor.is_running("wt"))

        assert await supervisor.wait_until_live("wt", "http://127.0.0.1:1/", timeout_seconds=1) is False


def child_pid_from(logs):
    return int(next(line for line in logs if line.startswith("child=")).split("=")[1])


class TestProcessGroupCleanup:
    """Tests for children that outlive the shell leader."""

    @pytest.mark.asyncio
    async def test_stop_kills_children_that_ignore_sigterm(self, tmp_path):
        supervisor = ProcessSupervisor()
        await supervisor.spawn("wt", "(trap '' TERM; sleep 30) & echo child=$!; wait", tmp_path)
        await wait_for(lambda: any(line.startswith("child=") for line in supervisor.logs("wt")))
        child_pid = child_pid_from(supervisor.logs("wt"))

        assert await supervisor.stop("wt", grace_seconds=0.5) == StopOutcome.FORCED
        await wait_for(lambda: not is_pid_alive(child_pid))

    @pytest.mark.asyncio
    async def test_leader_exit_takes_down_its_group(self, tmp_path):
        exits = []
        supervisor = ProcessSupervisor(on_exit=lambda wid, rc, requested: exits.append((wid, rc, requested)))
        await supervisor.spawn("wt", "sleep 30 & echo child=$!; sleep 0.2; exit 0", tmp_path)

        await wait_for(lambda: exits)
        assert exits == [("wt", 0, False)]
        assert not is_pid_alive(child_pid_from(supervisor.logs("wt")))

    @pytest.mark.asyncio
    async def test_stop_after_leader_exit_signals_the_group(self, tmp_path):
        exits = []
        supervisor = ProcessSupervisor(
            on_exit=lambda wid, rc, requested: exits.append(requested),
            exit_grace_seconds=10,
        )
        await supervisor.spawn(
            "wt", "(trap '' TERM; sleep 30) & echo child=$!; sleep 0.2; exit 0", tmp_path
        )
        await wait_for(lambda: not supervisor.is_running("wt"))
        child_pid = child_pid_from(supervisor.logs("wt"))
        assert is_pid_alive(child_pid)

        assert await supervisor.stop("wt", grace_seconds=0.3) == StopOutcome.FORCED
        assert exits == [True]
        await wait_for(lambda: not is_pid_alive(child_pid))
