"""
Tests for the running-instance advertisement file.
"""

import os
import subprocess
import sys

from wok3.core.advertisement import (
    get_advertisement_path,
    read_advertisement,
    remove_advertisement,
    write_advertisement,
)


def dead_pid() -> int:
    """Pid of a process that has already exited."""
    process = subprocess.Popen([sys.executable, "-c", "pass"])
    process.wait()
    return process.pid


class TestAdvertisement:
    """Tests for write/read/remove of .wok3/server.json."""

    def test_round_trip(self, tmp_path):
        write_advertisement(tmp_path, "http://127.0.0.1:6969")

        ad = read_advertisement(tmp_path)
        assert ad is not None
        assert ad.pid == os.getpid()
        assert ad.url == "http://127.0.0.1:6969"

    def test_missing_file(self, tmp_path):
        assert read_advertisement(tmp_path) is None

    def test_corrupt_file(self, tmp_path):
        path = get_advertisement_path(tmp_path)
        path.parent.mkdir(parents=True)
        path.write_text("{garbage")
        assert read_advertisement(tmp_path) is None

    def test_stale_pid(self, tmp_path):
        write_advertisement(tmp_path, "http://127.0.0.1:6969", pid=dead_pid())
        assert read_advertisement(tmp_path) is None

    def test_only_owner_removes(self, tmp_path):
        write_advertisement(tmp_path, "http://127.0.0.1:6969")

        assert remove_advertisement(tmp_path, pid=os.getpid() + 100000) is False
        assert get_advertisement_path(tmp_path).exists()

        assert remove_advertisement(tmp_path) is True
        assert not get_advertisement_path(tmp_path).exists()

    def test_remove_missing_file(self, tmp_path):
        assert remove_advertisement(tmp_path) is False
