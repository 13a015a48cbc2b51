"""Tests for the new release notice."""

import asyncio
import json
import sys
from unittest.mock import patch

import httpx
import pytest

from cftunnel.common.exceptions import UpdateCheckError
from cftunnel.releases import (
    CHECK_INTERVAL,
    PYPI_URL,
    fetch_latest_version,
    is_newer,
    parse_version,
    pending_notice,
    read_cache,
    refresh_latest_version,
    upgrade_command,
    write_cache,
)


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "update-check.json"


def pypi(version="0.3.0", status=200, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(request)
        return httpx.Response(status, json={"info": {"version": version}})

    return httpx.MockTransport(handler)


class TestVersions:
    """Test version comparison."""

    def test_parse_version(self):
        assert parse_version("0.7.1") == (0, 7, 1)
        assert parse_version("1.0") == (1, 0, 0)
        assert parse_version("v2.1.3") == (2, 1, 3)
        assert parse_version("1.0.0rc1") == (1, 0, 0)

    @pytest.mark.parametrize(
        "current, latest, newer",
        [
            ("0.7.1", "0.7.2", True),
            ("0.7.1", "0.8.0", True),
            ("0.7.1", "1.0.0", True),
            ("0.7.1", "0.7.1", False),
            ("0.7.1", "0.7.0", False),
        ],
    )
    def test_is_newer(self, current, latest, newer):
        assert is_newer(current, latest) is newer

    def test_upgrade_command(self):
        assert upgrade_command("/home/me/.local/pipx/venvs/cftunnel") == "pipx upgrade cftunnel"
        assert upgrade_command("/home/me/.venv") == "pip install -U cftunnel"


class TestFetch:
    """Test reading the latest release from PyPI."""

    def test_latest_version(self):
        seen = []

        assert asyncio.run(fetch_latest_version(transport=pypi("0.3.0", seen=seen))) == "0.3.0"
        assert str(seen[0].url) == PYPI_URL
        assert seen[0].headers["user-agent"].startswith("cftunnel/")

    def test_server_error(self):
        with pytest.raises(UpdateCheckError, match="Could not read the latest release"):
            asyncio.run(fetch_latest_version(transport=pypi(status=503)))

    def test_unexpected_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))

        with pytest.raises(UpdateCheckError) as excinfo:
            asyncio.run(fetch_latest_version(transport=transport))
        assert excinfo.value.kind == "update-check"

    def test_refresh_writes_cache(self, cache_path):
        assert asyncio.run(refresh_latest_version(cache_path, transport=pypi("0.4.0"))) == "0.4.0"

        assert read_cache(cache_path).latest_version == "0.4.0"

    def test_failed_refresh_keeps_cache(self, cache_path):
        write_cache(cache_path, "0.2.0", now=100.0)

        with pytest.raises(UpdateCheckError):
            asyncio.run(refresh_latest_version(cache_path, transport=pypi(status=500)))
        assert read_cache(cache_path).checked_at == 100.0


class TestPendingNotice:
    """Test the notice printed after commands."""

    @pytest.fixture(autouse=True)
    def popen(self):
        with patch("cftunnel.releases.subprocess.Popen") as popen:
            yield popen

    def test_newer_release_cached(self, cache_path, popen):
        write_cache(cache_path, "0.9.0", now=1000.0)

        notice = pending_notice(cache_path, current="0.1.0", now=1000.0 + CHECK_INTERVAL * 2)

        assert notice.startswith("cftunnel v0.9.0 available (current: v0.1.0). Run `")
        popen.assert_not_called()

    def test_fresh_cache_without_release(self, cache_path, popen):
        write_cache(cache_path, "0.1.0", now=1000.0)

        assert pending_notice(cache_path, current="0.1.0", now=1000.0 + 60) is None
        popen.assert_not_called()

    def test_stale_cache_starts_background_check(self, cache_path, popen):
        write_cache(cache_path, "0.1.0", now=1000.0)

        assert pending_notice(cache_path, current="0.1.0", now=1000.0 + CHECK_INTERVAL) is None
        popen.assert_called_once()
        assert popen.call_args.args[0] == [sys.executable, "-m", "cftunnel", "update"]
        assert popen.call_args.kwargs["start_new_session"] is True

    def test_missing_cache_starts_background_check(self, cache_path, popen):
        assert pending_notice(cache_path, current="0.1.0") is None
        popen.assert_called_once()

    def test_corrupt_cache_is_ignored(self, cache_path, popen):
        cache_path.write_text(json.dumps({"latest": "nope"}))

        assert read_cache(cache_path) is None
        assert pending_notice(cache_path, current="0.1.0") is None
        popen.assert_called_once()

    def test_background_check_failure_is_quiet(self, cache_path, popen):
        popen.side_effect = OSError("fork failed")

        assert pending_notice(cache_path, current="0.1.0") is None
