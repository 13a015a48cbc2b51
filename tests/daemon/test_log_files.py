"""Tests for reading tunnel log files."""

import asyncio

from cftunnel.daemon.logs import follow, tail


class TestTail:
    def test_last_lines(self, tmp_path):
        path = tmp_path / "myapp.log"
        path.write_text("".join(f"line {i}\n" for i in range(100)))

        assert tail(path, 3) == ["line 97", "line 98", "line 99"]

    def test_missing_file(self, tmp_path):
        assert tail(tmp_path / "nope.log") == []

    def test_zero_lines(self, tmp_path):
        path = tmp_path / "myapp.log"
        path.write_text("line\n")

        assert tail(path, 0) == []


def append(path, text):
    with open(path, "a") as f:
        f.write(text)


class TestFollow:
    """Lines written before ``follow`` starts are skipped; later ones are yielded."""

    def test_yields_appended_lines(self, tmp_path):
        path = tmp_path / "myapp.log"
        path.write_text("old\n")

        async def scenario():
            lines = follow(path, interval=0.01)
            pending = asyncio.ensure_future(anext(lines))
            await asyncio.sleep(0.05)
            append(path, "new 1\nnew ")
            first = await asyncio.wait_for(pending, timeout=2)
            append(path, "2\n")
            second = await asyncio.wait_for(anext(lines), timeout=2)
            await lines.aclose()
            return first, second

        assert asyncio.run(scenario()) == ("new 1", "new 2")

    def test_waits_for_file_and_handles_truncation(self, tmp_path):
        path = tmp_path / "later.log"

        async def scenario():
            lines = follow(path, interval=0.01)
            pending = asyncio.ensure_future(anext(lines))
            await asyncio.sleep(0.05)
            path.write_text("created\n")
            first = await asyncio.wait_for(pending, timeout=2)

            pending = asyncio.ensure_future(anext(lines))
            path.write_text("")
            await asyncio.sleep(0.05)
            path.write_text("after truncate\n")
            second = await asyncio.wait_for(pending, timeout=2)
            await lines.aclose()
            return first, second

        assert asyncio.run(scenario()) == ("created", "after truncate")
