"""
Unit tests for FrameExtractor

ffmpeg/ffprobe are never executed: asyncio.create_subprocess_exec is
replaced by a fake process that writes an output file of a chosen size.
"""
import asyncio
import os
from unittest.mock import patch

import pytest

from thumbkeeper.services.frame_extractor import FrameExtractor, check_ffmpeg_available


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, output_path=None, output_size=0, returncode=0, stdout=b"", hang=False):
        self.output_path = output_path
        self.output_size = output_size
        self.returncode = None
        self._final_returncode = returncode
        self._stdout = stdout
        self._hang = hang
        self.killed = False

    async def communicate(self):
        if self._hang:
            await asyncio.sleep(60)
        if self.output_path and self.output_size:
            with open(self.output_path, "wb") as f:
                f.write(b"\xff\xd8\xff" + b"\x00" * (self.output_size - 3))
        self.returncode = self._final_returncode
        return self._stdout, b"ffmpeg log"

    def kill(self):
        self.killed = True

    async def wait(self):
        self.returncode = -9
        return self.returncode


@pytest.fixture
def extractor():
    return FrameExtractor(
        ffmpeg_path="ffmpeg",
        ffprobe_path="ffprobe",
        width=600,
        min_bytes=1024,
        timeout=5.0,
    )


@pytest.fixture
def output_path(tmp_path):
    return str(tmp_path / "frame.jpg")


def fake_exec(process):
    async def _exec(*cmd, **kwargs):
        if process.output_path is None and cmd[0] == "ffmpeg":
            process.output_path = cmd[-1]
        return process
    return _exec


class TestBuildCommand:

    def test_command_seeks_and_scales(self, extractor):
        cmd = extractor.build_command("/tmp/in.mov", "/tmp/out.jpg", 1.0)

        assert cmd[0] == "ffmpeg"
        assert cmd[cmd.index("-ss") + 1] == "1"
        assert cmd[cmd.index("-frames:v") + 1] == "1"
        assert cmd[cmd.index("-q:v") + 1] == "2"
        assert cmd[cmd.index("-vf") + 1] == "scale=600:-1"
        assert cmd[-1] == "/tmp/out.jpg"

    def test_fractional_offset(self, extractor):
        cmd = extractor.build_command("in.mov", "out.jpg", 0.5)
        assert cmd[cmd.index("-ss") + 1] == "0.5"


class TestExtract:

    @pytest.mark.asyncio
    async def test_success_above_threshold(self, extractor, output_path):
        process = FakeProcess(output_size=50000)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            result = await extractor.extract("in.mov", output_path, 1.0)

        assert result is True
        assert os.path.getsize(output_path) == 50000

    @pytest.mark.asyncio
    async def test_undersized_output_fails_and_is_deleted(self, extractor, output_path):
        process = FakeProcess(output_size=200)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            result = await extractor.extract("in.mov", output_path, 1.0)

        assert result is False
        assert not os.path.exists(output_path)

    @pytest.mark.asyncio
    async def test_output_exactly_at_threshold_fails(self, extractor, output_path):
        process = FakeProcess(output_size=1024)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            assert await extractor.extract("in.mov", output_path, 1.0) is False

    @pytest.mark.asyncio
    async def test_nonzero_exit_fails(self, extractor, output_path):
        process = FakeProcess(output_size=50000, returncode=1)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            result = await extractor.extract("in.mov", output_path, 1.0)

        assert result is False
        assert not os.path.exists(output_path)

    @pytest.mark.asyncio
    async def test_missing_output_fails(self, extractor, output_path):
        process = FakeProcess(output_size=0)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            assert await extractor.extract("in.mov", output_path, 1.0) is False

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, output_path):
        extractor = FrameExtractor(ffmpeg_path="ffmpeg", min_bytes=1024, timeout=0.05)
        process = FakeProcess(hang=True)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            result = await extractor.extract("in.mov", output_path, 1.0)

        assert result is False
        assert process.killed is True

    @pytest.mark.asyncio
    async def test_cancel_kills_process(self, extractor, output_path):
        process = FakeProcess(hang=True)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            task = asyncio.create_task(extractor.extract("in.mov", output_path, 1.0))
            await asyncio.sleep(0.05)
            task.cancel()

            with pytest.raises(asyncio.CancelledError):
                await task

        assert process.killed is True
        assert process.returncode == -9

    @pytest.mark.asyncio
    async def test_finished_process_is_not_killed(self, extractor, output_path):
        process = FakeProcess(output_size=50000)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            await extractor.extract("in.mov", output_path, 1.0)

        assert process.killed is False

    @pytest.mark.asyncio
    async def test_missing_binary_fails(self, extractor, output_path):
        with patch(
            "thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec",
            side_effect=FileNotFoundError("ffmpeg"),
        ):
            assert await extractor.extract("in.mov", output_path, 1.0) is False


class TestProbeDuration:

    @pytest.mark.asyncio
    async def test_parses_duration(self, extractor):
        process = FakeProcess(stdout=b"12.480000\n")

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            assert await extractor.probe_duration("in.mov") == pytest.approx(12.48)

    @pytest.mark.asyncio
    async def test_unparseable_output_returns_none(self, extractor):
        process = FakeProcess(stdout=b"N/A\n")

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            assert await extractor.probe_duration("in.mov") is None

    @pytest.mark.asyncio
    async def test_probe_failure_returns_none(self, extractor):
        process = FakeProcess(returncode=1)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            assert await extractor.probe_duration("in.mov") is None

    @pytest.mark.asyncio
    async def test_timeout_kills_ffprobe(self):
        extractor = FrameExtractor(ffprobe_path="ffprobe", timeout=0.05)
        process = FakeProcess(hang=True)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            assert await extractor.probe_duration("in.mov") is None

        assert process.killed is True

    @pytest.mark.asyncio
    async def test_cancel_kills_ffprobe(self, extractor):
        process = FakeProcess(hang=True)

        with patch("thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec", side_effect=fake_exec(process)):
            task = asyncio.create_task(extractor.probe_duration("in.mov"))
            await asyncio.sleep(0.05)
            task.cancel()

            with pytest.raises(asyncio.CancelledError):
                await task

        assert process.killed is True

    @pytest.mark.asyncio
    async def test_missing_ffprobe_returns_none(self, extractor):
        with patch(
            "thumbkeeper.services.frame_extractor.asyncio.create_subprocess_exec",
            side_effect=FileNotFoundError("ffprobe"),
        ):
            assert await extractor.probe_duration("in.mov") is None


class TestCheckFfmpeg:

    def test_missing_binary(self):
        available, message = check_ffmpeg_available("/nonexistent/ffmpeg-binary")
        assert available is False
        assert "not found" in message
