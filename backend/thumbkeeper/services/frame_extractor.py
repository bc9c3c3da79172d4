"""
Frame Extractor Service

Pulls a single still frame out of a video file with ffmpeg.

Each call runs one ffmpeg subprocess that:
- seeks to the requested offset
- emits exactly one frame
- encodes it as a high-quality JPEG (-q:v 2)
- scales it to THUMBNAIL_WIDTH keeping the aspect ratio

An attempt only counts as a success when ffmpeg exits 0 AND the output
file exists AND is larger than MIN_FRAME_BYTES. Tiny outputs are usually
black or corrupt frames and are deleted.

All failures are reported as False rather than raised: the caller
moves on to the next offset. Cancelling the awaiting task kills the
running ffmpeg process before the cancellation propagates.
"""
import asyncio
import logging
import os
import subprocess
import time
from typing import Optional, Tuple

from thumbkeeper.core.config import settings
from thumbkeeper.core.metrics import record_extraction_attempt

logger = logging.getLogger(__name__)


class FrameExtractor:
    """
    Runs ffmpeg/ffprobe subprocesses for single-frame extraction.

    Attributes:
        ffmpeg_path: ffmpeg executable
        ffprobe_path: ffprobe executable
        width: Target output width in pixels
        min_bytes: Outputs at or below this size are rejected
        timeout: Per-attempt subprocess budget in seconds
    """

    def __init__(
        self,
        ffmpeg_path: Optional[str] = None,
        ffprobe_path: Optional[str] = None,
        width: Optional[int] = None,
        min_bytes: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.ffmpeg_path = ffmpeg_path or settings.FFMPEG_PATH
        self.ffprobe_path = ffprobe_path or settings.FFPROBE_PATH
        self.width = width or settings.THUMBNAIL_WIDTH
        self.min_bytes = min_bytes if min_bytes is not None else settings.MIN_FRAME_BYTES
        self.timeout = timeout or settings.EXTRACTION_TIMEOUT_SECONDS

        logger.info(
            "FrameExtractor initialized",
            extra={
                "event_type": "frame_extractor_init",
                "width": self.width,
                "min_bytes": self.min_bytes,
                "timeout_seconds": self.timeout,
            }
        )

    def build_command(self, source_path: str, output_path: str, offset: float) -> list:
        return [
            self.ffmpeg_path,
            "-y",
            "-ss", f"{offset:g}",
            "-i", source_path,
            "-frames:v", "1",
            "-q:v", "2",
            "-vf", f"scale={self.width}:-1",
            "-f", "image2",
            output_path,
        ]

    async def _run(self, cmd: list) -> Tuple[int, bytes]:
        """
        Run a subprocess under the per-attempt timeout.

        The child is killed whenever the wait ends without it exiting:
        on timeout and when the awaiting task is cancelled.

        Returns:
            (returncode, stderr)

        Raises:
            asyncio.TimeoutError: The process exceeded the budget
        """
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        finally:
            if process.returncode is None:
                await _kill(process)
        return process.returncode, stderr or b""

    async def extract(self, source_path: str, output_path: str, offset: float) -> bool:
        """
        Extract one frame at `offset` seconds into `output_path`.

        Args:
            source_path: Local video file
            output_path: Destination JPEG path (overwritten)
            offset: Seek position in seconds

        Returns:
            True if a usable frame was written, False otherwise
        """
        start = time.monotonic()
        cmd = self.build_command(source_path, output_path, offset)

        try:
            returncode, stderr = await self._run(cmd)
        except asyncio.TimeoutError:
            duration = time.monotonic() - start
            self._discard(output_path)
            record_extraction_attempt("timeout", duration)
            logger.warning(
                f"Frame extraction timed out at offset {offset}s",
                extra={
                    "event_type": "frame_extraction_timeout",
                    "source_path": source_path,
                    "offset_seconds": offset,
                    "timeout_seconds": self.timeout,
                }
            )
            return False
        except OSError as e:
            # Binary missing or not executable
            record_extraction_attempt("process_error")
            logger.error(
                f"Could not start ffmpeg: {e}",
                extra={
                    "event_type": "frame_extraction_spawn_failed",
                    "ffmpeg_path": self.ffmpeg_path,
                    "error_message": str(e),
                }
            )
            return False

        duration = time.monotonic() - start

        if returncode != 0:
            self._discard(output_path)
            record_extraction_attempt("process_error", duration)
            logger.debug(
                f"ffmpeg exited with code {returncode} at offset {offset}s",
                extra={
                    "event_type": "frame_extraction_failed",
                    "source_path": source_path,
                    "offset_seconds": offset,
                    "returncode": returncode,
                    "stderr": stderr.decode(errors="replace")[-500:],
                }
            )
            return False

        if not os.path.isfile(output_path):
            record_extraction_attempt("missing_output", duration)
            logger.debug(
                f"ffmpeg produced no output at offset {offset}s",
                extra={
                    "event_type": "frame_extraction_no_output",
                    "source_path": source_path,
                    "offset_seconds": offset,
                }
            )
            return False

        size = os.path.getsize(output_path)
        if size <= self.min_bytes:
            self._discard(output_path)
            record_extraction_attempt("undersized", duration)
            logger.debug(
                f"Extracted frame too small ({size} bytes) at offset {offset}s",
                extra={
                    "event_type": "frame_extraction_undersized",
                    "source_path": source_path,
                    "offset_seconds": offset,
                    "size_bytes": size,
                    "min_bytes": self.min_bytes,
                }
            )
            return False

        record_extraction_attempt("success", duration)
        logger.debug(
            f"Extracted frame at offset {offset}s ({size} bytes)",
            extra={
                "event_type": "frame_extraction_success",
                "source_path": source_path,
                "offset_seconds": offset,
                "size_bytes": size,
                "duration_ms": round(duration * 1000),
            }
        )
        return True

    async def probe_duration(self, source_path: str) -> Optional[float]:
        """
        Read the clip duration with ffprobe.

        Returns:
            Duration in seconds, or None when it cannot be determined
        """
        cmd = [
            self.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "default=noprint_wrappers=1:nokey=1",
            source_path,
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as e:
            logger.debug(f"ffprobe unavailable: {e}", extra={"event_type": "duration_probe_failed"})
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.debug("ffprobe timed out", extra={"event_type": "duration_probe_failed"})
            return None
        finally:
            if process.returncode is None:
                await _kill(process)

        if process.returncode != 0:
            return None

        try:
            duration = float(stdout.decode().strip())
        except ValueError:
            return None
        return duration if duration > 0 else None

    @staticmethod
    def _discard(path: str) -> None:
        try:
            os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(
                f"Could not remove temporary frame {path}: {e}",
                extra={"event_type": "frame_cleanup_failed", "path": path}
            )


async def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()


def check_ffmpeg_available(ffmpeg_path: Optional[str] = None) -> Tuple[bool, str]:
    """
    Check if ffmpeg is available.

    Returns:
        Tuple of (available: bool, message: str)
    """
    path = ffmpeg_path or settings.FFMPEG_PATH
    try:
        result = subprocess.run(
            [path, "-version"],
            capture_output=True,
            timeout=5.0,
        )
        if result.returncode == 0:
            version_line = result.stdout.decode().split('\n')[0]
            return True, f"ffmpeg available: {version_line}"
        return False, f"ffmpeg returned error: {result.stderr.decode()[:100]}"
    except FileNotFoundError:
        return False, f"ffmpeg not found at {path}"
    except subprocess.TimeoutExpired:
        return False, "ffmpeg check timed out"
    except OSError as e:
        return False, f"Error checking ffmpeg: {e}"


# Global instance
_frame_extractor: Optional[FrameExtractor] = None


def get_frame_extractor() -> FrameExtractor:
    """
    Get the global frame extractor instance.

    Returns:
        FrameExtractor singleton
    """
    global _frame_extractor
    if _frame_extractor is None:
        _frame_extractor = FrameExtractor()
    return _frame_extractor


def reset_frame_extractor() -> None:
    """Reset the global frame extractor instance (for testing)."""
    global _frame_extractor
    _frame_extractor = None
