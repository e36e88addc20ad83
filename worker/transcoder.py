"""
HLS transcoder: one ffmpeg run per rendition, then a master playlist.

Renditions are encoded strictly one after another. The first failing rendition
aborts the run and no master playlist is written. Retrying is the queue's job,
never the transcoder's.
"""

import asyncio
import json
import logging
import math
import time
from collections import deque
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from config import (
    FFMPEG_PATH,
    FFMPEG_TIMEOUT_BASE_MULTIPLIER,
    FFMPEG_TIMEOUT_MAXIMUM,
    FFMPEG_TIMEOUT_MINIMUM,
    FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS,
    FFPROBE_PATH,
    HLS_SEGMENT_DURATION,
)
from pipeline.errors import TranscodeProcessError
from pipeline.metrics import RENDITION_DURATION_SECONDS
from pipeline.models import Rendition, RenditionProfile, TranscodeResult

logger = logging.getLogger(__name__)

RENDITION_PROFILES: Tuple[RenditionProfile, ...] = (
    RenditionProfile(height=240, bitrate="400k", max_rate="400k", buffer_size="800k"),
    RenditionProfile(height=360, bitrate="800k", max_rate="800k", buffer_size="1600k"),
    RenditionProfile(height=480, bitrate="1400k", max_rate="1400k", buffer_size="2800k"),
    RenditionProfile(height=720, bitrate="2800k", max_rate="2800k", buffer_size="5600k"),
    RenditionProfile(height=1080, bitrate="5000k", max_rate="5000k", buffer_size="10000k"),
)

# Advertised bandwidth per rendition label (bits/s)
BANDWIDTH_MAP: Dict[str, int] = {
    "240p": 400000,
    "360p": 800000,
    "480p": 1400000,
    "720p": 2800000,
    "1080p": 5000000,
}
DEFAULT_BANDWIDTH = 1000000

MASTER_PLAYLIST_NAME = "master.m3u8"

# Sanity limit for probed durations (7 days)
MAX_DURATION_SECONDS = 7 * 24 * 60 * 60

# Log encoder progress every this many percent
PROGRESS_LOG_STEP = 25

# Trailing stderr lines kept from a failed ffmpeg run, and the longest line kept
STDERR_TAIL_LINES = 10
STDERR_LINE_MAX_BYTES = 512

ProgressCallback = Callable[[str, int], Awaitable[None]]


def calculate_ffmpeg_timeout(duration: float, height: int = 1080) -> float:
    """
    Calculate the timeout for one rendition based on source duration and resolution.

    Higher resolutions take longer to encode, so timeouts scale accordingly.

    Args:
        duration: Source duration in seconds
        height: Target rendition height

    Returns:
        Timeout in seconds, clamped between min and max values
    """
    # Unknown resolutions get the largest multiplier
    resolution_multiplier = FFMPEG_TIMEOUT_RESOLUTION_MULTIPLIERS.get(height, 2.0)
    timeout = duration * FFMPEG_TIMEOUT_BASE_MULTIPLIER * resolution_multiplier
    return max(FFMPEG_TIMEOUT_MINIMUM, min(timeout, FFMPEG_TIMEOUT_MAXIMUM))


def rendition_width(height: int) -> int:
    """Width of a rendition assuming a 16:9 source, rounded half up."""
    return int(math.floor(height * 16 / 9 + 0.5))


def build_rendition_command(
    input_file: Path,
    output_dir: Path,
    profile: RenditionProfile,
    ffmpeg_path: str = FFMPEG_PATH,
    segment_duration: int = HLS_SEGMENT_DURATION,
) -> List[str]:
    """ffmpeg argument list producing ``<label>.m3u8`` and ``<label>_%03d.ts`` in output_dir."""
    label = profile.label
    return [
        ffmpeg_path,
        "-y",
        "-i",
        str(input_file),
        "-vf",
        f"scale=-2:{profile.height}",
        "-c:a",
        "aac",
        "-ar",
        "48000",
        "-b:a",
        "128k",
        "-c:v",
        "h264",
        "-profile:v",
        "main",
        "-crf",
        "20",
        "-preset",
        "veryfast",
        "-maxrate",
        profile.max_rate,
        "-bufsize",
        profile.buffer_size,
        "-hls_time",
        str(segment_duration),
        "-hls_segment_filename",
        str(output_dir / f"{label}_%03d.ts"),
        "-hls_playlist_type",
        "vod",
        "-hls_flags",
        "independent_segments",
        "-progress",
        "pipe:1",
        "-nostats",
        str(output_dir / f"{label}.m3u8"),
    ]


def build_master_playlist(renditions: Sequence[Rendition]) -> str:
    """Master playlist text listing renditions in encode order."""
    content = "#EXTM3U\n#EXT-X-VERSION:3\n\n"
    for rendition in renditions:
        height = int(rendition.label.rstrip("p"))
        bandwidth = BANDWIDTH_MAP.get(rendition.label, DEFAULT_BANDWIDTH)
        content += f"#EXT-X-STREAM-INF:BANDWIDTH={bandwidth},RESOLUTION={rendition_width(height)}x{height}\n"
        content += f"{rendition.playlist_path.name}\n\n"
    return content


async def generate_master_playlist(output_dir: Path, renditions: Sequence[Rendition]) -> Path:
    master_path = output_dir / MASTER_PLAYLIST_NAME
    content = build_master_playlist(renditions)
    await asyncio.to_thread(master_path.write_text, content)
    return master_path


def validate_duration(duration: Any) -> float:
    """
    Validate and normalize a duration reported by ffprobe.

    Raises:
        ValueError: If duration is missing, not numeric, or out of range
    """
    if duration is None:
        raise ValueError("Could not determine video duration")

    if not isinstance(duration, (int, float)):
        try:
            duration = float(duration)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not convert duration to float: {type(duration).__name__}") from e

    if math.isnan(duration) or math.isinf(duration):
        raise ValueError(f"Invalid duration value: {duration}")
    if duration <= 0:
        raise ValueError(f"Invalid duration: {duration} seconds (must be positive)")
    if duration > MAX_DURATION_SECONDS:
        raise ValueError(f"Duration too long: {duration} seconds (max {MAX_DURATION_SECONDS})")

    return float(duration)


async def probe_duration(input_path: Path, ffprobe_path: str = FFPROBE_PATH, timeout: float = 30.0) -> float:
    """
    Get the source duration using ffprobe.

    Raises:
        RuntimeError: If ffprobe fails or times out
        ValueError: If the reported duration is invalid
    """
    cmd = [ffprobe_path, "-v", "quiet", "-print_format", "json", "-show_format", str(input_path)]
    process = await asyncio.create_subprocess_exec(*cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise RuntimeError(f"ffprobe timed out after {timeout}s")

    if process.returncode != 0:
        raise RuntimeError(f"ffprobe failed: {stderr.decode('utf-8', errors='ignore').strip()}")

    try:
        data = json.loads(stdout.decode("utf-8", errors="ignore"))
    except ValueError as e:
        raise RuntimeError(f"ffprobe returned invalid JSON: {e}") from e
    return validate_duration(data.get("format", {}).get("duration"))


async def cleanup_ffmpeg_process(process: asyncio.subprocess.Process, context: str = "FFmpeg") -> None:
    """
    Kill an ffmpeg subprocess if it is still running and reap it.

    The process may exit between checking returncode and calling kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Process already terminated
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_ffmpeg(
    cmd: List[str],
    duration: float,
    timeout: float,
    progress_callback: Optional[Callable[[int], Awaitable[None]]] = None,
    context: str = "FFmpeg",
) -> Tuple[bool, Optional[str]]:
    """
    Run an ffmpeg command with a timeout and progress tracking.

    Progress is parsed from ``out_time_ms=`` lines written by ``-progress pipe:1``.
    A timeout killer runs alongside the process; killing the process closes
    stdout, which ends the progress reader. stderr is drained concurrently so
    the pipe never fills; only its last STDERR_TAIL_LINES lines are kept and
    reported when the process fails.

    Args:
        cmd: ffmpeg command as list of arguments
        duration: Source duration in seconds (0 disables progress percentages)
        timeout: Maximum run time in seconds
        progress_callback: Optional async callback receiving 0-100
        context: Description for logging

    Returns:
        (success, error_message) where error_message is None on success

    Raises:
        FileNotFoundError: If the ffmpeg binary does not exist
    """
    process = await asyncio.create_subprocess_exec(
        *cmd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )

    last_progress = 0
    stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
    start_time = asyncio.get_running_loop().time()
    timed_out = False

    async def read_progress():
        nonlocal last_progress
        while True:
            line = await process.stdout.readline()
            if not line:
                break

            line_str = line.decode("utf-8", errors="ignore").strip()
            if not line_str.startswith("out_time_ms="):
                continue
            try:
                current_seconds = int(line_str.split("=")[1]) / 1000000.0
            except (ValueError, IndexError):
                # Malformed progress line (e.g. "N/A")
                continue
            if duration > 0:
                progress = min(100, int(current_seconds / duration * 100))
                if progress > last_progress:
                    last_progress = progress
                    if progress_callback:
                        await progress_callback(progress)

    async def read_stderr():
        partial = b""
        while True:
            chunk = await process.stderr.read(4096)
            if not chunk:
                break
            lines = (partial + chunk).split(b"\n")
            partial = lines.pop()[-STDERR_LINE_MAX_BYTES:]
            stderr_tail.extend(line[-STDERR_LINE_MAX_BYTES:] for line in lines if line.strip())
        if partial.strip():
            stderr_tail.append(partial)

    async def timeout_killer():
        nonlocal timed_out
        await asyncio.sleep(timeout)
        timed_out = True
        elapsed = asyncio.get_running_loop().time() - start_time
        logger.warning(f"{context} exceeded {timeout:.0f}s limit (ran for {elapsed:.0f}s), killing")
        try:
            process.kill()
        except ProcessLookupError:
            pass

    timeout_task = asyncio.create_task(timeout_killer())
    try:
        await asyncio.gather(read_progress(), read_stderr())
        await process.wait()
    finally:
        timeout_task.cancel()
        try:
            await timeout_task
        except asyncio.CancelledError:
            pass
        await cleanup_ffmpeg_process(process, context)

    if timed_out:
        elapsed = asyncio.get_running_loop().time() - start_time
        return False, f"{context} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)"

    if process.returncode != 0:
        tail = " | ".join(line.decode("utf-8", errors="replace").strip() for line in stderr_tail)
        if tail:
            logger.warning(f"{context} stderr tail: {tail}")
            return False, f"{context} exited with code {process.returncode}: {tail}"
        return False, f"{context} exited with code {process.returncode}"

    return True, None


class Transcoder:
    """Encodes one source file into the fixed HLS rendition ladder."""

    def __init__(
        self,
        profiles: Sequence[RenditionProfile] = RENDITION_PROFILES,
        ffmpeg_path: str = FFMPEG_PATH,
        ffprobe_path: str = FFPROBE_PATH,
        segment_duration: int = HLS_SEGMENT_DURATION,
    ) -> None:
        self.profiles = tuple(profiles)
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.segment_duration = segment_duration

    async def _probe(self, input_file: Path, entity_id: str) -> float:
        """Source duration, or 0 when it cannot be determined."""
        try:
            return await probe_duration(input_file, self.ffprobe_path)
        except (RuntimeError, ValueError, OSError) as e:
            logger.warning(f"[{entity_id}] Could not probe duration ({e}), using maximum encode timeout")
            return 0.0

    async def run(
        self,
        input_file: Path,
        output_dir: Path,
        entity_id: str,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> TranscodeResult:
        """
        Encode every rendition, then write the master playlist.

        Raises:
            TranscodeProcessError: On the first rendition that fails, times
                out, or when ffmpeg is not installed
        """
        input_file = Path(input_file)
        output_dir = Path(output_dir)
        await asyncio.to_thread(output_dir.mkdir, parents=True, exist_ok=True)

        duration = await self._probe(input_file, entity_id)
        renditions: List[Rendition] = []

        for profile in self.profiles:
            label = profile.label
            cmd = build_rendition_command(input_file, output_dir, profile, self.ffmpeg_path, self.segment_duration)
            timeout = calculate_ffmpeg_timeout(duration, profile.height) if duration > 0 else FFMPEG_TIMEOUT_MAXIMUM
            logged_step = 0

            async def on_progress(percent: int, label: str = label) -> None:
                nonlocal logged_step
                if percent >= logged_step + PROGRESS_LOG_STEP:
                    logged_step = percent - percent % PROGRESS_LOG_STEP
                    logger.info(f"[{entity_id}] {label}: {percent}%")
                if progress_callback:
                    await progress_callback(label, percent)

            logger.info(f"[{entity_id}] Transcoding {label} ({profile.bitrate})")
            started = time.monotonic()
            try:
                success, error = await run_ffmpeg(cmd, duration, timeout, on_progress, context=f"ffmpeg {label}")
            except FileNotFoundError as e:
                raise TranscodeProcessError(
                    f"ffmpeg not found at {self.ffmpeg_path!r}: {e}", entity_id=entity_id, rendition=label
                ) from e
            if not success:
                raise TranscodeProcessError(
                    f"Failed to transcode {label}: {error}", entity_id=entity_id, rendition=label
                )

            playlist_path = output_dir / f"{label}.m3u8"
            if not await asyncio.to_thread(playlist_path.exists):
                raise TranscodeProcessError(
                    f"ffmpeg finished but {playlist_path.name} is missing", entity_id=entity_id, rendition=label
                )

            elapsed = time.monotonic() - started
            RENDITION_DURATION_SECONDS.labels(rendition=label).observe(elapsed)
            renditions.append(Rendition(label=label, bitrate=profile.bitrate, playlist_path=playlist_path))
            logger.info(f"[{entity_id}] {label} complete in {elapsed:.1f}s")

        master_path = await generate_master_playlist(output_dir, renditions)
        logger.info(f"[{entity_id}] Master playlist written with {len(renditions)} renditions")
        return TranscodeResult(output_dir=output_dir, master_playlist_path=master_path, renditions=renditions)
