"""
Transcoder process supervisor.

Owns one transcoder subprocess for one (stream, delivery mode) pair, keeps it
alive with backoff restarts and reports what happens to it as events on the
owner's queue.
"""

import asyncio
import enum
import logging
import re
import signal as signal_module
import time
from typing import Optional

from .config import StreamingConfig
from .events import Data, Exited, Failed, Restarting, Started, SupervisorEvent, VideoSize
from .logs import TranscoderLogManager, classify_line, log_manager as default_log_manager
from ..sentry import TracingContext, capture_exception, capture_message

logger = logging.getLogger(__name__)

# Exit code reported when the transcoder could not be spawned at all
EXIT_CODE_SPAWN_FAILED = 127

CHUNK_SIZE = 64 * 1024
MAX_STDERR_LINE = 4096

# Progress lines ("frame=  250 fps= 25 ...") mean the transcoder is healthy
PROGRESS_MARKER = "frame="

_LINE_SPLIT = re.compile(r"[\r\n]+")
_PROGRESS_FRAME = re.compile(r"frame=\s*(\d+)")
_VIDEO_SIZE = re.compile(r"\b(\d{2,5})x(\d{2,5})\b")

_LOG_LEVELS = {
    "error": logging.ERROR,
    "warning": logging.WARNING,
    "info": logging.DEBUG,
}


class ProcessState(str, enum.Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    EXITED = "exited"  # clean exit (code 0), not restarted
    FAILED = "failed"  # gave up after too many consecutive failures


ACTIVE_STATES = frozenset({ProcessState.STARTING, ProcessState.RUNNING, ProcessState.RESTARTING})


def _describe_exit(event: Exited) -> str:
    if event.error:
        return f"spawn error: {event.error}"
    if event.signal:
        try:
            return f"signal {signal_module.Signals(event.signal).name}"
        except ValueError:
            return f"signal {event.signal}"
    return f"code {event.returncode}"


class TranscoderSupervisor:
    """
    Supervises one transcoder subprocess.

    ``start()`` and ``stop()`` only record intent and schedule work; spawn
    failures and exits come back later as ``Exited`` events, never as
    exceptions to the caller.

    Restart policy: an abnormal exit while the supervisor should be running
    schedules a restart after ``restart_delay * 2**(failures - 1)`` seconds,
    capped at ``restart_max_delay``. A run that lasted ``stable_run_seconds``
    resets the failure count. After ``max_consecutive_failures`` failures in a
    row the supervisor moves to FAILED and waits for an explicit ``start()``.
    """

    def __init__(
        self,
        stream_id: str,
        mode: str,
        args: list[str],
        events: asyncio.Queue,
        config: StreamingConfig,
        known_size: Optional[tuple[int, int]] = None,
        log_manager: TranscoderLogManager = default_log_manager,
    ):
        self.stream_id = stream_id
        self.mode = mode
        self.args = list(args)
        self.name = f"{stream_id}/{mode}"
        self.transcoder_path = config.transcoder_path

        self.restart_delay = config.restart_delay
        self.restart_max_delay = config.restart_max_delay
        self.max_consecutive_failures = config.max_consecutive_failures
        self.stable_run_seconds = config.stable_run_seconds
        self.stop_timeout = config.stop_timeout

        self.video_size: Optional[tuple[int, int]] = known_size
        self.restarts = 0
        self.consecutive_failures = 0
        self.last_exit_code: Optional[int] = None
        self.bytes_out = 0

        # Progress of the current run, parsed from "frame=" lines
        self.frames = 0
        self.last_progress_at: Optional[float] = None
        self.error_lines = 0

        self._events = events
        self._log_manager = log_manager
        self._state = ProcessState.STOPPED
        self._desired = False
        # Bumped by stop(); runs from an older generation never restart
        self._generation = 0
        self._process: Optional[asyncio.subprocess.Process] = None
        self._started_at: Optional[float] = None
        self._restart_handle: Optional[asyncio.TimerHandle] = None
        self._tasks: set[asyncio.Task] = set()
        self._live: set[asyncio.subprocess.Process] = set()

    # ==================== State ====================

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def is_running(self) -> bool:
        """True while the transcoder is wanted and not given up on."""
        return self._state in ACTIVE_STATES

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def uptime_seconds(self) -> float:
        if self._process is None or self._started_at is None:
            return 0.0
        return time.monotonic() - self._started_at

    @property
    def seconds_since_progress(self) -> Optional[float]:
        """Seconds since the last progress line, None before the first one."""
        if self.last_progress_at is None:
            return None
        return time.time() - self.last_progress_at

    def _set_state(self, state: ProcessState) -> None:
        if state != self._state:
            logger.debug(f"Transcoder {self.name}: {self._state.value} -> {state.value}")
            self._state = state

    def _post(self, event: SupervisorEvent) -> None:
        self._events.put_nowait(event)

    # ==================== Lifecycle ====================

    def start(self) -> bool:
        """
        Start the transcoder unless it is already wanted.

        Returns:
            True if a launch was scheduled, False if already running
        """
        if self.is_running:
            return False

        self._desired = True
        self.consecutive_failures = 0
        self._launch()
        return True

    def stop(self) -> bool:
        """
        Stop the transcoder: suppress restarts and send SIGTERM.

        Does not wait for the process to exit (see ``wait_closed``).

        Returns:
            True if the supervisor was active
        """
        was_active = self._desired or self._state != ProcessState.STOPPED
        self._desired = False
        self._generation += 1

        if self._restart_handle is not None:
            self._restart_handle.cancel()
            self._restart_handle = None

        for process in list(self._live):
            if process.returncode is None:
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass

        self._set_state(ProcessState.STOPPED)
        return was_active

    async def wait_closed(self, timeout: Optional[float] = None) -> None:
        """Wait for transcoder exit, killing it if it ignores SIGTERM."""
        timeout = self.stop_timeout if timeout is None else timeout

        for process in list(self._live):
            if process.returncode is not None:
                continue
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Transcoder {self.name} (PID {process.pid}) ignored SIGTERM, killing")
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

        pending = [task for task in self._tasks if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _launch(self) -> None:
        self._restart_handle = None
        if not self._desired:
            return

        self._set_state(ProcessState.STARTING)
        task = asyncio.create_task(self._run(self._generation), name=f"transcoder-{self.name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ==================== Process ====================

    async def _run(self, generation: int) -> None:
        try:
            with TracingContext(op="subprocess", description="spawn_transcoder") as span:
                process = await asyncio.create_subprocess_exec(
                    self.transcoder_path,
                    *self.args,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
                span.set_data("pid", process.pid)
        except (OSError, ValueError) as e:
            # ValueError: arguments the OS cannot take, such as an embedded NUL
            logger.error(f"Failed to spawn transcoder {self.name} ({self.transcoder_path}): {e}")
            capture_exception(e, stream_id=self.stream_id, mode=self.mode)
            await self._log_manager.add_log(
                self.stream_id, f"Failed to spawn transcoder: {e}", "error", self.mode
            )
            self._handle_exit(generation, Exited(EXIT_CODE_SPAWN_FAILED, error=str(e)), 0.0)
            return

        started_at = time.monotonic()
        self._live.add(process)

        if generation != self._generation:
            # stop() ran while the process was being spawned
            try:
                process.terminate()
            except ProcessLookupError:
                pass
        else:
            self._process = process
            self._started_at = started_at
            self.frames = 0
            self._set_state(ProcessState.RUNNING)
            self._post(Started(process.pid))
            logger.info(f"Transcoder {self.name} started (PID {process.pid})")
            await self._log_manager.add_log(
                self.stream_id, f"Transcoder started (PID {process.pid})", "info", self.mode
            )

        try:
            await asyncio.gather(
                self._read_stdout(process.stdout, generation),
                self._read_stderr(process.stderr, generation),
            )
            returncode = await process.wait()
        finally:
            self._live.discard(process)

        if self._process is process:
            self._process = None
            self._started_at = None

        signal_number = -returncode if returncode < 0 else None
        self._handle_exit(
            generation, Exited(returncode, signal_number), time.monotonic() - started_at
        )

    def _handle_exit(self, generation: int, event: Exited, uptime: float) -> None:
        self._post(event)

        reason = _describe_exit(event)

        if generation != self._generation or not self._desired:
            logger.info(f"Transcoder {self.name} exited with {reason} after stop")
            return

        self.last_exit_code = event.returncode

        if not event.abnormal:
            logger.info(f"Transcoder {self.name} finished with {reason}, not restarting")
            self._desired = False
            self._set_state(ProcessState.EXITED)
            return

        if uptime >= self.stable_run_seconds:
            self.consecutive_failures = 0
        self.consecutive_failures += 1

        if self.max_consecutive_failures and self.consecutive_failures >= self.max_consecutive_failures:
            logger.error(
                f"Transcoder {self.name} failed {self.consecutive_failures} times in a row "
                f"(last {reason}), giving up"
            )
            capture_message(
                f"Transcoder {self.name} gave up after {self.consecutive_failures} failures",
                level="error",
                stream_id=self.stream_id,
                mode=self.mode,
                exit_code=event.returncode,
            )
            self._desired = False
            self._set_state(ProcessState.FAILED)
            self._post(Failed(self.consecutive_failures))
            return

        delay = min(
            self.restart_delay * (2 ** (self.consecutive_failures - 1)),
            self.restart_max_delay,
        )
        self.restarts += 1
        logger.warning(
            f"Transcoder {self.name} exited with {reason} after {uptime:.0f}s, "
            f"restarting in {delay:g}s (attempt {self.consecutive_failures})"
        )
        self._set_state(ProcessState.RESTARTING)
        self._post(Restarting(self.consecutive_failures, delay))
        self._restart_handle = asyncio.get_running_loop().call_later(delay, self._launch)

    async def _read_stdout(self, stream: asyncio.StreamReader, generation: int) -> None:
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                return
            if generation == self._generation:
                self.bytes_out += len(chunk)
                self._post(Data(chunk))

    async def _read_stderr(self, stream: asyncio.StreamReader, generation: int) -> None:
        # Progress lines end in "\r" rather than "\n", so split on both
        pending = ""
        while True:
            chunk = await stream.read(CHUNK_SIZE)
            if not chunk:
                break
            lines = _LINE_SPLIT.split(pending + chunk.decode("utf-8", errors="replace"))
            pending = lines.pop()
            if len(pending) > MAX_STDERR_LINE:
                lines.append(pending)
                pending = ""
            for line in lines:
                await self._handle_stderr_line(line.strip(), generation)

        if pending.strip():
            await self._handle_stderr_line(pending.strip(), generation)

    async def _handle_stderr_line(self, line: str, generation: int) -> None:
        if not line:
            return

        if self.video_size is None and generation == self._generation:
            for match in _VIDEO_SIZE.finditer(line):
                width, height = int(match.group(1)), int(match.group(2))
                if 0 < width <= 0xFFFF and 0 < height <= 0xFFFF:
                    self.video_size = (width, height)
                    logger.info(f"Transcoder {self.name} source size {width}x{height}")
                    self._post(VideoSize(width, height))
                    break

        if PROGRESS_MARKER in line:
            match = _PROGRESS_FRAME.search(line)
            if match and generation == self._generation:
                self.frames = int(match.group(1))
                self.last_progress_at = time.time()
            return

        level = classify_line(line)
        if level == "error" and generation == self._generation:
            self.error_lines += 1
        logger.log(_LOG_LEVELS[level], f"[{self.name}] {line}")
        await self._log_manager.add_log(self.stream_id, line, level, self.mode)
