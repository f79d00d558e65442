"""
Process Pipeline Runner.

Starts a chain of one or two child processes (extractor -> optional
post-processor), connects each stage's stdout to the next stage's stdin
through an OS pipe and exposes the final stage's stdout as an asyncio
StreamReader. Stages are wired by the kernel, so a slow reader slows the
whole chain instead of buffering the stream in memory.

Every stage's stderr is drained by its own task into a bounded line
buffer, which keeps a chatty tool from blocking on a full pipe and gives
callers something to log when a stage dies.
"""

import asyncio
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Optional

from config import settings

logger = logging.getLogger(__name__)

MAX_STAGES = 2


class LaunchFailed(Exception):
    """A pipeline stage could not be started (tool missing, permission denied...)."""

    def __init__(self, executable: str, reason: str):
        self.executable = executable
        self.reason = reason
        super().__init__(f"Failed to launch {executable}: {reason}")


@dataclass(frozen=True)
class StageSpec:
    argv: List[str]

    @property
    def executable(self) -> str:
        return self.argv[0]


@dataclass
class PipelineSpec:
    stages: List[StageSpec]
    # When False the last stage's stdout goes to /dev/null (recorders write their own file)
    capture_output: bool = True
    label: str = "pipeline"

    def __post_init__(self):
        if not 1 <= len(self.stages) <= MAX_STAGES:
            raise ValueError(
                f"A pipeline needs 1 to {MAX_STAGES} stages, got {len(self.stages)}")
        for stage in self.stages:
            if not stage.argv:
                raise ValueError("Pipeline stage has an empty argument vector")

    def describe(self) -> str:
        return " | ".join(" ".join(stage.argv) for stage in self.stages)


@dataclass
class _StageState:
    spec: StageSpec
    process: asyncio.subprocess.Process
    stderr_lines: Deque[str] = field(default_factory=deque)
    stderr_task: Optional[asyncio.Task] = None


class PipelineHandle:
    """A running pipeline. Call teardown() exactly when you are done; it is idempotent."""

    def __init__(self, spec: PipelineSpec, processes: List[asyncio.subprocess.Process],
                 terminate_grace: float, stderr_tail: int):
        self.spec = spec
        self.label = spec.label
        self.terminate_grace = terminate_grace
        self._stages = [
            _StageState(spec=stage_spec, process=process,
                        stderr_lines=deque(maxlen=stderr_tail))
            for stage_spec, process in zip(spec.stages, processes)
        ]
        self._teardown_lock = asyncio.Lock()
        self._torn_down = False

        for index, stage in enumerate(self._stages):
            if stage.process.stderr:
                stage.stderr_task = asyncio.create_task(
                    self._drain_stderr(index, stage))

    @property
    def processes(self) -> List[asyncio.subprocess.Process]:
        return [stage.process for stage in self._stages]

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        return self._stages[-1].process.stdout

    @property
    def pids(self) -> List[int]:
        return [stage.process.pid for stage in self._stages]

    @property
    def returncodes(self) -> List[Optional[int]]:
        return [stage.process.returncode for stage in self._stages]

    @property
    def is_running(self) -> bool:
        return all(code is None for code in self.returncodes)

    @property
    def has_exited(self) -> bool:
        """True as soon as any stage has exited."""
        return any(code is not None for code in self.returncodes)

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    @property
    def exit_code(self) -> Optional[int]:
        """First non-zero stage exit code, else the last stage's code."""
        codes = self.returncodes
        for code in codes:
            if code not in (None, 0):
                return code
        return codes[-1]

    def diagnostics(self, stage: int = 0) -> str:
        return "\n".join(self._stages[stage].stderr_lines)

    async def wait(self) -> Optional[int]:
        """Wait for every stage to exit and return exit_code."""
        await asyncio.gather(*(stage.process.wait() for stage in self._stages))
        return self.exit_code

    async def _drain_stderr(self, index: int, stage: _StageState):
        # Read raw chunks rather than readline() so a very long line can't
        # raise LimitOverrunError and kill the drain.
        buf = b""
        tool = os.path.basename(stage.spec.executable)
        try:
            while True:
                chunk = await stage.process.stderr.read(4096)
                if not chunk:
                    break
                buf += chunk
                while b"\n" in buf:
                    line, buf = buf.split(b"\n", 1)
                    line_str = line.decode("utf-8", errors="ignore").strip()
                    if line_str:
                        stage.stderr_lines.append(line_str)
                        logger.debug(f"{tool} [{self.label}]: {line_str}")
            tail = buf.decode("utf-8", errors="ignore").strip()
            if tail:
                stage.stderr_lines.append(tail)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(
                f"Error reading stderr of stage {index} for {self.label}: {e}")

    async def teardown(self):
        """Terminate every stage that is still alive and release the drains."""
        async with self._teardown_lock:
            if self._torn_down:
                return
            self._torn_down = True

            await terminate_processes(self.processes, self.terminate_grace, self.label)

            tasks = [s.stderr_task for s in self._stages if s.stderr_task]
            if tasks:
                # Give the drains a moment to pick up the final lines
                _, pending = await asyncio.wait(tasks, timeout=1.0)
                for task in pending:
                    task.cancel()
                    try:
                        await task
                    except asyncio.CancelledError:
                        pass

            logger.debug(
                f"Pipeline {self.label} torn down, exit codes {self.returncodes}")


def signal_group(process: asyncio.subprocess.Process, sig: int) -> bool:
    """Send sig to the stage's whole process group. False if nothing is left in it."""
    # Each stage leads its own session, so its pid is also its process group id
    try:
        os.killpg(process.pid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Group id was reused by someone else's process; fall back to the stage itself
        if process.returncode is None:
            process.send_signal(sig)
            return True
        return False


async def terminate_processes(processes: List[asyncio.subprocess.Process],
                              grace: float, label: str = "pipeline"):
    """
    SIGTERM every stage's process group, SIGKILL whatever is left after the
    grace period. Tools that spawn helpers of their own (streamlink's ffmpeg
    muxer, for one) are signalled along with the stage.
    """
    alive = [p for p in processes if p.returncode is None]
    for process in processes:
        signal_group(process, signal.SIGTERM)

    if alive:
        try:
            await asyncio.wait_for(
                asyncio.gather(*(p.wait() for p in alive)), timeout=grace)
        except asyncio.TimeoutError:
            for process in alive:
                if process.returncode is None:
                    logger.warning(
                        f"Process {process.pid} of {label} did not terminate gracefully, killing")
            for process in alive:
                signal_group(process, signal.SIGKILL)
            await asyncio.gather(*(p.wait() for p in alive))

    # Helpers that outlived their stage leader would otherwise be orphaned
    for process in processes:
        if signal_group(process, signal.SIGKILL):
            logger.debug(f"Killed leftover processes in group {process.pid} of {label}")


async def start_pipeline(spec: PipelineSpec,
                         terminate_grace: Optional[float] = None,
                         stderr_tail: Optional[int] = None) -> PipelineHandle:
    """
    Start every stage of spec in order and return a handle to the running chain.

    Raises LaunchFailed if any stage cannot be started; stages that were
    already running are torn down first.
    """
    if terminate_grace is None:
        terminate_grace = settings.PROCESS_TERMINATE_GRACE
    if stderr_tail is None:
        stderr_tail = settings.STDERR_TAIL_LINES

    processes: List[asyncio.subprocess.Process] = []
    upstream_fd: Optional[int] = None
    last = len(spec.stages) - 1

    logger.info(f"Starting {spec.label}: {spec.describe()}")

    try:
        for index, stage in enumerate(spec.stages):
            downstream_fd = write_fd = None
            if index < last:
                downstream_fd, write_fd = os.pipe()
                stdout = write_fd
            elif spec.capture_output:
                stdout = asyncio.subprocess.PIPE
            else:
                stdout = asyncio.subprocess.DEVNULL

            try:
                process = await asyncio.create_subprocess_exec(
                    *stage.argv,
                    stdin=upstream_fd if upstream_fd is not None else asyncio.subprocess.DEVNULL,
                    stdout=stdout,
                    stderr=asyncio.subprocess.PIPE,
                    # Own process group, so teardown reaches helpers the tool spawns
                    start_new_session=True
                )
            except (OSError, ValueError) as e:
                if downstream_fd is not None:
                    os.close(downstream_fd)
                raise LaunchFailed(stage.executable, str(e)) from e
            finally:
                # The children hold their own copies of the pipe ends
                if upstream_fd is not None:
                    os.close(upstream_fd)
                    upstream_fd = None
                if write_fd is not None:
                    os.close(write_fd)

            processes.append(process)
            upstream_fd = downstream_fd

    except LaunchFailed as e:
        logger.error(f"{spec.label}: {e}")
        if processes:
            await terminate_processes(processes, terminate_grace, spec.label)
        raise

    handle = PipelineHandle(spec, processes, terminate_grace, stderr_tail)
    logger.info(f"{spec.label} started with PIDs {handle.pids}")
    return handle
