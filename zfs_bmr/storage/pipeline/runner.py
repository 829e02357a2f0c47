"""Run stream stages as one concurrently connected process chain.

Stage *i*'s stdout is the OS pipe feeding stage *i+1*'s stdin; no bytes pass
through Python except when the caller asks to capture the final output. The
parent closes its copies of every intermediate pipe end right after spawning,
so EOF and SIGPIPE propagate between stages exactly as in a shell pipeline.

A waiter thread per stage reaps its process. The first stage to exit
unsuccessfully causes the remaining stages to be terminated after a short
grace period, so a failure anywhere can never leave the chain blocked.
Failures are attributed to the first stage, in exit order, that failed on
its own. A stage only reacted to a failure elsewhere when it was killed by
SIGPIPE or by the supervisor, or when it failed after a stage downstream of
it had already exited (gpg exits 2 on a broken pipe instead of dying).
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Optional, Sequence

from zfs_bmr.app.session import Session
from zfs_bmr.logging import LoggerFactory, redact_command
from zfs_bmr.storage.exceptions import PipelineStageFailedError
from zfs_bmr.storage.pipeline.stages import PASSPHRASE_FD, StreamStage

log = LoggerFactory.for_pipeline()

STDERR_TAIL_LINES = 50
TERMINATE_GRACE_SECONDS = 1.0
KILL_TIMEOUT_SECONDS = 5.0
READ_CHUNK_SIZE = 65536


@dataclass(frozen=True)
class PipelineResult:
    bytes_written: int
    returncodes: tuple[Optional[int], ...]
    stopped_early: bool = False


class PipelineRun:
    """A started pipeline. Use ``wait`` for the outcome, ``is_alive`` for progress."""

    def __init__(
        self,
        stages: Sequence[StreamStage],
        processes: list[subprocess.Popen],
        output_path: Optional[Path] = None,
        stdout: Optional[IO[bytes]] = None,
    ):
        self.stages = list(stages)
        self.processes = processes
        self.output_path = output_path
        self.stdout = stdout
        self.done = threading.Event()
        self.started_at = time.monotonic()

        self._lock = threading.Lock()
        self._failed: dict[int, int] = {}
        self._exit_order: list[int] = []
        self._terminated: set[int] = set()
        self._stop_requested = False
        self._bytes_read = 0
        self._error: Optional[PipelineStageFailedError] = None
        self._result: Optional[PipelineResult] = None
        self._tails = [deque(maxlen=STDERR_TAIL_LINES) for _ in processes]

        self._drains = [
            threading.Thread(
                target=self._drain_stderr, args=(index,), name=f"stderr-{index}", daemon=True
            )
            for index in range(len(processes))
        ]
        self._waiters = [
            threading.Thread(
                target=self._wait_stage, args=(index,), name=f"wait-{index}", daemon=True
            )
            for index in range(len(processes))
        ]
        self._supervisor = threading.Thread(target=self._supervise, name="pipeline", daemon=True)
        for thread in self._drains + self._waiters:
            thread.start()
        self._supervisor.start()

    def is_alive(self) -> bool:
        return not self.done.is_set()

    def stderr_tail(self, index: int) -> str:
        return "\n".join(self._tails[index])

    def _drain_stderr(self, index: int) -> None:
        stream = self.processes[index].stderr
        if stream is None:
            return
        with stream:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line:
                    self._tails[index].append(line)
                    log.trace(f"[{self.stages[index].name}] {line}")

    def _wait_stage(self, index: int) -> None:
        returncode = self.processes[index].wait()
        with self._lock:
            self._exit_order.append(index)
            if returncode == 0 or self._stop_requested:
                return
            first_failure = not self._failed
            self._failed[index] = returncode
        log.debug(f"Stage {index} ({self.stages[index].name}) exited {returncode}")
        if first_failure:
            threading.Thread(target=self._unblock_after_failure, daemon=True).start()

    def _unblock_after_failure(self) -> None:
        deadline = time.monotonic() + TERMINATE_GRACE_SECONDS
        while time.monotonic() < deadline:
            if all(proc.poll() is not None for proc in self.processes):
                return
            time.sleep(0.05)
        self._terminate_running()

    def _terminate_running(self) -> None:
        for index, proc in enumerate(self.processes):
            if proc.poll() is None:
                with self._lock:
                    self._terminated.add(index)
                proc.terminate()
        for index, proc in enumerate(self.processes):
            try:
                proc.wait(timeout=KILL_TIMEOUT_SECONDS)
            except subprocess.TimeoutExpired:
                log.warning(f"Stage {index} ({self.stages[index].name}) ignored SIGTERM, killing")
                proc.kill()

    def _supervise(self) -> None:
        for thread in self._waiters:
            thread.join()
        for thread in self._drains:
            thread.join()
        returncodes = tuple(proc.returncode for proc in self.processes)
        with self._lock:
            failed = dict(self._failed)
            order = list(self._exit_order)
            terminated = set(self._terminated)
            stopped = self._stop_requested
        self._error = self._attribute_failure(failed, order, terminated)
        if self.output_path is not None and self.output_path.exists():
            written = self.output_path.stat().st_size
        else:
            written = self._bytes_read
        self._result = PipelineResult(written, returncodes, stopped_early=stopped)
        self.done.set()

    def _attribute_failure(
        self, failed: dict[int, int], order: list[int], terminated: set[int]
    ) -> Optional[PipelineStageFailedError]:
        if not failed:
            return None
        own = []
        for position, index in enumerate(order):
            if index not in failed:
                continue
            if failed[index] == -signal.SIGPIPE or index in terminated:
                continue
            if any(earlier > index for earlier in order[:position]):
                # Its reader was already gone; this exit is a broken-pipe reaction.
                continue
            own.append(index)
        last = len(self.processes) - 1
        if not own and self.processes[last].returncode == 0:
            # Upstream stages hit a closed pipe after the consumer had all it needed.
            return None
        index = own[0] if own else next(index for index in order if index in failed)
        stage = self.stages[index]
        log.error(f"Pipeline stage {index} ({stage.name}) failed with exit code {failed[index]}")
        return PipelineStageFailedError(
            stage.name, index, failed[index], self.stderr_tail(index)
        )

    def read_prefix(self, limit: int) -> bytes:
        """Read at most ``limit`` bytes of captured output.

        Reaching the limit stops the pipeline; stages stopped that way are
        not treated as failures.
        """
        if self.stdout is None:
            raise ValueError("Pipeline was not started with capture=True")
        chunks = []
        remaining = limit
        while remaining > 0:
            chunk = self.stdout.read(min(READ_CHUNK_SIZE, remaining))
            if not chunk:
                break
            chunks.append(chunk)
            remaining -= len(chunk)
        data = b"".join(chunks)
        with self._lock:
            self._bytes_read += len(data)
        if remaining == 0:
            self.stop()
        return data

    def stop(self) -> None:
        """Intentionally end the run early; later exits are not failures."""
        with self._lock:
            self._stop_requested = True
        if self.stdout is not None:
            self.stdout.close()
        self._terminate_running()

    def terminate(self) -> None:
        if self.is_alive():
            log.warning("Terminating pipeline")
            self.stop()

    def wait(self, timeout: Optional[float] = None) -> PipelineResult:
        """Block until every stage has exited.

        Raises:
            PipelineStageFailedError: A stage failed; names the stage and index
            TimeoutError: The pipeline is still running after ``timeout``
        """
        if self.stdout is not None and not self.stdout.closed and not self._stop_requested:
            # Nobody else is reading the captured output; discard it.
            with self.stdout:
                for chunk in iter(lambda: self.stdout.read(READ_CHUNK_SIZE), b""):
                    with self._lock:
                        self._bytes_read += len(chunk)
        if not self.done.wait(timeout):
            raise TimeoutError(f"Pipeline still running after {timeout} seconds")
        if self._error is not None:
            raise self._error
        return self._result


class TransformPipeline:
    def __init__(self, session: Session):
        self.session = session

    def start(
        self,
        stages: Sequence[StreamStage],
        input_path: Optional[Path] = None,
        output_path: Optional[Path] = None,
        capture: bool = False,
    ) -> PipelineRun:
        """Spawn every stage and connect them.

        Args:
            stages: Ordered stages; the first reads ``input_path`` (or nothing)
            input_path: File fed to the first stage's stdin
            output_path: File receiving the last stage's stdout (truncated)
            capture: Expose the last stage's stdout as ``PipelineRun.stdout``

        Raises:
            PipelineStageFailedError: A stage could not be started
        """
        if not stages:
            raise ValueError("Pipeline needs at least one stage")
        if output_path is not None and capture:
            raise ValueError("Cannot both capture output and write it to a file")

        source = open(input_path, "rb") if input_path is not None else None
        sink = open(output_path, "wb") if output_path is not None else None
        processes: list[subprocess.Popen] = []
        try:
            upstream = source if source is not None else subprocess.DEVNULL
            for index, stage in enumerate(stages):
                last = index == len(stages) - 1
                if not last:
                    stdout = subprocess.PIPE
                elif sink is not None:
                    stdout = sink
                elif capture:
                    stdout = subprocess.PIPE
                else:
                    stdout = subprocess.DEVNULL
                proc = self._spawn(index, stage, upstream, stdout)
                processes.append(proc)
                if index > 0:
                    # Only the child may hold the read end, or EOF never arrives.
                    processes[index - 1].stdout.close()
                upstream = proc.stdout
        except BaseException:
            for proc in processes:
                if proc.stdout is not None:
                    proc.stdout.close()
                if proc.poll() is None:
                    proc.kill()
                proc.wait()
                if proc.stderr is not None:
                    proc.stderr.close()
            raise
        finally:
            if source is not None:
                source.close()
            if sink is not None:
                sink.close()

        log.debug(
            "Started pipeline: "
            + " | ".join(redact_command(stage.command, self.session.secrets()) for stage in stages)
        )
        stdout = processes[-1].stdout if capture else None
        return PipelineRun(stages, processes, output_path=output_path, stdout=stdout)

    def _spawn(self, index: int, stage: StreamStage, stdin, stdout) -> subprocess.Popen:
        command = list(stage.command)
        pass_fds: tuple[int, ...] = ()
        secret_fd = None
        if stage.secret is not None:
            secret_fd = self._secret_pipe(stage.secret)
            command = [arg.replace(PASSPHRASE_FD, str(secret_fd)) for arg in command]
            pass_fds = (secret_fd,)
        try:
            return subprocess.Popen(
                command,
                stdin=stdin,
                stdout=stdout,
                stderr=subprocess.PIPE,
                pass_fds=pass_fds,
            )
        except OSError as error:
            raise PipelineStageFailedError(stage.name, index, None, str(error)) from error
        finally:
            if secret_fd is not None:
                os.close(secret_fd)

    @staticmethod
    def _secret_pipe(secret: str) -> int:
        """Return the read end of a pipe already holding ``secret`` then EOF."""
        read_fd, write_fd = os.pipe()
        try:
            os.write(write_fd, secret.encode("utf-8"))
        finally:
            os.close(write_fd)
        return read_fd

    def run(
        self,
        stages: Sequence[StreamStage],
        input_path: Optional[Path] = None,
        output_path: Optional[Path] = None,
        progress: Optional[Callable[[PipelineRun], object]] = None,
    ) -> int:
        """Run stages to completion and return the bytes written.

        ``progress`` receives the started run and returns a poller with a
        ``stop`` method; it only observes and never decides the outcome.
        Zero bytes written is not an error here.
        """
        pipeline_run = self.start(stages, input_path=input_path, output_path=output_path)
        poller = progress(pipeline_run) if progress is not None else None
        try:
            result = pipeline_run.wait()
        except BaseException:
            pipeline_run.terminate()
            raise
        finally:
            if poller is not None:
                poller.stop()
        log.debug(f"Pipeline finished: {result.bytes_written} bytes written")
        return result.bytes_written
