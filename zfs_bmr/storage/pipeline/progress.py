"""Progress reporting for running pipelines.

The poller only looks at ``PipelineRun.is_alive()`` and the size of the
output file. It never touches the data stream and never decides whether a
run succeeded; that comes from ``PipelineRun.wait()``.
"""

import threading
import time

from zfs_bmr.logging import LoggerFactory, ThrottledLogger

log = LoggerFactory.for_pipeline().bind(tags=["pipeline", "progress"])


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def format_eta(seconds):
    """Format a duration in HH:MM:SS or MM:SS format."""
    if seconds is None:
        return None
    seconds = int(seconds)
    if seconds < 0:
        return None
    hours, remainder = divmod(seconds, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours:d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def format_progress_line(title, elapsed_seconds, bytes_written, rate):
    parts = [title] if title else []
    parts.append(format_eta(elapsed_seconds) or "00:00")
    if bytes_written is not None:
        parts.append(f"wrote {human_size(bytes_written)}")
    if rate:
        parts.append(f"{human_size(rate)}/s")
    return " | ".join(parts)


class ProgressPoller:
    """Cancellable background reporter for one pipeline run.

    Example:
        poller = ProgressPoller(run, 5.0, output_path, title="Pool").start()
        try:
            run.wait()
        finally:
            poller.stop()
    """

    def __init__(self, run, interval, output_path=None, reporter=None, title=""):
        self.run = run
        self.interval = interval
        self.output_path = output_path
        self.title = title
        self.reporter = reporter or self._log_line
        self.ticks = 0
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, name="progress", daemon=True)
        self._throttled = ThrottledLogger(log, interval_seconds=interval)

    def start(self):
        self._thread.start()
        return self

    def stop(self):
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval + 1.0)

    def _current_size(self):
        if self.output_path is None:
            return None
        try:
            return self.output_path.stat().st_size
        except OSError:
            return None

    def _loop(self):
        started = time.monotonic()
        while not self._stop.wait(self.interval):
            if not self.run.is_alive():
                break
            elapsed = time.monotonic() - started
            size = self._current_size()
            rate = size / elapsed if size is not None and elapsed > 0 else None
            self.ticks += 1
            self.reporter(format_progress_line(self.title, elapsed, size, rate))

    def _log_line(self, line):
        self._throttled.info(self.title or "pipeline", line)
