"""Line pump from child process pipes into a single bounded queue."""

import queue
import threading
from typing import IO, NamedTuple


class StreamLine(NamedTuple):
    source: str
    line: str | None  # None marks end of stream


class EventPump:
    """Reader threads push lines from each attached stream into one queue.

    The consumer blocks on the queue and sees every line buffered before a
    stream's end marker, so nothing is lost when the process exits.
    """

    def __init__(self, maxsize: int = 1000):
        self._queue: queue.Queue[StreamLine] = queue.Queue(maxsize=maxsize)
        self._open: set[str] = set()
        self._threads: list[threading.Thread] = []

    def attach(self, stream: IO[str], source: str) -> None:
        self._open.add(source)
        thread = threading.Thread(
            target=self._pump, args=(stream, source), name=f"pump-{source}", daemon=True
        )
        self._threads.append(thread)
        thread.start()

    def _pump(self, stream: IO[str], source: str) -> None:
        try:
            for line in iter(stream.readline, ""):
                self._queue.put(StreamLine(source, line.rstrip("\r\n")))
        except (OSError, ValueError):
            # Pipe closed underneath us after a kill.
            pass
        finally:
            self._queue.put(StreamLine(source, None))

    @property
    def closed(self) -> bool:
        return not self._open

    def get(self, timeout: float) -> StreamLine | None:
        """Next line, or None if nothing arrived within timeout."""
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item.line is None:
            self._open.discard(item.source)
        return item

    def join(self, timeout: float = 5.0) -> None:
        for thread in self._threads:
            thread.join(timeout=timeout)
