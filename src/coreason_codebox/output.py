import threading
from typing import Literal

StreamName = Literal["stdout", "stderr"]


class OutputCapture:
    """Collects stdout and stderr with a per-stream byte cap.

    Bytes beyond `max_bytes` are counted but dropped and the capture is marked
    truncated. Once either stream has produced more than `max_bytes * hard_multiplier`
    bytes the capture is marked overflowed; the caller is expected to kill the
    producer at that point.
    """

    def __init__(self, max_bytes: int, hard_multiplier: int = 4):
        if max_bytes < 1:
            raise ValueError("max_bytes must be positive")
        self.max_bytes = max_bytes
        self.hard_limit = max_bytes * hard_multiplier
        self._buffers: dict[str, bytearray] = {"stdout": bytearray(), "stderr": bytearray()}
        self._totals: dict[str, int] = {"stdout": 0, "stderr": 0}
        self._lock = threading.Lock()
        self.truncated = False
        self.overflowed = False

    def feed(self, stream: StreamName, chunk: bytes | None) -> bool:
        """Appends a chunk. Returns False once the hard limit has been crossed."""
        if not chunk:
            return not self.overflowed
        with self._lock:
            buf = self._buffers[stream]
            self._totals[stream] += len(chunk)
            room = self.max_bytes - len(buf)
            if room > 0:
                buf.extend(chunk[:room])
            if len(chunk) > room:
                self.truncated = True
            if self._totals[stream] > self.hard_limit:
                self.overflowed = True
            return not self.overflowed

    def size(self, stream: StreamName) -> int:
        """Total bytes the stream produced, including dropped bytes."""
        return self._totals[stream]

    @property
    def stdout(self) -> str:
        return bytes(self._buffers["stdout"]).decode("utf-8", errors="replace")

    @property
    def stderr(self) -> str:
        return bytes(self._buffers["stderr"]).decode("utf-8", errors="replace")
