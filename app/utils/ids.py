import secrets
import threading
import time


class QuoteIdGenerator:
    """
    Quote ids of the form ``PQ-<epoch ms:13><seq:4>-<random hex>``.

    Ids sort lexicographically in generation order within a process: the
    sequence increments while the clock reports the same (or an earlier)
    millisecond, and the random suffix keeps ids from different processes apart.
    """

    def __init__(self, prefix: str = "PQ", clock=None):
        self.prefix = prefix
        self._clock = clock or (lambda: time.time_ns() // 1_000_000)
        self._lock = threading.Lock()
        self._last_ms = 0
        self._seq = 0

    def __call__(self) -> str:
        with self._lock:
            now_ms = self._clock()
            if now_ms > self._last_ms:
                self._last_ms = now_ms
                self._seq = 0
            else:
                self._seq += 1
                if self._seq > 9999:
                    self._last_ms += 1
                    self._seq = 0
            ms, seq = self._last_ms, self._seq
        return f"{self.prefix}-{ms:013d}{seq:04d}-{secrets.token_hex(4)}"


generate_quote_id = QuoteIdGenerator()
