"""Serial number allocation for the CA.

The counter is the only issuance state shared across concurrent requests, so
every allocation happens under one lock and is persisted before it is handed
out. The on-disk format is the OpenSSL ``.srl`` layout: one line of
upper-case hex holding the last serial issued.
"""

import logging
import os
import tempfile
import threading
from pathlib import Path

logger = logging.getLogger(__name__)

# RFC 5280 4.1.2.2: positive, at most 20 octets
MAX_SERIAL = (1 << 159) - 1


class SerialExhaustedError(Exception):
    """Raised when the counter has reached its ceiling."""

    pass


class SerialFileError(Exception):
    """Raised when the persisted serial file cannot be read."""

    pass


class SerialCounter:
    """Monotonic, lock-guarded serial allocator.

    Args:
        path: ``.srl`` file to persist to, or None for an in-memory counter.
        max_serial: Highest serial that may be issued.
    """

    def __init__(self, path: Path | None = None, max_serial: int = MAX_SERIAL):
        self._path = path
        self._max_serial = max_serial
        self._lock = threading.Lock()
        self._last = self._load()

    @property
    def last_issued(self) -> int:
        with self._lock:
            return self._last

    def next(self) -> int:
        """Allocate the next serial.

        Raises:
            SerialExhaustedError: The next value would exceed ``max_serial``.
        """
        with self._lock:
            candidate = self._last + 1
            if candidate > self._max_serial:
                logger.error("serial_exhausted", extra={"last_serial": format(self._last, "x")})
                raise SerialExhaustedError(
                    f"Serial counter exhausted at {format(self._last, 'X')}"
                )
            self._persist(candidate)
            self._last = candidate
            return candidate

    def _load(self) -> int:
        if self._path is None or not self._path.exists():
            return 0
        text = self._path.read_text(encoding="ascii").strip()
        try:
            value = int(text, 16)
        except ValueError:
            raise SerialFileError(f"Serial file {self._path} is not hex: {text!r}") from None
        if value < 0:
            raise SerialFileError(f"Serial file {self._path} holds a negative value")
        return value

    def _persist(self, value: int) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Write-then-rename so a crash never leaves a truncated counter
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".srl-")
        try:
            with os.fdopen(fd, "w", encoding="ascii") as handle:
                handle.write(f"{value:X}\n")
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
