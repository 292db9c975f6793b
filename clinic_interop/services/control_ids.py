# clinic_interop/services/control_ids.py
import itertools
import secrets
import threading
import time


class ControlIdGenerator:
    """Generates MSH-10 message control IDs.

    Format: ``MSG`` + epoch microseconds + 4-digit sequence + 8 random hex chars.
    The sequence makes IDs unique within a process even when the clock does not
    advance between calls; the random suffix separates concurrent processes.
    """

    PREFIX = "MSG"

    def __init__(self, clock=time.time_ns):
        self._clock = clock
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def generate(self) -> str:
        with self._lock:
            micros = self._clock() // 1000
            seq = next(self._sequence) % 10000
        return f"{self.PREFIX}{micros}{seq:04d}{secrets.token_hex(4).upper()}"


_default_generator = ControlIdGenerator()


def generate_message_control_id() -> str:
    return _default_generator.generate()
