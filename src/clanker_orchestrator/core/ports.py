"""Monotonic port issuance for backend processes."""

DEFAULT_PORT_START = 4000


class PortAllocator:
    """Hands out increasing port numbers, never reusing one within a process lifetime."""

    def __init__(self, start: int = DEFAULT_PORT_START):
        self._next = start

    @property
    def next_port(self) -> int:
        return self._next

    def advance_to(self, port: int) -> None:
        """Move the counter forward to a persisted value. Never moves backwards."""
        self._next = max(self._next, port)

    def allocate(self) -> int:
        port = self._next
        self._next += 1
        return port
