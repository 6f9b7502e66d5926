"""
Broadcast port allocation.
"""

import logging
from typing import Optional

from .errors import PortExhaustedError, PortInUseError

logger = logging.getLogger(__name__)


class PortAllocator:
    """
    Hands out broadcast ports from ``[base_port, base_port + count)``.

    Ports are keyed by stream id: asking again for the same id returns the
    same port, and a released port goes back to the pool, so add/remove
    cycles never drift out of the range.
    """

    def __init__(self, base_port: int, count: int):
        self.base_port = base_port
        self.count = count
        self._by_stream: dict[str, int] = {}
        self._by_port: dict[int, str] = {}

    def __contains__(self, port: int) -> bool:
        return self.base_port <= port < self.base_port + self.count

    @property
    def available(self) -> int:
        return self.count - sum(1 for port in self._by_port if port in self)

    def port_for(self, stream_id: str) -> Optional[int]:
        return self._by_stream.get(stream_id)

    def owner_of(self, port: int) -> Optional[str]:
        return self._by_port.get(port)

    def allocate(self, stream_id: str) -> int:
        """Return the stream's port, assigning the lowest free one if needed."""
        port = self._by_stream.get(stream_id)
        if port is not None:
            return port

        for port in range(self.base_port, self.base_port + self.count):
            if port not in self._by_port:
                self._assign(stream_id, port)
                return port

        raise PortExhaustedError(
            f"No free broadcast port in {self.base_port}-{self.base_port + self.count - 1}"
        )

    def reserve(self, stream_id: str, port: int) -> int:
        """Claim an explicit port (may lie outside the managed range)."""
        owner = self._by_port.get(port)
        if owner is not None and owner != stream_id:
            raise PortInUseError(f"Port {port} is already used by stream {owner}")

        current = self._by_stream.get(stream_id)
        if current is not None and current != port:
            self.release(stream_id)

        self._assign(stream_id, port)
        return port

    def release(self, stream_id: str) -> Optional[int]:
        """Free the stream's port. Returns it, or None if it held none."""
        port = self._by_stream.pop(stream_id, None)
        if port is not None:
            self._by_port.pop(port, None)
            logger.debug(f"Released port {port} from {stream_id}")
        return port

    def _assign(self, stream_id: str, port: int) -> None:
        self._by_stream[stream_id] = port
        self._by_port[port] = stream_id
        logger.debug(f"Assigned port {port} to {stream_id}")
