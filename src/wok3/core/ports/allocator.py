"""
Port offset allocation.

Every running worktree holds one offset; its dev stack binds
``discovered_port + offset`` for each discovered port. Offset 0 belongs to
the primary (un-offset) checkout and is never handed out.
"""

import logging
import threading

from wok3.core.config.models import PortConfig
from wok3.core.errors import PortAllocationError

logger = logging.getLogger(__name__)

MAX_PORT = 65535


class OffsetAllocator:
    """
    Hands out exclusive port offsets to starting/running worktrees.

    Allocation considers every held offset, so the whole table is guarded by
    one allocator-wide lock. Released offsets are reusable immediately.

    Example:
        >>> allocator = OffsetAllocator(PortConfig(discovered=[3000], offset_step=10))
        >>> allocator.allocate("auth-fix")
        10
        >>> allocator.allocate("billing")
        20
        >>> allocator.release(10)
        >>> allocator.allocate("search")
        10
    """

    def __init__(self, port_config: PortConfig):
        self._config = port_config
        self._lock = threading.Lock()
        self._held: dict[int, str | None] = {}

    @property
    def port_config(self) -> PortConfig:
        return self._config

    @property
    def enabled(self) -> bool:
        """Whether offsets are applied at all (non-zero step and known ports)."""
        return self._config.virtualization_enabled

    def reconfigure(self, port_config: PortConfig) -> None:
        """
        Swap in new port settings.

        Offsets already held stay held; they are released by their holders
        as usual.
        """
        with self._lock:
            self._config = port_config

    def max_offset(self) -> int:
        """Largest offset that keeps every discovered port within range."""
        if not self._config.discovered:
            return 0
        return MAX_PORT - max(self._config.discovered)

    def allocate(self, holder: str | None = None) -> int:
        """
        Allocate the smallest free positive multiple of the offset step.

        Args:
            holder: Worktree id recorded against the offset, for diagnostics

        Returns:
            The allocated offset

        Raises:
            PortAllocationError: If virtualization is disabled or every
                offset that keeps ports in range is taken
        """
        with self._lock:
            if not self.enabled:
                raise PortAllocationError(
                    "Port virtualization is disabled (no discovered ports or offset step 0)"
                )

            step = self._config.offset_step
            limit = self.max_offset()
            offset = step
            while offset in self._held:
                offset += step

            if offset > limit:
                raise PortAllocationError(
                    f"No offset available: {len(self._held)} offsets held, "
                    f"next candidate {offset} exceeds {limit}"
                )

            self._held[offset] = holder
            logger.debug("Allocated offset %d to %s", offset, holder)
            return offset

    def release(self, offset: int | None) -> None:
        """Release an offset. Releasing an offset not currently held is a no-op."""
        if offset is None:
            return
        with self._lock:
            holder = self._held.pop(offset, None)
        logger.debug("Released offset %d (held by %s)", offset, holder)

    def is_held(self, offset: int) -> bool:
        with self._lock:
            return offset in self._held

    def holder_of(self, offset: int) -> str | None:
        with self._lock:
            return self._held.get(offset)

    def held(self) -> dict[int, str | None]:
        """Snapshot of the offset table."""
        with self._lock:
            return dict(self._held)

    def ports_for_offset(self, offset: int | None) -> list[int]:
        """Concrete ports a worktree with ``offset`` binds."""
        base = list(self._config.discovered)
        if not offset:
            return base
        return [port + offset for port in base]
