# SPDX-License-Identifier: Apache-2.0
# SPDX-FileCopyrightText: Copyright contributors to the dbhost project

"""Local TCP port allocation."""

from __future__ import annotations

import logging
import socket
from collections.abc import Iterable

from .errors import PortExhaustedError

logger = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"


class PortAllocator:
    """Find free TCP ports on the loopback interface.

    A port is free when a test bind succeeds. Ports handed out by this
    allocator stay reserved in-process until ``release`` is called, so two
    concurrent starts in the same process never receive the same port.
    Another process may still take a port between the test bind and the
    engine binding it.
    """

    def __init__(self, host: str = LOCALHOST) -> None:
        self.host = host
        self._reserved_ports: set[int] = set()

    @property
    def reserved_ports(self) -> set[int]:
        return set(self._reserved_ports)

    def is_available(self, port: int) -> bool:
        if port in self._reserved_ports:
            return False
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind((self.host, port))
            except OSError:
                return False
        return True

    def reserve(self, port: int) -> None:
        self._reserved_ports.add(port)

    def release(self, port: int) -> None:
        self._reserved_ports.discard(port)

    def allocate(
        self,
        range_start: int,
        range_end: int,
        *,
        exclude: Iterable[int] = (),
    ) -> int:
        """Reserve and return the first free port in ``[range_start, range_end)``.

        Raises:
            PortExhaustedError: when every port in the range is taken.
        """
        excluded = set(exclude)
        for port in range(range_start, range_end):
            if port in excluded:
                continue
            if self.is_available(port):
                self._reserved_ports.add(port)
                logger.debug("Allocated port %d", port)
                return port
        raise PortExhaustedError(range_start, range_end)

    def find_primary_port(
        self,
        preferred: int,
        port_range: tuple[int, int],
        *,
        exclude: Iterable[int] = (),
    ) -> int:
        """Return ``preferred`` when free, else the first free port in range.

        ``exclude`` carries ports owned by other containers, which are skipped
        even when they are not currently bound.
        """
        excluded = set(exclude)
        if preferred not in excluded and self.is_available(preferred):
            self._reserved_ports.add(preferred)
            return preferred
        logger.debug("Port %d is in use, scanning %d-%d", preferred, *port_range)
        return self.allocate(port_range[0], port_range[1], exclude=excluded)
