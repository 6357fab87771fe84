"""Free-port selection on the Application Host."""

import random
from typing import Iterable, Optional, Set

from axondeploy.errors import PortExhaustionError
from axondeploy.errors_catalog import actionable_error
from axondeploy.models import HostRole, PortRange


def probe_command(port: int) -> str:
    return f"ss -tuln | grep -q ':{port} ' && echo in_use || echo free"


class PortAllocator:
    """Picks random candidates from the range and probes them remotely.

    A lease is advisory: nothing is reserved between the probe and the bind,
    so callers retry once with a fresh lease when the bind loses a race.
    """

    def __init__(self, gateway, port_range: PortRange, logger, rng: Optional[random.Random] = None):
        self.gateway = gateway
        self.port_range = port_range
        self.logger = logger
        self.rng = rng or random.SystemRandom()

    def pick(self, exclude_ports: Iterable[int] = (), role: HostRole = HostRole.APPLICATION) -> Optional[int]:
        excluded = {port for port in exclude_ports if port is not None}
        probed: Set[int] = set()
        start, end = self.port_range.start, self.port_range.end

        for attempt in range(1, self.port_range.max_attempts + 1):
            candidate = self.rng.randint(start, end)
            if candidate in excluded or candidate in probed:
                continue
            probed.add(candidate)

            result = self.gateway.execute(role, [(probe_command(candidate), "probe")])
            if result.stdout("probe").strip() == "free":
                self.logger.debug("Port %s is free (attempt %s)", candidate, attempt)
                return candidate
            self.logger.debug("Port %s is in use (attempt %s)", candidate, attempt)

        return None

    def lease(self, exclude_ports: Iterable[int] = ()) -> int:
        port = self.pick(exclude_ports=exclude_ports)
        if port is None:
            raise PortExhaustionError(
                actionable_error(
                    "port_exhausted",
                    start=str(self.port_range.start),
                    end=str(self.port_range.end),
                    attempts=str(self.port_range.max_attempts),
                )
            )
        return port
