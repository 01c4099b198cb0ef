"""
Fixture — probe, main loop, and the health status the platform derives.

The probe is inverted on purpose: a present marker file is a failure.
Do not "fix" it; the fixture exists to be unhealthy.

HealthMonitor models how the container platform turns probe exit codes
into a status (starting → healthy / unhealthy, with a consecutive-failure
threshold), so the never-healthy property can be checked without docker.
"""
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from unhealthy_fixture import MARKER_PATH

logger = logging.getLogger("unhealthy_fixture")

DIAGNOSTIC_LINE = "unhealthy_fixture: marker present, health check will fail"


@dataclass(frozen=True)
class HealthCheckParams:
    """Declarative HEALTHCHECK parameters. Literal, never computed."""
    interval_s: int = 5
    timeout_s: int = 3
    retries: int = 3

    def as_flags(self) -> str:
        return f"--interval={self.interval_s}s --timeout={self.timeout_s}s --retries={self.retries}"


FIXTURE_PARAMS = HealthCheckParams()


class HealthStatus(str, Enum):
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


def probe(marker: Path = Path(MARKER_PATH)) -> int:
    """Health probe exit code: 1 (unhealthy) while the marker exists."""
    return 1 if marker.exists() else 0


def run_loop(
    period_s: float = FIXTURE_PARAMS.interval_s,
    sleep: Callable[[float], None] = time.sleep,
    iterations: Optional[int] = None,
) -> int:
    """
    Log DIAGNOSTIC_LINE every *period_s* seconds.

    Runs forever unless *iterations* is given. Returns the number of
    lines emitted.
    """
    emitted = 0
    while iterations is None or emitted < iterations:
        logger.warning(DIAGNOSTIC_LINE)
        emitted += 1
        sleep(period_s)
    return emitted


@dataclass
class HealthMonitor:
    """Platform-side status tracking for one container."""
    params: HealthCheckParams = FIXTURE_PARAMS
    status: HealthStatus = HealthStatus.STARTING
    failing_streak: int = 0
    history: List[HealthStatus] = field(default_factory=list)

    def record(self, exit_code: int) -> HealthStatus:
        """Apply one probe result and return the new status."""
        if exit_code == 0:
            self.failing_streak = 0
            self.status = HealthStatus.HEALTHY
        else:
            self.failing_streak += 1
            if self.failing_streak >= self.params.retries:
                self.status = HealthStatus.UNHEALTHY
        self.history.append(self.status)
        return self.status

    def run(self, check: Callable[[], int], probes: int) -> List[HealthStatus]:
        """Run *probes* checks in sequence; return the status after each."""
        for _ in range(probes):
            self.record(check())
        return list(self.history)

    def seconds_until_unhealthy(self) -> int:
        """Container age at which an always-failing probe flips the status."""
        return self.params.interval_s * self.params.retries


def render_dockerfile(params: HealthCheckParams = FIXTURE_PARAMS, marker: str = MARKER_PATH) -> str:
    """Dockerfile for the fixture image."""
    return "\n".join([
        "FROM python:3.12-alpine",
        "",
        "COPY workers/unhealthy_fixture /opt/fixture/unhealthy_fixture",
        "ENV PYTHONPATH=/opt/fixture PYTHONUNBUFFERED=1",
        "",
        "# Present from the start; the probe treats it as a failure",
        f"RUN touch {marker}",
        "",
        f'HEALTHCHECK {params.as_flags()} CMD ["python", "-m", "unhealthy_fixture", "probe"]',
        "",
        'ENTRYPOINT ["python", "-m", "unhealthy_fixture", "loop"]',
        "",
    ])
