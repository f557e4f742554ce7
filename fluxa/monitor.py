"""Per-service health state machine and the loops that drive it."""

from __future__ import annotations

import asyncio
import enum
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence, Union

import structlog

from fluxa.errors import ConfigurationError
from fluxa.notification import Notifier, Transition
from fluxa.probe import ProbeOutcome, Prober, safe_url
from fluxa.settings import ServiceConfig
from fluxa.status import HealthStatus, ServiceSnapshot, StatusBoard


logger = structlog.get_logger(__name__)

# Extra time granted on top of the per-probe timeout before the monitor gives up on the call.
PROBE_GRACE_SECONDS = 1.0

# How often stop() re-cancels monitor tasks that are still running.
STOP_RECHECK_SECONDS = 0.1


class Cadence(str, enum.Enum):
    INTERVAL = "interval"
    RETRY_INTERVAL = "retry_interval"


# Wait used between probes while a service is down. The retry interval only covers the
# probation window before the threshold is crossed.
DOWN_CADENCE = Cadence.INTERVAL


@dataclass(frozen=True)
class Healthy:
    failures: int = 0

    @property
    def status(self) -> HealthStatus:
        return HealthStatus.UP

    @property
    def on_probation(self) -> bool:
        return self.failures > 0


@dataclass(frozen=True)
class Unhealthy:
    failures: int
    since_ts: float | None = None

    @property
    def status(self) -> HealthStatus:
        return HealthStatus.DOWN


HealthState = Union[Healthy, Unhealthy]


def advance(
    state: HealthState,
    ok: bool,
    max_retries: int,
    *,
    now: float | None = None,
) -> tuple[HealthState, Transition | None]:
    """
    Feed one probe outcome into the state machine.

    Returns the next state and the transition to announce, if any. A service goes
    down on failure number `max_retries + 1` of a streak and comes back on the
    first success after that.
    """
    max_retries = max(0, int(max_retries))

    if isinstance(state, Unhealthy):
        if ok:
            return Healthy(), Transition.UP
        return Unhealthy(failures=state.failures + 1, since_ts=state.since_ts), None

    if ok:
        return Healthy(), None

    failures = state.failures + 1
    if failures > max_retries:
        return Unhealthy(failures=failures, since_ts=now), Transition.DOWN
    return Healthy(failures=failures), None


def next_delay(state: HealthState, config: ServiceConfig, *, down_cadence: Cadence = DOWN_CADENCE) -> int:
    if isinstance(state, Unhealthy):
        if down_cadence is Cadence.RETRY_INTERVAL:
            return config.retry_interval_seconds
        return config.interval_seconds
    if state.on_probation:
        return config.retry_interval_seconds
    return config.interval_seconds


def format_duration(seconds: float) -> str:
    seconds = max(0, int(seconds))
    days, rem = divmod(seconds, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, rem = divmod(rem, 60)
    if days:
        return f"{days}d {hours:02}h {minutes:02}m"
    if hours:
        return f"{hours}h {minutes:02}m"
    return f"{minutes}m {rem:02}s"


SleepFunc = Callable[[float], Awaitable[object]]


class ServiceMonitor:
    """Owns one service's health state and probes it forever."""

    def __init__(
        self,
        config: ServiceConfig,
        prober: Prober,
        notifier: Notifier,
        *,
        board: StatusBoard | None = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        down_cadence: Cadence = DOWN_CADENCE,
    ) -> None:
        self.config = config
        self.prober = prober
        self.notifier = notifier
        self.board = board
        self.down_cadence = down_cadence
        self._sleep = sleep
        self._clock = clock
        self._state: HealthState = Healthy()
        self._log = logger.bind(url=safe_url(config.url))

    @property
    def status(self) -> HealthStatus:
        return self._state.status

    @property
    def consecutive_failures(self) -> int:
        return self._state.failures

    async def run(self) -> None:
        self._log.info(
            "Monitoring started",
            interval_seconds=self.config.interval_seconds,
            max_retries=self.config.max_retries,
            retry_interval_seconds=self.config.retry_interval_seconds,
        )
        while True:
            delay = await self.check_once()
            await self._sleep(delay)

    async def check_once(self) -> int:
        """Probe once, update state, notify on a transition. Returns the next wait in seconds."""
        outcome = await self._probe()
        now = self._clock()
        previous = self._state
        self._state, transition = advance(previous, outcome.ok, self.config.max_retries, now=now)
        delay = next_delay(self._state, self.config, down_cadence=self.down_cadence)

        if outcome.ok:
            self._log.info(
                "Probe ok",
                status_code=outcome.status_code,
                elapsed_ms=outcome.elapsed_ms,
            )
        else:
            self._log.warning(
                "Probe failed",
                error=outcome.describe(),
                status_code=outcome.status_code,
                failures=self._state.failures,
                max_retries=self.config.max_retries,
                next_probe_in=delay,
            )

        if transition is not None:
            await self._announce(transition, previous, outcome, now)

        if self.board is not None:
            self.board.publish(self._snapshot(outcome, now, delay))
        return delay

    async def _probe(self) -> ProbeOutcome:
        timeout = float(self.config.timeout_seconds)
        try:
            async with asyncio.timeout(timeout + PROBE_GRACE_SECONDS):
                return await self.prober.probe(self.config.url, timeout)
        except TimeoutError:
            return ProbeOutcome(ok=False, error=f"timeout: probe did not finish within {timeout:g}s")

    async def _announce(
        self,
        transition: Transition,
        previous: HealthState,
        outcome: ProbeOutcome,
        now: float,
    ) -> None:
        if transition is Transition.DOWN:
            detail = (
                f"Reason: {outcome.describe()}\n"
                f"Failures: {self._state.failures} consecutive (max_retries={self.config.max_retries})"
            )
            self._log.warning("Service is DOWN", failures=self._state.failures)
        else:
            since = previous.since_ts if isinstance(previous, Unhealthy) else None
            detail = f"Down for {format_duration(now - since)}" if since is not None else None
            self._log.info("Service recovered", down_probes=previous.failures)

        try:
            delivered = await self.notifier.send(self.config.url, transition, detail)
        except Exception as exc:
            self._log.error(
                "Notifier crashed; alert dropped",
                transition=transition.value,
                error=self.notifier.redact(f"{type(exc).__name__}: {exc}"),
            )
            delivered = False

        if not delivered:
            self._log.warning("Alert not delivered", transition=transition.value)

    def _snapshot(self, outcome: ProbeOutcome, now: float, delay: int) -> ServiceSnapshot:
        return ServiceSnapshot(
            url=self.config.url,
            status=self._state.status,
            consecutive_failures=self._state.failures,
            interval_seconds=self.config.interval_seconds,
            max_retries=self.config.max_retries,
            last_check_ts=now,
            next_check_ts=now + delay,
            last_status_code=outcome.status_code,
            last_response_time_ms=outcome.elapsed_ms,
            last_error=outcome.error,
        )


class MonitorSupervisor:
    """Starts one ServiceMonitor task per service. Never restarts a dead task."""

    def __init__(
        self,
        configs: Sequence[ServiceConfig],
        prober: Prober,
        notifier: Notifier,
        *,
        board: StatusBoard | None = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not configs:
            raise ConfigurationError("No services configured for monitoring")
        self.monitors = [
            ServiceMonitor(config, prober, notifier, board=board, sleep=sleep, clock=clock) for config in configs
        ]
        self.tasks: list[asyncio.Task] = []
        self._urls: dict[asyncio.Task, str] = {}

    def start(self) -> list[asyncio.Task]:
        if self.tasks:
            logger.warning("Monitoring tasks already running", count=len(self.tasks))
            return list(self.tasks)

        for monitor in self.monitors:
            url = safe_url(monitor.config.url)
            task = asyncio.create_task(monitor.run(), name=f"monitor:{url}")
            self._urls[task] = url
            task.add_done_callback(self._on_task_done)
            self.tasks.append(task)

        logger.info("Started monitoring tasks", count=len(self.tasks))
        return list(self.tasks)

    async def run(self) -> None:
        tasks = self.start()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def stop(self) -> None:
        pending = {task for task in self.tasks if not task.done()}
        while pending:
            # a cancel landing just as a probe completes can be absorbed; cancel again until done
            for task in pending:
                task.cancel()
            _, pending = await asyncio.wait(pending, timeout=STOP_RECHECK_SECONDS)

    def _on_task_done(self, task: asyncio.Task) -> None:
        url = self._urls.get(task, task.get_name())
        if task.cancelled():
            logger.info("Monitoring stopped", url=url)
            return
        exc = task.exception()
        if exc is None:
            logger.warning("Monitoring completed unexpectedly", url=url)
            return
        logger.critical(
            "Monitor task died; service is no longer monitored",
            url=url,
            error=f"{type(exc).__name__}: {exc}",
            exc_info=exc,
        )
