from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

import fluxa.monitor as monitor_module
from fluxa.monitor import ServiceMonitor
from fluxa.notification import Notifier, Transition
from fluxa.probe import ProbeOutcome
from fluxa.settings import ServiceConfig
from fluxa.status import HealthStatus, StatusBoard


URL = "https://svc.example.com/health"


class ScriptedProber:
    def __init__(self, outcomes: list[bool]) -> None:
        self.outcomes = list(outcomes)
        self.calls: list[tuple[str, float]] = []

    async def probe(self, url: str, timeout: float = 10.0) -> ProbeOutcome:
        self.calls.append((url, timeout))
        ok = self.outcomes.pop(0)
        if ok:
            return ProbeOutcome(ok=True, status_code=200, elapsed_ms=1.0)
        return ProbeOutcome(ok=False, status_code=503, elapsed_ms=1.0, error="HTTP 503")


class RecordingNotifier(Notifier):
    def __init__(self, *, result: bool = True) -> None:
        self.result = result
        self.sent: list[tuple[str, Transition, str | None]] = []

    async def send(self, url: str, transition: Transition, detail: str | None = None) -> bool:
        self.sent.append((url, transition, detail))
        return self.result


class ExplodingNotifier(Notifier):
    def __init__(self) -> None:
        self.calls = 0

    async def send(self, url: str, transition: Transition, detail: str | None = None) -> bool:
        self.calls += 1
        raise RuntimeError("push service exploded")


def _config(max_retries: int = 2) -> ServiceConfig:
    return ServiceConfig(url=URL, interval_seconds=60, max_retries=max_retries, retry_interval_seconds=5)


async def _drive(monitor: ServiceMonitor, n: int) -> list[int]:
    return [await monitor.check_once() for _ in range(n)]


@pytest.mark.asyncio
async def test_probation_then_down_then_recovery() -> None:
    prober = ScriptedProber([False, False, False, False, True, True])
    notifier = RecordingNotifier()
    monitor = ServiceMonitor(_config(max_retries=2), prober, notifier)

    delays = await _drive(monitor, 6)

    # probation uses the retry interval, down and healthy use the normal interval
    assert delays == [5, 5, 60, 60, 60, 60]
    assert [t for _, t, _ in notifier.sent] == [Transition.DOWN, Transition.UP]
    assert notifier.sent[0][0] == URL
    assert "HTTP 503" in (notifier.sent[0][2] or "")
    assert monitor.status is HealthStatus.UP
    assert monitor.consecutive_failures == 0


@pytest.mark.asyncio
async def test_max_retries_zero_goes_down_on_first_failure() -> None:
    prober = ScriptedProber([False, True])
    notifier = RecordingNotifier()
    monitor = ServiceMonitor(_config(max_retries=0), prober, notifier)

    await monitor.check_once()
    assert monitor.status is HealthStatus.DOWN
    assert [t for _, t, _ in notifier.sent] == [Transition.DOWN]

    await monitor.check_once()
    assert monitor.status is HealthStatus.UP
    assert [t for _, t, _ in notifier.sent] == [Transition.DOWN, Transition.UP]


@pytest.mark.asyncio
async def test_recovery_message_includes_downtime() -> None:
    now = [1000.0]
    prober = ScriptedProber([False, False, True])
    notifier = RecordingNotifier()
    monitor = ServiceMonitor(_config(max_retries=0), prober, notifier, clock=lambda: now[0])

    await monitor.check_once()
    now[0] += 60
    await monitor.check_once()
    now[0] += 60
    await monitor.check_once()

    assert notifier.sent[-1][1] is Transition.UP
    assert notifier.sent[-1][2] == "Down for 2m 00s"


@pytest.mark.asyncio
async def test_undelivered_alert_keeps_state_and_schedule() -> None:
    prober = ScriptedProber([False, False, True])
    notifier = RecordingNotifier(result=False)
    monitor = ServiceMonitor(_config(max_retries=0), prober, notifier)

    delays = await _drive(monitor, 3)

    assert delays == [60, 60, 60]
    assert len(notifier.sent) == 2
    assert monitor.status is HealthStatus.UP


@pytest.mark.asyncio
async def test_raising_notifier_does_not_break_loop() -> None:
    prober = ScriptedProber([False, False, True, True])
    notifier = ExplodingNotifier()
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) >= 4:
            raise asyncio.CancelledError

    monitor = ServiceMonitor(_config(max_retries=0), prober, notifier, sleep=fake_sleep)
    with pytest.raises(asyncio.CancelledError):
        await monitor.run()

    assert len(prober.calls) == 4
    assert sleeps == [60, 60, 60, 60]
    assert notifier.calls == 2
    assert monitor.status is HealthStatus.UP


@pytest.mark.asyncio
async def test_first_probe_happens_before_any_sleep() -> None:
    prober = ScriptedProber([True])
    events: list[str] = []

    async def fake_sleep(seconds: float) -> None:
        events.append(f"sleep:{seconds}")
        raise asyncio.CancelledError

    original_probe = prober.probe

    async def probe(url: str, timeout: float = 10.0) -> ProbeOutcome:
        events.append("probe")
        return await original_probe(url, timeout)

    prober.probe = probe  # type: ignore[method-assign]
    monitor = ServiceMonitor(_config(), prober, RecordingNotifier(), sleep=fake_sleep)
    with pytest.raises(asyncio.CancelledError):
        await monitor.run()

    assert events == ["probe", "sleep:60"]


@pytest.mark.asyncio
async def test_hung_probe_is_bounded_and_counts_as_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(monitor_module, "PROBE_GRACE_SECONDS", 0.0)

    class HangingProber:
        async def probe(self, url: str, timeout: float = 10.0) -> ProbeOutcome:
            await asyncio.Event().wait()
            raise AssertionError("unreachable")

    config = ServiceConfig(
        url=URL, interval_seconds=60, max_retries=0, retry_interval_seconds=5, timeout_seconds=0.05
    )
    notifier = RecordingNotifier()
    monitor = ServiceMonitor(config, HangingProber(), notifier)

    delay = await asyncio.wait_for(monitor.check_once(), timeout=2.0)

    assert delay == 60
    assert monitor.status is HealthStatus.DOWN
    assert "timeout" in (notifier.sent[0][2] or "")


@pytest.mark.asyncio
async def test_snapshot_published_after_each_probe() -> None:
    now = [500.0]
    board = StatusBoard()
    prober = ScriptedProber([True, False])
    monitor = ServiceMonitor(_config(max_retries=2), prober, RecordingNotifier(), board=board, clock=lambda: now[0])

    await monitor.check_once()
    snap = board.get(URL)
    assert snap is not None
    assert snap.status is HealthStatus.UP
    assert snap.last_status_code == 200
    assert snap.next_check_ts == 560.0

    await monitor.check_once()
    snap = board.get(URL)
    assert snap is not None
    assert snap.consecutive_failures == 1
    assert snap.last_error == "HTTP 503"
    assert snap.next_check_ts == 505.0
    assert snap.to_dict()["status"] == "up"


class LeakyNotifier(Notifier):
    SECRET = "bot-token-123"

    async def send(self, url: str, transition: Transition, detail: str | None = None) -> bool:
        raise RuntimeError(f"POST https://api.telegram.org/bot{self.SECRET}/sendMessage failed")

    def redact(self, text: str) -> str:
        return text.replace(self.SECRET, "<redacted>")


@pytest.mark.asyncio
async def test_crashing_notifier_error_is_redacted_without_traceback() -> None:
    monitor = ServiceMonitor(_config(max_retries=0), ScriptedProber([False]), LeakyNotifier())

    with capture_logs() as logs:
        await monitor.check_once()

    crashed = [e for e in logs if e["event"] == "Notifier crashed; alert dropped"]
    assert len(crashed) == 1
    assert "<redacted>" in crashed[0]["error"]
    assert "exc_info" not in crashed[0]
    assert LeakyNotifier.SECRET not in repr(logs)
