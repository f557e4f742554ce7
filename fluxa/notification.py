"""Alert delivery for service state transitions."""

from __future__ import annotations

import abc
import enum
import json
from dataclasses import dataclass

import httpx
import structlog

from fluxa.errors import NotificationError
from fluxa.probe import safe_url


logger = structlog.get_logger(__name__)

PUSHOVER_API_URL = "https://api.pushover.net/1/messages.json"
TELEGRAM_API_BASE = "https://api.telegram.org"
NOTIFY_TIMEOUT_SECONDS = 15.0


class Transition(str, enum.Enum):
    DOWN = "down"
    UP = "up"


def build_alert_message(url: str, transition: Transition, detail: str | None = None) -> str:
    if transition is Transition.DOWN:
        lines = [f"{safe_url(url)} is DOWN ❌"]
    else:
        lines = [f"{safe_url(url)} is back UP ✅"]
    if detail and detail.strip():
        lines.append(detail.strip()[:500])
    return "\n".join(lines)


class Notifier(abc.ABC):
    """
    Alert channel used by the monitors.

    `send` never raises for delivery problems; it logs them and returns False so the
    calling monitor loop keeps its schedule.
    """

    name = "notifier"

    @abc.abstractmethod
    async def send(self, url: str, transition: Transition, detail: str | None = None) -> bool:
        """Deliver one transition alert. Returns True when the channel acknowledged it."""

    def redact(self, text: str) -> str:
        return text


class TransportNotifier(Notifier):
    """Formats the alert and hands the text to `deliver`."""

    async def send(self, url: str, transition: Transition, detail: str | None = None) -> bool:
        message = build_alert_message(url, transition, detail)
        try:
            await self.deliver(message)
        except NotificationError as exc:
            logger.error(
                "Problem sending notification",
                channel=self.name,
                url=safe_url(url),
                transition=transition.value,
                error=self.redact(str(exc)),
                status_code=exc.status_code,
            )
            return False
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.error(
                "Problem sending notification",
                channel=self.name,
                url=safe_url(url),
                transition=transition.value,
                error=self.redact(f"{type(exc).__name__}: {exc}"),
            )
            return False

        logger.debug("Notification sent", channel=self.name, url=safe_url(url), transition=transition.value)
        return True

    @abc.abstractmethod
    async def deliver(self, message: str) -> None:
        """Send `message`; raise NotificationError or an httpx error on failure."""


@dataclass(frozen=True)
class PushoverConfig:
    api_key: str
    user_key: str


class PushoverNotifier(TransportNotifier):
    name = "pushover"

    def __init__(self, client: httpx.AsyncClient, config: PushoverConfig, *, api_url: str = PUSHOVER_API_URL) -> None:
        self.client = client
        self.config = config
        self.api_url = api_url

    async def deliver(self, message: str) -> None:
        payload = {"token": self.config.api_key, "user": self.config.user_key, "message": message}
        resp = await self.client.post(self.api_url, json=payload, timeout=NOTIFY_TIMEOUT_SECONDS)
        if not resp.is_success:
            raise NotificationError(
                f"Failed to send notification: {resp.text[:300]}",
                status_code=resp.status_code,
            )

    def redact(self, text: str) -> str:
        for secret in (self.config.api_key, self.config.user_key):
            if secret:
                text = text.replace(secret, "<redacted>")
        return text


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str
    chat_id: str


class TelegramNotifier(TransportNotifier):
    name = "telegram"

    def __init__(self, client: httpx.AsyncClient, config: TelegramConfig, *, api_base: str = TELEGRAM_API_BASE) -> None:
        self.client = client
        self.config = config
        self.api_base = api_base.rstrip("/")

    async def deliver(self, message: str) -> None:
        url = f"{self.api_base}/bot{self.config.bot_token}/sendMessage"
        payload = {"chat_id": self.config.chat_id, "text": message}
        resp = await self.client.post(url, json=payload, timeout=NOTIFY_TIMEOUT_SECONDS)
        try:
            data = resp.json()
        except ValueError:
            data = {"ok": False, "error": f"non-JSON response (HTTP {resp.status_code})"}
        if not isinstance(data, dict) or not data.get("ok"):
            raise NotificationError(
                f"Telegram rejected message: {redact_telegram_response(data)}",
                status_code=resp.status_code,
            )

    def redact(self, text: str) -> str:
        if self.config.bot_token:
            text = text.replace(self.config.bot_token, "<redacted>")
        return text


def redact_telegram_response(data: object) -> str:
    if not isinstance(data, dict):
        return json.dumps({"ok": False})
    safe = {"ok": data.get("ok")}
    for key in ("error_code", "description", "error"):
        if data.get(key):
            safe[key] = data.get(key)
    return json.dumps(safe, ensure_ascii=False)


class MultiNotifier(Notifier):
    """Sends through every configured channel; succeeds if any channel does."""

    name = "multi"

    def __init__(self, notifiers: list[Notifier]) -> None:
        if not notifiers:
            raise ValueError("MultiNotifier needs at least one notifier")
        self.notifiers = list(notifiers)

    async def send(self, url: str, transition: Transition, detail: str | None = None) -> bool:
        results = [await n.send(url, transition, detail) for n in self.notifiers]
        return any(results)

    def redact(self, text: str) -> str:
        for notifier in self.notifiers:
            text = notifier.redact(text)
        return text
