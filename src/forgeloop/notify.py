"""Best-effort operator notifications (Slack webhook and desktop banner).

Delivery failures are logged and swallowed: a notification never changes
control flow.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import platform
import shutil
import socket
import subprocess
from typing import Protocol
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 10


class Notifier(Protocol):
    def notify(self, emoji: str, title: str, message: str) -> None: ...


def format_slack_text(emoji: str, title: str, message: str, *, host: str, timestamp: str) -> str:
    return f"{emoji} *{title}*\n{message}\n_{host} • {timestamp}_"


class OperatorNotifier:
    """Sends each notification to Slack (when configured) and the desktop.

    Parameters
    ----------
    webhook_url:
        Slack incoming-webhook URL; empty disables Slack delivery.
    desktop:
        When True, also raise a desktop banner via ``osascript`` (macOS) or
        ``notify-send`` (Linux) if available.
    """

    def __init__(
        self,
        webhook_url: str = "",
        *,
        desktop: bool = True,
        timeout_s: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        self.webhook_url = (webhook_url or "").strip()
        self.desktop = desktop
        self.timeout_s = timeout_s

    def notify(self, emoji: str, title: str, message: str) -> None:
        logger.info("Notify: %s %s - %s", emoji, title, message)
        if self.webhook_url:
            self._send_slack(emoji, title, message)
        if self.desktop:
            self._send_desktop(title, message)

    def _send_slack(self, emoji: str, title: str, message: str) -> None:
        text = format_slack_text(
            emoji,
            title,
            message,
            host=socket.gethostname(),
            timestamp=dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        )
        body = json.dumps({"text": text}).encode("utf-8")
        request = Request(
            self.webhook_url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(request, timeout=float(self.timeout_s)) as response:
                response.read()
        except HTTPError as exc:
            logger.warning("Slack webhook returned HTTP %s for '%s'", exc.code, title)
        except (URLError, OSError) as exc:
            logger.warning("Slack webhook delivery failed for '%s': %s", title, exc)

    def _send_desktop(self, title: str, message: str) -> None:
        system = platform.system()
        if system == "Darwin" and shutil.which("osascript"):
            script = f"display notification {json.dumps(message)} with title {json.dumps(title)}"
            cmd = ["osascript", "-e", script]
        elif system == "Linux" and shutil.which("notify-send"):
            cmd = ["notify-send", title, message]
        else:
            return
        try:
            subprocess.run(cmd, capture_output=True, timeout=5, check=False)
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.debug("Desktop notification failed: %s", exc)


class NullNotifier:
    """Discards notifications; used by tests and ``--no-notify`` runs."""

    def notify(self, emoji: str, title: str, message: str) -> None:
        logger.debug("Notification suppressed: %s %s", title, message)
