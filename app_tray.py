# ======================================================================
#  File......: app_tray.py
#  Purpose...: Tray launcher (Start/Stop/Refresh, queue actions, Exit).
#              Icon colour + tooltip follow the published status.
#  Version...: 0.2.0
#  Date......: 2026-10-17
#  Author....: Edwin Rodriguez
# ======================================================================

from __future__ import annotations

import logging
from typing import Callable, Optional

import pystray
from PIL import Image, ImageDraw

from controls import QueueControls
from errors import MonitorError
from models import MonitorStatus
from poller import Poller
from status_io import describe_status

logger = logging.getLogger(__name__)

APP_TITLE = "Immich Job Monitor"

COLORS = {
    None: (128, 128, 128, 255),
    True: (46, 160, 67, 255),
    False: (207, 34, 46, 255),
}


def _make_icon(connected: Optional[bool] = None) -> Image.Image:
    """Generated tray icon; fill colour shows connection state."""
    img = Image.new("RGBA", (64, 64), (0, 0, 0, 0))
    d = ImageDraw.Draw(img)
    d.rounded_rectangle((6, 6, 58, 58), radius=12, fill=COLORS[connected],
                        outline=(255, 255, 255, 255), width=3)
    d.text((18, 22), "IJ", fill=(255, 255, 255, 255))
    return img


class TrayApp:
    def __init__(
        self,
        poller: Poller,
        controls: QueueControls,
        on_exit: Optional[Callable[[], None]] = None,
    ):
        self.poller = poller
        self.controls = controls
        self.on_exit = on_exit
        self.icon: Optional[pystray.Icon] = None
        self._last_connected: Optional[bool] = None
        self._last_failed: Optional[int] = None
        self._unsubscribe = poller.subscribe(self.on_status)

    # --- status subscriber

    def on_status(self, status: MonitorStatus) -> None:
        if self.icon is None:
            return
        if status.connected != self._last_connected:
            self.icon.icon = _make_icon(status.connected)
            if status.connected is False and self._last_connected:
                self._notify(status.error_message or "Lost connection to server")
            self._last_connected = status.connected
        self.icon.title = f"{APP_TITLE}\n{describe_status(status)}"

        if status.connected and status.stats is not None:
            failed = status.stats.jobs_failed_today
            if self._last_failed is not None and failed > self._last_failed:
                self._notify(f"{failed - self._last_failed} new failed job(s)")
            self._last_failed = failed

    def _notify(self, message: str) -> None:
        try:
            self.icon.notify(message, APP_TITLE)
        except NotImplementedError:
            logger.info("Notification: %s", message)

    def _guard(self, action: Callable[[], object], label: str) -> Callable:
        """Wrap a menu action so errors end up as a notification."""
        def handler(icon, item):
            try:
                result = action()
            except MonitorError as e:
                logger.warning("%s failed: %s", label, e)
                self._notify(f"{label} failed: {e}")
                return
            if isinstance(result, list) and result:
                self._notify(f"{label}: failed for {', '.join(result)}")
        return handler

    # --- menu

    def _on_exit(self, icon, item) -> None:
        self._unsubscribe()
        self.poller.stop()
        if self.on_exit:
            self.on_exit()
        icon.stop()

    def build_menu(self) -> pystray.Menu:
        return pystray.Menu(
            pystray.MenuItem("Start polling", self._guard(self.poller.start, "Start"),
                             enabled=lambda item: not self.poller.is_polling),
            pystray.MenuItem("Stop polling", self._guard(self.poller.stop, "Stop"),
                             enabled=lambda item: self.poller.is_polling),
            pystray.MenuItem("Refresh now", self._guard(self.poller.refresh, "Refresh")),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Pause all queues", self._guard(self.controls.pause_all, "Pause all")),
            pystray.MenuItem("Resume all queues", self._guard(self.controls.resume_all, "Resume all")),
            pystray.MenuItem("Retry failed jobs", self._guard(self.controls.retry_failed, "Retry failed")),
            pystray.MenuItem("Clear completed jobs",
                             self._guard(self.controls.clear_completed, "Clear completed")),
            pystray.Menu.SEPARATOR,
            pystray.MenuItem("Exit", self._on_exit),
        )

    def run(self) -> None:
        self.icon = pystray.Icon(APP_TITLE, _make_icon(None), APP_TITLE, menu=self.build_menu())
        self.poller.start()
        self.icon.run()
