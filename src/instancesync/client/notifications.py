"""Cross-platform user notices for the sync engine.

This module provides:
- Native OS notifications (Windows toast, macOS notification center, Linux notify-send)
- Fallback to the log if notifications are unavailable
- Helpers for the notices the sync engine raises (failed actions,
  failed or rolled-back conflict resolutions)
"""

from __future__ import annotations

import logging
import platform
import subprocess
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum, auto

logger = logging.getLogger(__name__)

APP_NAME = "InstanceSync"


class NotificationType(Enum):
    """Type of notification."""

    INFO = auto()
    WARNING = auto()
    ERROR = auto()
    CONFLICT = auto()


@dataclass
class Notification:
    """Represents a notification to display."""

    title: str
    message: str
    type: NotificationType = NotificationType.INFO


# Type alias for anything that can display a notification
Notifier = Callable[[Notification], bool]


def _notify_windows(notification: Notification) -> bool:
    """Send notification on Windows using a PowerShell toast."""
    title = notification.title.replace('"', "'")
    message = notification.message.replace('"', "'")
    ps_script = f'''
    [Windows.UI.Notifications.ToastNotificationManager, Windows.UI.Notifications, ContentType = WindowsRuntime] | Out-Null
    $xml = [Windows.UI.Notifications.ToastNotificationManager]::GetTemplateContent(
        [Windows.UI.Notifications.ToastTemplateType]::ToastText02)
    $texts = $xml.GetElementsByTagName("text")
    $texts.Item(0).AppendChild($xml.CreateTextNode("{title}")) | Out-Null
    $texts.Item(1).AppendChild($xml.CreateTextNode("{message}")) | Out-Null
    $toast = New-Object Windows.UI.Notifications.ToastNotification $xml
    [Windows.UI.Notifications.ToastNotificationManager]::CreateToastNotifier("{APP_NAME}").Show($toast)
    '''
    try:
        subprocess.run(
            ["powershell", "-ExecutionPolicy", "Bypass", "-Command", ps_script],
            capture_output=True,
            check=True,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
        return True
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("Windows notification failed: %s", e)
        return False


def _notify_macos(notification: Notification) -> bool:
    """Send notification on macOS using osascript."""
    title = notification.title.replace('"', '\\"')
    message = notification.message.replace('"', '\\"')
    script = f'display notification "{message}" with title "{title}"'
    try:
        subprocess.run(["osascript", "-e", script], capture_output=True, check=True)
        return True
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("macOS notification failed: %s", e)
        return False


def _notify_linux(notification: Notification) -> bool:
    """Send notification on Linux using notify-send."""
    urgency_map = {
        NotificationType.INFO: "normal",
        NotificationType.WARNING: "normal",
        NotificationType.ERROR: "critical",
        NotificationType.CONFLICT: "critical",
    }
    try:
        subprocess.run(
            [
                "notify-send",
                "--urgency", urgency_map.get(notification.type, "normal"),
                "--app-name", APP_NAME,
                notification.title,
                notification.message,
            ],
            capture_output=True,
            check=True,
        )
        return True
    except FileNotFoundError:
        logger.debug("notify-send not found")
        return False
    except (OSError, subprocess.CalledProcessError) as e:
        logger.debug("Linux notification failed: %s", e)
        return False


def send_notification(notification: Notification) -> bool:
    """Send a system notification.

    The notice is always logged; the native notification is best effort.

    Returns:
        True if a native notification was shown.
    """
    level = logging.WARNING if notification.type != NotificationType.INFO else logging.INFO
    logger.log(level, "%s: %s", notification.title, notification.message)

    system = platform.system()
    if system == "Windows":
        return _notify_windows(notification)
    if system == "Darwin":
        return _notify_macos(notification)
    if system == "Linux":
        return _notify_linux(notification)
    logger.debug("Notifications not supported on %s", system)
    return False


def notify_action_failed(resource_key: str, error: str, notifier: Notifier = send_notification) -> bool:
    """Tell the user a queued change was rejected for good."""
    return notifier(Notification(
        title=f"{APP_NAME} - Sync Failed",
        message=f"Changes to '{resource_key}' could not be synced: {error}",
        type=NotificationType.ERROR,
    ))


def notify_resolution_failed(
    instance_name: str,
    error: str,
    rolled_back: bool,
    notifier: Notifier = send_notification,
) -> bool:
    """Tell the user a conflict resolution did not complete."""
    if rolled_back:
        message = f"Could not resolve '{instance_name}', local copy restored: {error}"
    else:
        message = f"Could not resolve '{instance_name}', will retry: {error}"
    return notifier(Notification(
        title=f"{APP_NAME} - Conflict",
        message=message,
        type=NotificationType.CONFLICT,
    ))


def notify_conflicts_found(count: int, notifier: Notifier = send_notification) -> bool:
    """Tell the user instances diverged across devices."""
    if count == 0:
        return False
    return notifier(Notification(
        title=f"{APP_NAME} - Conflicts Detected",
        message=f"{count} instance(s) differ between this device and the cloud.",
        type=NotificationType.CONFLICT,
    ))
