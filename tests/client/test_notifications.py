"""Tests for notification system."""

import subprocess
from unittest.mock import MagicMock, patch

from instancesync.client.notifications import (
    Notification,
    NotificationType,
    notify_action_failed,
    notify_conflicts_found,
    notify_resolution_failed,
    send_notification,
)


class TestNotification:
    """Tests for Notification dataclass."""

    def test_notification_default_type(self) -> None:
        """Should default to INFO type."""
        notif = Notification(title="Title", message="Message")
        assert notif.type == NotificationType.INFO


class TestNotificationHelpers:
    """Tests for notification helper functions."""

    def test_notify_action_failed(self) -> None:
        """Should send an error notice naming the resource."""
        notifier = MagicMock(return_value=True)

        result = notify_action_failed("My Pack", "unsupported version", notifier)

        assert result is True
        notice = notifier.call_args[0][0]
        assert "Sync Failed" in notice.title
        assert "My Pack" in notice.message
        assert "unsupported version" in notice.message
        assert notice.type == NotificationType.ERROR

    def test_notify_resolution_failed_rolled_back(self) -> None:
        notifier = MagicMock(return_value=True)

        notify_resolution_failed("Pack", "disk full", True, notifier)

        notice = notifier.call_args[0][0]
        assert "restored" in notice.message
        assert notice.type == NotificationType.CONFLICT

    def test_notify_resolution_failed_pending(self) -> None:
        notifier = MagicMock(return_value=True)

        notify_resolution_failed("Pack", "disk full", False, notifier)

        assert "will retry" in notifier.call_args[0][0].message

    def test_notify_conflicts_found(self) -> None:
        notifier = MagicMock(return_value=True)

        assert notify_conflicts_found(3, notifier) is True
        assert "3 instance(s)" in notifier.call_args[0][0].message

    def test_notify_no_conflicts(self) -> None:
        """Should not send notification when nothing diverged."""
        notifier = MagicMock()

        assert notify_conflicts_found(0, notifier) is False
        notifier.assert_not_called()


class TestSendNotification:
    """Tests for send_notification function."""

    @patch("instancesync.client.notifications.platform.system")
    @patch("instancesync.client.notifications.subprocess.run")
    def test_linux_uses_notify_send(self, mock_run: MagicMock, mock_system: MagicMock) -> None:
        """Should call notify-send on Linux."""
        mock_system.return_value = "Linux"

        result = send_notification(Notification("Title", "Msg", NotificationType.ERROR))

        assert result is True
        args = mock_run.call_args[0][0]
        assert args[0] == "notify-send"
        assert "critical" in args

    @patch("instancesync.client.notifications.platform.system")
    @patch("instancesync.client.notifications.subprocess.run")
    def test_linux_without_notify_send(self, mock_run: MagicMock, mock_system: MagicMock) -> None:
        """Should return False when notify-send is missing."""
        mock_system.return_value = "Linux"
        mock_run.side_effect = FileNotFoundError()

        assert send_notification(Notification("Title", "Msg")) is False

    @patch("instancesync.client.notifications.platform.system")
    @patch("instancesync.client.notifications.subprocess.run")
    def test_macos_failure(self, mock_run: MagicMock, mock_system: MagicMock) -> None:
        mock_system.return_value = "Darwin"
        mock_run.side_effect = subprocess.CalledProcessError(1, "osascript")

        assert send_notification(Notification("Title", "Msg")) is False

    @patch("instancesync.client.notifications.platform.system")
    def test_unsupported_platform(self, mock_system: MagicMock) -> None:
        mock_system.return_value = "Plan9"

        assert send_notification(Notification("Title", "Msg")) is False
