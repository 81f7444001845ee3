import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import requests

from wp_backup.config import ProjectConfig
from wp_backup.notifiers import Notifier, SlackNotifier, TelegramNotifier, build_notifiers
from wp_backup.status import Phase, StatusReporter, format_duration


class RecordingNotifier(Notifier):
    name = "recording"

    def __init__(self):
        self.messages = []

    def send(self, subject, body, attachment=None):
        self.messages.append((subject, body, attachment))


class BrokenNotifier(Notifier):
    name = "broken"

    def send(self, subject, body, attachment=None):
        raise requests.ConnectionError("webhook unreachable")


def _reporter(tmp_path, notifiers=()):
    return StatusReporter(
        "Backup",
        tmp_path / "logs" / "backup_status.log",
        notifiers=notifiers,
        hostname="web01",
        log_file=tmp_path / "logs" / "backup.log",
        clock=lambda: datetime(2024, 1, 1, 12, 30, 0),
    )


class TestStatusRecord:
    def test_single_record_is_overwritten(self, tmp_path):
        reporter = _reporter(tmp_path)
        reporter.update_status(Phase.STARTED, "Backup started")
        reporter.update_status(Phase.SUCCESS, "Backup done")

        lines = reporter.status_file.read_text().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0]) == {
            "operation": "Backup",
            "phase": "SUCCESS",
            "message": "Backup done",
            "timestamp": "2024-01-01T12:30:00",
        }
        assert reporter.read_status().phase == "SUCCESS"

    def test_read_status_without_file(self, tmp_path):
        assert _reporter(tmp_path).read_status() is None


class TestNotify:
    def test_message_format(self, tmp_path):
        channel = RecordingNotifier()
        _reporter(tmp_path, [channel]).notify(Phase.SUCCESS, "All good", "Restore")

        subject, body, _ = channel.messages[0]
        assert subject == "[SUCCESS] Restore Process on web01"
        assert body == "[SUCCESS] Restore Process on web01 at 2024-01-01 12:30:00\n\nAll good"

    def test_failing_channel_does_not_stop_others(self, tmp_path):
        channel = RecordingNotifier()
        delivered = _reporter(tmp_path, [BrokenNotifier(), channel]).notify(Phase.FAILURE, "Disk full")

        assert delivered == 1
        assert len(channel.messages) == 1

    def test_slack_http_error_is_isolated(self, tmp_path):
        response = MagicMock(status_code=500, text="server error")
        response.raise_for_status.side_effect = requests.HTTPError("500 Server Error")
        with patch("wp_backup.notifiers.requests.post", return_value=response) as post:
            delivered = _reporter(tmp_path, [SlackNotifier("https://hooks.example.com/T0")]).notify(
                Phase.SUCCESS, "done"
            )

        assert delivered == 0
        post.assert_called_once()
        assert "done" in post.call_args.kwargs["json"]["text"]

    def test_telegram_posts_message_and_document(self, tmp_path):
        log_file = tmp_path / "backup.log"
        log_file.write_text("log lines")
        response = MagicMock(status_code=200)
        with patch("wp_backup.notifiers.requests.post", return_value=response) as post:
            TelegramNotifier("123:abc", "42").send("subject", "body", attachment=log_file)

        urls = [call.args[0] for call in post.call_args_list]
        assert urls == [
            "https://api.telegram.org/bot123:abc/sendMessage",
            "https://api.telegram.org/bot123:abc/sendDocument",
        ]
        assert post.call_args_list[0].kwargs["data"] == {"chat_id": "42", "text": "subject\n\nbody"}


class TestCheckStatus:
    def test_zero_is_a_no_op(self, tmp_path):
        reporter = _reporter(tmp_path)
        reporter.check_status(0, "Database export")
        assert reporter.read_status() is None

    def test_non_zero_records_failure_notifies_and_exits(self, tmp_path):
        channel = RecordingNotifier()
        reporter = _reporter(tmp_path, [channel])

        with pytest.raises(SystemExit) as excinfo:
            reporter.check_status(2, "Database export", "Backup")

        assert excinfo.value.code == 2
        record = reporter.read_status()
        assert record.phase == "FAILURE"
        assert record.message == "Backup failed during Database export"
        subject, _, attachment = channel.messages[0]
        assert subject.startswith("[FAILURE] Backup")
        assert attachment == tmp_path / "logs" / "backup.log"


class TestBuildNotifiers:
    def test_channels_without_credentials_are_skipped(self):
        config = ProjectConfig(
            notify_method=["email", "slack", "telegram", "pager"],
            slack_webhook_url="https://hooks.example.com/T0",
        )
        notifiers = build_notifiers(config)
        assert [notifier.name for notifier in notifiers] == ["slack"]


@pytest.mark.parametrize("seconds,expected", [(5, "5s"), (65, "1m 5s"), (3725, "1h 2m 5s")])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected
