# Stdlib imports
import datetime
import email.header
import enum
import logging
import typing

# Vendor imports
import pydantic
import requests

# Local imports
from . import errors, helper, model, stats

log = logging.getLogger(__name__)

REQUEST_TIMEOUT = 15


class Status(str, enum.Enum):
    SUCCESS = "success"
    WARNING = "warning"
    FAILURE = "failure"
    INFO = "info"


DISCORD_COLORS = {
    Status.SUCCESS: 3066993,
    Status.WARNING: 16776960,
    Status.FAILURE: 15158332,
}
DISCORD_DEFAULT_COLOR = 9807270


class Notification(pydantic.BaseModel):
    title: str
    status: Status
    tags: str
    message: str
    priority: typing.Optional[str] = None


def _header(value: str) -> str:
    # HTTP headers are latin-1; ntfy decodes RFC 2047 encoded words
    try:
        value.encode("latin-1")
    except UnicodeEncodeError:
        return email.header.Header(value, "utf-8").encode(maxlinelen=0)
    return value


class Dispatcher:
    """Delivers notifications to ntfy and/or a Discord webhook.

    Delivery problems are logged and never interrupt the caller.
    """

    def __init__(
        self,
        config: model.BackupConfiguration,
        hostname: typing.Optional[str] = None,
    ):
        self.config = config
        self.hostname = hostname or helper.short_hostname()

    def _priority(self, notification: Notification) -> str:
        if notification.priority:
            return notification.priority
        return {
            Status.SUCCESS: self.config.ntfy_priority_success,
            Status.WARNING: self.config.ntfy_priority_warning,
            Status.FAILURE: self.config.ntfy_priority_failure,
        }.get(notification.status, "default")

    def send_ntfy(self, notification: Notification) -> None:
        if not self.config.ntfy_enabled:
            return
        assert self.config.ntfy_url and self.config.ntfy_token
        try:
            response = requests.post(
                self.config.ntfy_url,
                data=notification.message.encode("utf-8"),
                headers={
                    "Title": _header(notification.title),
                    "Tags": notification.tags,
                    "Priority": self._priority(notification),
                },
                auth=("", self.config.ntfy_token),
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
        except requests.RequestException as err:
            log.error(f"Failed to send ntfy notification: {err}")

    def send_discord(self, notification: Notification) -> None:
        if not self.config.discord_enabled:
            return
        assert self.config.discord_webhook_url
        payload = {
            "embeds": [
                {
                    "title": notification.title,
                    "description": notification.message,
                    "color": DISCORD_COLORS.get(
                        notification.status, DISCORD_DEFAULT_COLOR
                    ),
                    "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat(),
                }
            ]
        }
        try:
            response = requests.post(
                self.config.discord_webhook_url,
                json=payload,
                timeout=REQUEST_TIMEOUT,
            )
            response.raise_for_status()
        except requests.RequestException as err:
            log.error(f"Failed to send Discord notification: {err}")

    def send(self, notification: Notification) -> None:
        log.info(f"Notification: {notification.title}")
        self.send_ntfy(notification)
        self.send_discord(notification)

    ### Notification builders ###

    def report_notification(self, report: model.BackupReport) -> Notification:
        duration = f"Duration: {helper.format_duration(report.duration)}"
        stats_text = stats.format_stats(report.stats)

        if report.outcome is model.Outcome.SUCCESS:
            return Notification(
                title=f"✅ Backup SUCCESS: {self.hostname}",
                status=Status.SUCCESS,
                tags="white_check_mark",
                message=f"{stats_text}\n\n{duration}",
            )

        if report.outcome is model.Outcome.WARNING:
            warned = "\n".join(
                f"- {result.target} (code {result.exit_code})" for result in report.warned
            )
            return Notification(
                title=f"⚠️ Backup Warning: {self.hostname}",
                status=Status.WARNING,
                tags="warning",
                message=(
                    "rsync completed with warnings. Some files vanished or could "
                    f"not be transferred:\n{warned}\n\n{stats_text}\n\n{duration}"
                ),
            )

        failed = "\n".join(
            f"- {result.target} (code {result.exit_code})" for result in report.failed
        )
        succeeded = len(report.results) - len(report.failed)
        return Notification(
            title=f"❌ Backup FAILED: {self.hostname}",
            status=Status.FAILURE,
            tags="x",
            message=(
                f"rsync failed for {len(report.failed)} of {len(report.results)} "
                f"directories on {self.hostname}:\n{failed}\n\n"
                f"{succeeded} directories completed. Check log for details.\n\n{duration}"
            ),
        )

    def crash_notification(self) -> Notification:
        return Notification(
            title=f"❌ Backup Crashed: {self.hostname}",
            status=Status.FAILURE,
            tags="x",
            message=f"Backup terminated unexpectedly. Check log: {self.config.log_file}",
        )

    def preflight_failure_notification(self, error: errors.BackupError) -> Notification:
        title = (
            f"❌ SSH FAILED: {self.hostname}"
            if isinstance(error, errors.ConnectivityError)
            else f"❌ Backup FAILED: {self.hostname}"
        )
        return Notification(
            title=title, status=Status.FAILURE, tags="x", message=error.message
        )

    def integrity_notification(self, differing: list[str]) -> Notification:
        if not differing:
            return Notification(
                title=f"✅ Backup Integrity OK: {self.hostname}",
                status=Status.SUCCESS,
                tags="white_check_mark",
                message="Checksum validation passed. No discrepancies found.",
            )
        first = "\n".join(differing[:10])
        return Notification(
            title=f"❌ Backup Integrity FAILED: {self.hostname}",
            status=Status.FAILURE,
            tags="x",
            message=(
                f"Backup integrity check FAILED.\n\nFirst 10 differing files:\n{first}"
                "\n\nCheck log for full details."
            ),
        )

    def summary_notification(self, mismatches: int) -> Notification:
        return Notification(
            title=f"📊 Backup Summary: {self.hostname}",
            status=Status.INFO,
            tags="bar_chart",
            priority="default",
            message=f"Mismatched files found: {mismatches}",
        )

    def restore_notification(self, succeeded: bool, description: str) -> Notification:
        if succeeded:
            return Notification(
                title=f"✅ Restore SUCCESS: {self.hostname}",
                status=Status.SUCCESS,
                tags="white_check_mark",
                message=f"Restored {description}",
            )
        return Notification(
            title=f"❌ Restore FAILED: {self.hostname}",
            status=Status.FAILURE,
            tags="x",
            message=f"Restore of {description} failed. Check log for details.",
        )
