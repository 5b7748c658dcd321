# Stdlib imports
import datetime
import logging
import pathlib
import re
import shlex
import tempfile
import typing

# Local imports
from . import errors, model, transfer

log = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "%Y-%m-%d_%H%M%S"

_leading_date = re.compile(r"^(\d{4}-\d{2}-\d{2})")


class RemoteEntry(typing.NamedTuple):
    name: str
    is_dir: bool


def snapshot_name_for(run_start: datetime.datetime) -> str:
    return run_start.strftime(SNAPSHOT_FORMAT)


def parse_snapshot_date(name: str) -> typing.Optional[datetime.date]:
    match = _leading_date.match(name)
    if not match:
        return None
    try:
        return datetime.datetime.strptime(match.group(1), "%Y-%m-%d").date()
    except ValueError:
        return None


def expired_snapshots(
    names: typing.Iterable[str],
    retention_days: int,
    now: typing.Optional[datetime.datetime] = None,
) -> list[str]:
    """Snapshot folders dated before `now - retention_days`.

    Folders whose name does not start with a date are never returned.
    """
    now = now or datetime.datetime.now()
    cutoff = now - datetime.timedelta(days=retention_days)
    expired = []
    for name in names:
        snapshot_date = parse_snapshot_date(name)
        if snapshot_date is None:
            log.info(f"Leaving recycle bin folder '{name}' alone, it has no date")
            continue
        if datetime.datetime.combine(snapshot_date, datetime.time()) < cutoff:
            expired.append(name)
    return sorted(expired)


def parse_listing(output: str) -> list[RemoteEntry]:
    """Parse `rsync --list-only` lines into names and directory flags."""
    entries = []
    for line in output.splitlines():
        fields = line.split(maxsplit=4)
        if len(fields) < 5 or fields[0][:1] not in ("d", "-", "l"):
            continue
        name = fields[4]
        if fields[0].startswith("l"):
            name = name.split(" -> ", 1)[0]
        if name == ".":
            continue
        entries.append(RemoteEntry(name=name, is_dir=fields[0].startswith("d")))
    return entries


def remote_entry(
    invoker: transfer.Transfer, remote_path: str
) -> typing.Optional[RemoteEntry]:
    """Look up a single remote path; None when it does not exist."""
    result = invoker.list_remote(remote_path.rstrip("/"))
    if not result.ok:
        return None
    entries = parse_listing(result.output)
    return entries[0] if entries else None


class RecycleBin:
    """Dated remote folders that hold what a backup run would have deleted."""

    def __init__(self, config: model.BackupConfiguration, invoker: transfer.Transfer):
        self.config = config
        self.transfer = invoker

    @property
    def root(self) -> str:
        root = self.config.recycle_root
        if root is None:
            raise errors.ConfigError("The recycle bin is not enabled")
        return root

    def snapshot_path_for(self, run_start: datetime.datetime) -> str:
        return f"{self.root}{snapshot_name_for(run_start)}/"

    def list_snapshots(self) -> list[str]:
        result = self.transfer.list_remote(self.root)
        if not result.ok:
            raise errors.PruneError(
                f"Could not list recycle bin '{self.root}' (rsync exit code {result.exit_code})"
            )
        return sorted(entry.name for entry in parse_listing(result.output) if entry.is_dir)

    def _remove_snapshot(self, empty_dir: pathlib.Path, name: str) -> None:
        path = f"{self.root}{name}/"

        # Remote shells on storage boxes are restricted, so the contents are
        # removed by mirroring an empty directory over them
        emptied = self.transfer.empty_remote_directory(empty_dir, path)
        if not emptied.ok:
            raise errors.PruneError(
                f"Could not empty recycle bin folder '{path}' (rsync exit code {emptied.exit_code})"
            )

        removed = self.transfer.ssh("rmdir", shlex.quote(path.rstrip("/")))
        if not removed.ok:
            raise errors.PruneError(
                f"Could not remove recycle bin folder '{path}' (ssh exit code {removed.exit_code})"
            )

    def prune(
        self,
        retention_days: typing.Optional[int] = None,
        now: typing.Optional[datetime.datetime] = None,
    ) -> list[str]:
        """Delete expired snapshot folders. Problems are logged, never raised."""
        retention_days = retention_days or self.config.recycle_bin_retention_days
        assert retention_days is not None

        try:
            names = self.list_snapshots()
        except errors.PruneError as err:
            log.warning(err.message)
            return []

        removed = []
        with tempfile.TemporaryDirectory(prefix="offsite-backup-empty-") as empty_dir:
            for name in expired_snapshots(names, retention_days, now):
                log.info(f"Removing expired recycle bin folder '{name}'")
                try:
                    self._remove_snapshot(pathlib.Path(empty_dir), name)
                except errors.PruneError as err:
                    log.warning(err.message)
                    continue
                removed.append(name)

        return removed
