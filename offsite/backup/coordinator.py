# Stdlib imports
import datetime
import functools
import logging
import os
import pathlib
import shutil
import typing

# Local imports
from . import command, errors, helper, model, notify, recycle, stats, transfer

log = logging.getLogger(__name__)

MEBIBYTE = 1024 * 1024


### Preflight checks ###


def check_connectivity(
    config: model.BackupConfiguration, runner: command.Runner
) -> None:
    result = runner("ssh", transfer.ssh_arguments(config, "exit"))
    if not result.ok:
        raise errors.ConnectivityError(
            f"Unable to SSH into {config.box_addr}. Check keys and connectivity."
        )


def check_targets(config: model.BackupConfiguration) -> None:
    for target in config.backup_dirs:
        path = pathlib.Path(target.local_path)
        if not path.is_dir():
            raise errors.TargetValidationError(
                f"FATAL: Backup directory '{target.local_path}' does not exist or is not a directory."
            )
        if not os.access(path, os.R_OK | os.X_OK):
            raise errors.TargetValidationError(
                f"FATAL: Backup directory '{target.local_path}' is not readable."
            )


def check_disk_space(config: model.BackupConfiguration) -> None:
    log_dir = config.log_file.expanduser().parent
    if not log_dir.is_dir():
        raise errors.ResourceError(f"FATAL: Log directory '{log_dir}' does not exist.")

    required = config.log_min_free_mb * MEBIBYTE
    free = shutil.disk_usage(log_dir).free
    if free < required:
        raise errors.ResourceError(
            f"FATAL: Log directory '{log_dir}' has {helper.human_readable(free)} free, "
            f"at least {helper.human_readable(required)} is required."
        )


def preflight_checks(
    config: model.BackupConfiguration,
    runner: command.Runner = command.run_command,
    check_commands: typing.Callable[[], None] = command.check_prerequisites,
) -> list[tuple[str, typing.Callable[[], None]]]:
    """Named preflight checks in the order they must pass."""
    return [
        ("Required commands", check_commands),
        ("SSH connectivity", functools.partial(check_connectivity, config, runner)),
        ("Backup directories", functools.partial(check_targets, config)),
        ("Log disk space", functools.partial(check_disk_space, config)),
    ]


class Coordinator:
    """Runs one backup pass, or one of the non-default modes, for a configuration."""

    def __init__(
        self,
        config: model.BackupConfiguration,
        exclude_file: pathlib.Path,
        runner: command.Runner = command.run_command,
        dispatcher: typing.Optional[notify.Dispatcher] = None,
        lock_path: pathlib.Path = helper.default_lock_path,
        progress: bool = False,
        check_commands: typing.Callable[[], None] = command.check_prerequisites,
        clock: typing.Callable[[], datetime.datetime] = datetime.datetime.now,
    ):
        self.config = config
        self.runner = runner
        self.transfer = transfer.Transfer(config, exclude_file, runner, progress)
        self.recycle_bin = (
            recycle.RecycleBin(config, self.transfer)
            if config.recycle_bin_enabled
            else None
        )
        self.dispatcher = dispatcher or notify.Dispatcher(config)
        self.lock_path = lock_path
        self.check_commands = check_commands
        self.clock = clock

    def preflight(
        self, notify_failure: bool = True, skip: typing.Collection[str] = ()
    ) -> None:
        for name, check in preflight_checks(
            self.config, self.runner, self.check_commands
        ):
            if name in skip:
                continue
            try:
                check()
            except errors.BackupError as err:
                log.error(err.message)
                # Without the prerequisites there may be no way to notify anyway
                if notify_failure and not isinstance(err, errors.PrerequisiteError):
                    self.dispatcher.send(
                        self.dispatcher.preflight_failure_notification(err)
                    )
                raise

    def run(self) -> model.BackupReport:
        """Back up every target while holding the lock and report the outcome."""
        with helper.exclusive_lock(self.lock_path):
            try:
                return self._run_locked()
            except errors.BackupError:
                raise
            except (Exception, KeyboardInterrupt) as err:
                log.exception(f"Backup crashed: {err!r}")
                self.dispatcher.send(self.dispatcher.crash_notification())
                raise errors.CrashError(f"Backup crashed: {err!r}") from err

    def _rotate_logs(self) -> None:
        log_file = self.config.log_file.expanduser()
        rotated = helper.rotate_log(
            log_file, self.config.log_max_size_mb * MEBIBYTE, self.clock()
        )
        if rotated:
            log.info(f"Rotated log file to '{rotated}'")
        for removed in helper.prune_rotated_logs(
            log_file, self.config.log_retention_days, self.clock()
        ):
            log.info(f"Removed old log file '{removed}'")

    def _backup_target(
        self, target: model.BackupTarget, snapshot_path: typing.Optional[str]
    ) -> tuple[model.RunResult, str]:
        log.info(f"Backing up '{target.local_path}'...")
        result = self.transfer.backup(target, snapshot_path)
        run_result = model.RunResult.from_exit_code(target, result.exit_code)

        if run_result.outcome is model.Outcome.SUCCESS:
            log.info(f"SUCCESS: rsync completed for '{target.local_path}'.")
        elif run_result.outcome is model.Outcome.WARNING:
            log.warning(
                f"WARNING: rsync completed with code {result.exit_code} for "
                f"'{target.local_path}' (some files vanished or were not transferred)."
            )
        else:
            log.error(
                f"FAILED: rsync exited with code {result.exit_code} for '{target.local_path}'."
            )

        return run_result, result.output

    def _prune_recycle_bin(self) -> None:
        if self.recycle_bin is None:
            return
        try:
            removed = self.recycle_bin.prune()
        except errors.BackupError as err:
            log.warning(f"Recycle bin cleanup failed: {err.message}")
            return
        if removed:
            log.info(f"Removed {len(removed)} expired recycle bin folder(s)")

    def _run_locked(self) -> model.BackupReport:
        self._rotate_logs()

        log.info("=" * 60)
        log.info("Starting rsync backup...")
        started_at = self.clock()

        # One snapshot folder per run, shared by every target
        snapshot_path = (
            self.recycle_bin.snapshot_path_for(started_at) if self.recycle_bin else None
        )

        results = []
        outputs = []
        for target in self.config.backup_dirs:
            run_result, output = self._backup_target(target, snapshot_path)
            results.append(run_result)
            outputs.append(output)

        self._prune_recycle_bin()

        report = model.BackupReport(
            results=results,
            started_at=started_at,
            finished_at=self.clock(),
            stats=stats.parse_stats("\n".join(outputs)),
        )
        log.info(
            f"Run finished: {len(report.succeeded)} succeeded, {len(report.warned)} "
            f"with warnings, {len(report.failed)} failed "
            f"({helper.format_duration(report.duration)})"
        )

        self.dispatcher.send(self.dispatcher.report_notification(report))
        log.info("=" * 23 + " Run Finished " + "=" * 23)
        return report

    ### Non-default modes ###

    def dry_run(self) -> list[model.RunResult]:
        snapshot_path = (
            self.recycle_bin.snapshot_path_for(self.clock()) if self.recycle_bin else None
        )
        results = []
        for target in self.config.backup_dirs:
            log.info(f"Previewing '{target.local_path}'...")
            result = self.transfer.dry_run(target, snapshot_path)
            if not result.ok:
                log.error(
                    f"Dry run FAILED for '{target.local_path}' with exit code {result.exit_code}."
                )
            results.append(model.RunResult.from_exit_code(target, result.exit_code))
        return results

    def _differing_files(self) -> list[str]:
        differing = []
        for target in self.config.backup_dirs:
            result = self.transfer.integrity_check(target)
            if not result.ok:
                log.error(
                    f"Integrity check for '{target.local_path}' exited with code {result.exit_code}."
                )
            for line in result.output.splitlines():
                if not line.strip():
                    continue
                if line.startswith(("rsync:", "rsync error:")):
                    log.warning(line)
                    continue
                differing.append(line)
        return differing

    def integrity_check(self) -> list[str]:
        differing = self._differing_files()
        if differing:
            log.warning(f"Integrity check found {len(differing)} differing file(s):")
            for name in differing:
                log.warning(f"  {name}")
        else:
            log.info("Checksum validation passed. No discrepancies found.")
        self.dispatcher.send(self.dispatcher.integrity_notification(differing))
        return differing

    def summary(self) -> int:
        mismatches = len(self._differing_files())
        log.info(f"Summary mode check found {mismatches} mismatched files.")
        self.dispatcher.send(self.dispatcher.summary_notification(mismatches))
        return mismatches
