# Stdlib imports
import os
import pathlib
import signal
import typing

# Vendor imports
import typer

# Local imports
from . import (
    config as applicationConfig,
    coordinator,
    errors,
    helper,
    restore,
)

# Mode flags; at most one may be given
MODES = ("dry_run", "checksum", "summary", "test", "restore")

# Modes an operator runs by hand and watches; their failures are printed
# rather than reported through the crash notification
INTERACTIVE_MODES = ("dry_run", "test", "restore")


# Initialize the typer app
cli = typer.Typer(add_completion=False)


def _raise_terminated(signum, frame):
    raise errors.Terminated(f"Received signal {signum}")


def _fail(err: errors.BackupError) -> typer.Exit:
    helper.print_error(err.message)
    return typer.Exit(err.exit_code)


def run_backup(backup: coordinator.Coordinator) -> int:
    # Turn SIGTERM into an exception so the lock, temp files and crash
    # notification are all handled on the way out
    signal.signal(signal.SIGTERM, _raise_terminated)

    try:
        backup.preflight()
        report = backup.run()
    except errors.BackupError:
        raise
    except Exception as err:
        helper.log.exception(f"Backup crashed: {err!r}")
        backup.dispatcher.send(backup.dispatcher.crash_notification())
        raise errors.CrashError(f"Backup crashed: {err!r}") from err

    for result in report.results:
        helper.print_line(
            f"{result.target}: {result.outcome.value} (code {result.exit_code})"
        )
    return report.exit_code


def run_dry_run(backup: coordinator.Coordinator) -> int:
    helper.print_line("DRY RUN MODE ACTIVATED")
    backup.preflight(notify_failure=False)

    results = backup.dry_run()
    failed = [result for result in results if result.exit_code != 0]
    for result in failed:
        helper.print_error(
            f"Dry run FAILED for {result.target} (code {result.exit_code}). "
            "See the rsync error message above for details."
        )

    helper.print_line("DRY RUN COMPLETED")
    return 1 if failed else 0


def run_checksum(backup: coordinator.Coordinator) -> int:
    helper.print_line("INTEGRITY CHECK MODE ACTIVATED")
    helper.print_line("Comparing checksums... this may take a while.")
    backup.preflight()

    differing = backup.integrity_check()
    if not differing:
        helper.print_line(
            "[green]Checksum validation passed.[/] No discrepancies found."
        )
    else:
        helper.print_line("[red]Backup integrity check FAILED.[/] First 10 differing files:")
        for name in differing[:10]:
            helper.print_nested_line(name)
    return 0


def run_summary(backup: coordinator.Coordinator) -> int:
    helper.print_line("INTEGRITY SUMMARY MODE")
    helper.print_line("Calculating differences...")
    backup.preflight()

    mismatches = backup.summary()
    helper.print_line(f"Total files with checksum mismatches: {mismatches}")
    return 0


def run_test(backup: coordinator.Coordinator) -> int:
    helper.print_line("TEST MODE: running preflight checks")
    exit_code = 0

    for name, check in coordinator.preflight_checks(
        backup.config, backup.runner, backup.check_commands
    ):
        try:
            check()
        except errors.BackupError as err:
            helper.print_nested_line(f"[red]FAIL[/] {name}: {err.message}")
            exit_code = exit_code or err.exit_code
            continue
        helper.print_nested_line(f"[green]PASS[/] {name}")

    helper.print_line("Effective configuration:")
    helper.print_config_data(backup.config.public_dict())
    return exit_code


def run_restore(backup: coordinator.Coordinator) -> int:
    helper.print_line("RESTORE MODE")
    # The directories being restored may well be missing locally
    backup.preflight(notify_failure=False, skip=("Backup directories",))

    controller = restore.RestoreController(
        backup.config, backup.transfer, backup.dispatcher, backup.recycle_bin
    )
    final_state = restore.run_interactive(controller)
    return 1 if final_state is restore.State.FAILED else 0


MODE_RUNNERS: dict[typing.Optional[str], typing.Callable[[coordinator.Coordinator], int]] = {
    None: run_backup,
    "dry_run": run_dry_run,
    "checksum": run_checksum,
    "summary": run_summary,
    "test": run_test,
    "restore": run_restore,
}


@cli.command(
    help="Back up the configured directories to the remote host with rsync over SSH. Without a mode flag a full backup is run."
)
def cli_main(
    config: pathlib.Path = typer.Option(
        applicationConfig.default_config_path,
        "--config",
        "-c",
        envvar="OFFSITE_BACKUP_CONFIG",
        help="Path to backup configuration file.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose/",
        "-v/",
        envvar="OFFSITE_BACKUP_VERBOSE",
        help="Mirror rsync progress and log messages to the terminal.",
    ),
    lenient_config: bool = typer.Option(
        False,
        "--lenient-config/",
        help="Warn about unknown configuration keys instead of refusing to run.",
    ),
    dry_run: bool = typer.Option(
        False, "--dry-run/", help="Preview the changes a backup would make."
    ),
    checksum: bool = typer.Option(
        False,
        "--checksum/",
        help="Compare local and remote contents and notify the result.",
    ),
    summary: bool = typer.Option(
        False, "--summary/", help="Report only the number of mismatched files."
    ),
    test: bool = typer.Option(
        False, "--test/", help="Run the preflight checks only and report them."
    ),
    restore_mode: bool = typer.Option(
        False, "--restore/", help="Interactively restore files from the backup."
    ),
):
    selected = [
        name
        for name, enabled in zip(
            MODES, (dry_run, checksum, summary, test, restore_mode)
        )
        if enabled
    ]
    if len(selected) > 1:
        raise typer.BadParameter(
            "Options "
            + ", ".join("--" + name.replace("_", "-") for name in selected)
            + " are mutually exclusive."
        )
    mode = selected[0] if selected else None

    os.umask(0o077)
    helper.configure_logging(verbose=verbose or mode in INTERACTIVE_MODES)

    try:
        configuration = applicationConfig.load_config_values(
            config, strict=not lenient_config
        )
    except errors.ConfigError as err:
        raise _fail(err)

    helper.attach_log_file(configuration.log_file.expanduser())

    with applicationConfig.materialize_excludes(configuration.excludes) as exclude_file:
        backup = coordinator.Coordinator(configuration, exclude_file, progress=verbose)
        try:
            exit_code = MODE_RUNNERS[mode](backup)
        except errors.BackupError as err:
            raise _fail(err)

    raise typer.Exit(exit_code)
