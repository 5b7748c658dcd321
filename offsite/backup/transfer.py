"""
Argument builders and invocation for rsync and ssh.

Every `*_arguments` function is pure: it maps the configuration and its inputs
to the exact argument list handed to the external tool, so each mode can be
checked without running anything.
"""

# Stdlib imports
import logging
import pathlib
import typing

# Local imports
from . import command, model

log = logging.getLogger("offsite.backup.transfer")


def base_arguments(
    config: model.BackupConfiguration, exclude_file: pathlib.Path
) -> list[str]:
    return [
        "-a",
        "-z",
        "--partial",
        f"--timeout={config.rsync_timeout}",
        f"--exclude-from={exclude_file}",
        "-e",
        config.ssh_command,
    ]


def backup_arguments(
    config: model.BackupConfiguration,
    target: model.BackupTarget,
    exclude_file: pathlib.Path,
    snapshot_path: typing.Optional[str] = None,
    progress: bool = False,
) -> list[str]:
    args = [
        *base_arguments(config, exclude_file),
        "--delete",
        "--relative",
        "--info=stats2,progress2" if progress else "--info=stats2",
    ]

    if config.bandwidth_limit:
        args.append(f"--bwlimit={config.bandwidth_limit}")

    if config.recycle_bin_enabled and snapshot_path:
        assert config.recycle_bin_dir is not None
        # rsync resolves a relative --backup-dir against the destination
        # directory, which is BOX_DIR
        args += [
            "--backup",
            f"--backup-dir={snapshot_path.removeprefix(config.box_dir)}",
            # Never let --delete reach into the recycle bin itself
            f"--filter=protect /{config.recycle_bin_dir.strip('/')}/",
        ]

    return [*args, target.path, config.remote_target]


def dry_run_arguments(
    config: model.BackupConfiguration,
    target: model.BackupTarget,
    exclude_file: pathlib.Path,
    snapshot_path: typing.Optional[str] = None,
    progress: bool = False,
) -> list[str]:
    args = backup_arguments(config, target, exclude_file, snapshot_path, progress)
    # Source and destination stay last
    return [*args[:-2], "--dry-run", "--itemize-changes", *args[-2:]]


def integrity_arguments(
    config: model.BackupConfiguration,
    target: model.BackupTarget,
    exclude_file: pathlib.Path,
) -> list[str]:
    args = ["-a", "-i", "-n", "--delete"]
    if config.checksum_enabled:
        args.append("-c")
    return [
        *args,
        "--relative",
        f"--timeout={config.rsync_timeout}",
        f"--exclude-from={exclude_file}",
        "--out-format=%n",
        "-e",
        config.ssh_command,
        target.path,
        config.remote_target,
    ]


def restore_arguments(
    config: model.BackupConfiguration,
    source: str,
    destination: str,
    dry_run: bool = False,
) -> list[str]:
    args = [
        "-a",
        "-v",
        "-i",
        f"--timeout={config.rsync_timeout}",
        "-e",
        config.ssh_command,
    ]
    if dry_run:
        args.append("--dry-run")
    return [*args, f"{config.box_addr}:{source}", destination]


def list_arguments(config: model.BackupConfiguration, remote_path: str) -> list[str]:
    return [
        "--list-only",
        f"--timeout={config.rsync_timeout}",
        "-e",
        config.ssh_command,
        f"{config.box_addr}:{remote_path}",
    ]


def empty_directory_arguments(
    config: model.BackupConfiguration, empty_dir: pathlib.Path, remote_path: str
) -> list[str]:
    return [
        "-r",
        "--delete",
        f"--timeout={config.rsync_timeout}",
        "-e",
        config.ssh_command,
        f"{empty_dir}/",
        f"{config.box_addr}:{remote_path}",
    ]


def ssh_arguments(
    config: model.BackupConfiguration, *remote_command: str
) -> list[str]:
    return [
        *config.ssh_options,
        "-o",
        "BatchMode=yes",
        "-o",
        f"ConnectTimeout={config.ssh_connect_timeout}",
        config.box_addr,
        *remote_command,
    ]


class Transfer:
    """Runs rsync and ssh for one configuration through an injectable runner.

    Exit codes are returned exactly as the tool reported them; deciding what
    they mean is left to the caller.
    """

    def __init__(
        self,
        config: model.BackupConfiguration,
        exclude_file: pathlib.Path,
        runner: command.Runner = command.run_command,
        progress: bool = False,
    ):
        self.config = config
        self.exclude_file = exclude_file
        self.runner = runner
        self.progress = progress

    def _mirror(self, line: str) -> None:
        log.info(line)

    def rsync(
        self,
        args: list[str],
        *,
        env: typing.Optional[dict[str, str]] = None,
        polite: bool = False,
        mirror: bool = True,
    ) -> model.CommandResult:
        return self.runner(
            "rsync",
            args,
            env=env,
            polite=polite,
            on_line=self._mirror if mirror else None,
        )

    def ssh(self, *remote_command: str) -> model.CommandResult:
        return self.runner("ssh", ssh_arguments(self.config, *remote_command))

    def backup(
        self, target: model.BackupTarget, snapshot_path: typing.Optional[str] = None
    ) -> model.CommandResult:
        args = backup_arguments(
            self.config, target, self.exclude_file, snapshot_path, self.progress
        )
        return self.rsync(args, polite=True)

    def dry_run(
        self, target: model.BackupTarget, snapshot_path: typing.Optional[str] = None
    ) -> model.CommandResult:
        args = dry_run_arguments(
            self.config, target, self.exclude_file, snapshot_path, self.progress
        )
        return self.rsync(args)

    def integrity_check(self, target: model.BackupTarget) -> model.CommandResult:
        args = integrity_arguments(self.config, target, self.exclude_file)
        # The file list is the result here, so it is not mirrored line by line
        return self.rsync(args, env={"LC_ALL": "C"}, mirror=False)

    def restore(
        self, source: str, destination: str, dry_run: bool = False
    ) -> model.CommandResult:
        return self.rsync(restore_arguments(self.config, source, destination, dry_run))

    def list_remote(self, remote_path: str) -> model.CommandResult:
        return self.rsync(list_arguments(self.config, remote_path), mirror=False)

    def empty_remote_directory(
        self, empty_dir: pathlib.Path, remote_path: str
    ) -> model.CommandResult:
        return self.rsync(
            empty_directory_arguments(self.config, empty_dir, remote_path)
        )
