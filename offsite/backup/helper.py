# Stdlib imports
import contextlib
import datetime
import fcntl
import logging
import logging.handlers
import os
import pathlib
import socket
import sys
import typing

# Vendor imports
import humanize
import rich
import rich.logging
import yaml

# Local imports
from . import errors

log = logging.getLogger("offsite.backup")

# Well-known lock file shared by every invocation on this host
default_lock_path = pathlib.Path("/tmp/offsite-backup.lock")


def short_hostname() -> str:
    return socket.gethostname().split(".")[0]


def print(*args, file=sys.stdout):
    rich.print(*args, file=file)


def print_line(*args, file=sys.stdout):
    print("-" * 8, *args, file=file)


def print_nested_line(*args):
    print("-" * 12, *args)


def print_warning(message: str):
    print_line(f"[yellow]{message}", file=sys.stderr)


def print_error(message: str):
    print("-" * 8, f"[red]{message}", file=sys.stderr)


def print_kv(key: str, value: str = ""):
    print(f"[yellow]{key}[/]: {value}")


def print_config_data(data: typing.Any):
    serialized: str = yaml.safe_dump(data, sort_keys=False)
    print("\n".join("|  " + line for line in serialized.splitlines()))


def human_readable(num):
    return humanize.naturalsize(num, binary=True)


def format_duration(duration: datetime.timedelta) -> str:
    seconds = int(duration.total_seconds())
    return f"{seconds // 60}m {seconds % 60}s"


def maximize_niceness():
    os.nice(19)


def configure_logging(verbose: bool = False) -> None:
    """Attach the console handler to the package logger.

    The console only shows warnings unless running verbosely; the log file
    (see `attach_log_file`) always receives everything.
    """
    log.setLevel(logging.INFO)
    log.propagate = False
    for handler in list(log.handlers):
        if isinstance(handler, rich.logging.RichHandler):
            log.removeHandler(handler)

    console = rich.logging.RichHandler(
        level=logging.INFO if verbose else logging.WARNING,
        show_path=False,
        markup=False,
        rich_tracebacks=False,
    )
    log.addHandler(console)


def attach_log_file(log_file: pathlib.Path) -> logging.Handler:
    for existing in list(log.handlers):
        if isinstance(existing, logging.handlers.WatchedFileHandler):
            log.removeHandler(existing)
            existing.close()

    # A watched handler reopens the file after rotation renames it
    handler = logging.handlers.WatchedFileHandler(log_file, delay=True)
    handler.setFormatter(
        logging.Formatter(
            f"[{short_hostname()}] [%(asctime)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    log.addHandler(handler)
    return handler


def rotate_log(
    log_file: pathlib.Path,
    max_bytes: int,
    now: typing.Optional[datetime.datetime] = None,
) -> typing.Optional[pathlib.Path]:
    """Move the log aside with a dated suffix once it grows past `max_bytes`."""
    if not log_file.is_file() or log_file.stat().st_size <= max_bytes:
        return None

    now = now or datetime.datetime.now()
    rotated = log_file.with_name(f"{log_file.name}.{now:%Y%m%d_%H%M%S}")
    log_file.rename(rotated)
    log_file.touch()
    return rotated


def prune_rotated_logs(
    log_file: pathlib.Path,
    retention_days: int,
    now: typing.Optional[datetime.datetime] = None,
) -> list[pathlib.Path]:
    """Delete rotated copies of the log older than the retention period."""
    now = now or datetime.datetime.now()
    cutoff = (now - datetime.timedelta(days=retention_days)).timestamp()
    removed = []

    for candidate in log_file.parent.glob(f"{log_file.name}.*"):
        if not candidate.is_file():
            continue
        if candidate.stat().st_mtime < cutoff:
            try:
                candidate.unlink()
            except OSError as err:
                log.warning(f"Could not remove old log '{candidate}': {err}")
                continue
            removed.append(candidate)

    return removed


@contextlib.contextmanager
def exclusive_lock(lock_path: pathlib.Path) -> typing.Iterator[None]:
    """Hold a non-blocking advisory lock for the duration of the context.

    The kernel drops the lock if the process dies, so a crash never leaves a
    stale lock behind.
    """
    handle = open(lock_path, "a")
    try:
        try:
            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as err:
            raise errors.LockContentionError(
                "Another instance is running, exiting."
            ) from err
        try:
            yield
        finally:
            fcntl.flock(handle, fcntl.LOCK_UN)
    finally:
        handle.close()
