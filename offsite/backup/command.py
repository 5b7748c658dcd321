### stdlib imports
import os
import typing

### vendor imports
import sh

### local imports
from . import errors, helper, model

# External tools every mode depends on
REQUIRED_COMMANDS = ("rsync", "ssh")

# Exit codes are classified by the caller, so sh must never raise on one
ALL_EXIT_CODES = list(range(256))

LineCallback = typing.Callable[[str], None]


class Runner(typing.Protocol):
    def __call__(
        self,
        program: str,
        args: list[str],
        *,
        env: typing.Optional[dict[str, str]] = None,
        polite: bool = False,
        on_line: typing.Optional[LineCallback] = None,
    ) -> model.CommandResult: ...


def require(name: str) -> sh.Command:
    try:
        return sh.Command(name)
    except sh.CommandNotFound as err:
        raise errors.PrerequisiteError(
            f"FATAL: Required command '{name}' not found. Please install it."
        ) from err


def check_prerequisites(names: typing.Iterable[str] = REQUIRED_COMMANDS) -> None:
    for name in names:
        require(name)


def idle_io(program: str, command: sh.Command) -> sh.Command:
    """Run `program` under the idle I/O class when ionice is installed."""
    try:
        ionice = sh.Command("ionice")
    except sh.CommandNotFound:
        helper.log.info("ionice not found, running without idle I/O priority")
        return command
    return ionice.bake("-c", "3", program)


def run_command(
    program: str,
    args: list[str],
    *,
    env: typing.Optional[dict[str, str]] = None,
    polite: bool = False,
    on_line: typing.Optional[LineCallback] = None,
) -> model.CommandResult:
    """Run an external command to completion and hand back its raw exit code.

    stdout and stderr are merged; every line is passed to `on_line` as it
    arrives and the whole output is kept for parsing afterwards.
    """
    command = require(program)

    options: dict[str, typing.Any] = {
        "_bg": True,
        "_env": {**os.environ, **(env or {})},
        "_err_to_out": True,
        "_ok_code": ALL_EXIT_CODES,
        "_decode_errors": "replace",
    }
    if polite:
        command = idle_io(program, command)
        options["_preexec_fn"] = helper.maximize_niceness
    if on_line is not None:
        options["_out"] = lambda line: on_line(line.rstrip("\n"))
        options["_tee"] = True

    running_proc = command(*args, **options)

    # The running process should not be a string
    assert isinstance(running_proc, sh.RunningCommand)

    # Wait for it to finish and make sure it does not outlive an interrupt or
    # SIGTERM, or it would keep writing after the lock is released
    try:
        running_proc.wait()
    except (KeyboardInterrupt, errors.Terminated) as err:
        helper.log.warning(f"Interrupted: {err!r}")
        if running_proc.is_alive():
            helper.log.warning(f"Killing the running {program} process...")
            running_proc.kill()
        raise

    return model.CommandResult(
        exit_code=running_proc.exit_code,
        output=running_proc.stdout.decode("utf-8", "replace"),
    )
