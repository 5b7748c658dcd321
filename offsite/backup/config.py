# Stdlib imports
import contextlib
import logging
import os
import pathlib
import re
import shlex
import tempfile
import typing

# Vendor imports
import pydantic

# Local imports
from . import errors, model, schema

log = logging.getLogger(__name__)

# Default configuration file path, overridable on the command line or through
# the OFFSITE_BACKUP_CONFIG environment variable
default_config_path = pathlib.Path("/etc/offsite-backup/backup.conf")

# Delimited multi-line blocks, mapped to their closing line and target field
BLOCKS = {
    "BEGIN_EXCLUDES": ("END_EXCLUDES", "excludes"),
    "BEGIN_SSH_OPTS": ("END_SSH_OPTS", "ssh_options"),
}
BLOCK_FIELDS = [field for _, field in BLOCKS.values()]
BLOCK_CLOSERS = {closer for closer, _ in BLOCKS.values()}

# Allow-list of scalar keys and the configuration field each one sets
SCALAR_KEYS = {
    name.upper(): name
    for name in model.BackupConfiguration.model_fields
    if name not in BLOCK_FIELDS
}

REQUIRED_KEYS = ("BACKUP_DIRS", "BOX_ADDR", "BOX_DIR", "LOG_FILE")

_assignment = re.compile(r"^\s*([A-Za-z_][A-Za-z0-9_]*)\s*=\s*(.*?)\s*$")


def _is_ignorable(line: str) -> bool:
    stripped = line.strip()
    return not stripped or stripped.startswith("#")


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
        return value[1:-1]
    return value


def _unrecognized(message: str, strict: bool) -> None:
    if strict:
        raise errors.ConfigError(message)
    log.warning(f"{message}; ignoring it")


def parse_config_text(
    text: str, strict: bool = True, source: str = "<config>"
) -> schema.RawConfiguration:
    """Split configuration text into scalar assignments and block contents.

    Values are kept as literal strings; nothing in the file is ever evaluated.
    """
    raw: schema.RawConfiguration = {"scalars": {}, "excludes": [], "ssh_options": []}
    open_block: typing.Optional[str] = None
    open_line = 0

    for number, line in enumerate(text.splitlines(), start=1):
        where = f"{source}:{number}"
        stripped = line.strip()

        if stripped in BLOCKS:
            if open_block:
                raise errors.ConfigError(
                    f"{where}: '{stripped}' found inside the '{open_block}' block"
                )
            open_block, open_line = stripped, number
            continue

        if stripped in BLOCK_CLOSERS:
            if not open_block or BLOCKS[open_block][0] != stripped:
                raise errors.ConfigError(f"{where}: unexpected '{stripped}'")
            open_block = None
            continue

        if _is_ignorable(line):
            continue

        if open_block:
            field = BLOCKS[open_block][1]
            if field == "excludes":
                raw["excludes"].append(stripped)
            else:
                try:
                    raw["ssh_options"].extend(shlex.split(stripped))
                except ValueError as err:
                    raise errors.ConfigError(f"{where}: {err}") from err
            continue

        match = _assignment.match(line)
        if not match:
            _unrecognized(f"{where}: unrecognized line '{stripped}'", strict)
            continue

        key, value = match.group(1), _unquote(match.group(2))
        if key not in SCALAR_KEYS:
            _unrecognized(f"{where}: unknown configuration key '{key}'", strict)
            continue

        raw["scalars"][key] = value

    if open_block:
        raise errors.ConfigError(
            f"{source}:{open_line}: '{open_block}' is never closed with '{BLOCKS[open_block][0]}'"
        )

    return raw


def _describe_validation_error(err: pydantic.ValidationError) -> str:
    problems = []
    for problem in err.errors():
        location = problem.get("loc") or ()
        key = str(location[0]).upper() if location else "configuration"
        message = problem["msg"].removeprefix("Value error, ")
        problems.append(f"{key}: {message}")
    return "; ".join(problems)


def build_configuration(raw: schema.RawConfiguration) -> model.BackupConfiguration:
    scalars = raw["scalars"]

    for key in REQUIRED_KEYS:
        if not scalars.get(key, "").strip():
            raise errors.ConfigError(f"Required key '{key}' is missing or empty")

    # A key left blank means "use the default", like an unset shell variable
    values: dict[str, typing.Any] = {
        SCALAR_KEYS[key]: value for key, value in scalars.items() if value.strip()
    }
    values["excludes"] = tuple(raw["excludes"])
    values["ssh_options"] = tuple(raw["ssh_options"])

    try:
        return model.BackupConfiguration(**values)
    except pydantic.ValidationError as err:
        raise errors.ConfigError(
            f"Invalid configuration: {_describe_validation_error(err)}"
        ) from err


# Return the config values in the config file
def load_config_values(
    config_path: pathlib.Path, strict: bool = True
) -> model.BackupConfiguration:
    # Resolve the path string to a path object
    config_path = config_path.expanduser()

    if not config_path.is_file():
        raise errors.ConfigError(f"Configuration file '{config_path}' not found")

    try:
        text = config_path.read_text()
    except OSError as err:
        raise errors.ConfigError(
            f"Configuration file '{config_path}' could not be read: {err}"
        ) from err

    raw = parse_config_text(text, strict=strict, source=str(config_path))
    return build_configuration(raw)


@contextlib.contextmanager
def materialize_excludes(
    patterns: typing.Iterable[str],
) -> typing.Iterator[pathlib.Path]:
    """Write exclude patterns to a private temp file for `--exclude-from`.

    The file is removed when the context exits, however it exits.
    """
    descriptor, name = tempfile.mkstemp(prefix="offsite-backup-", suffix=".exclude")
    path = pathlib.Path(name)
    try:
        with os.fdopen(descriptor, "w") as handle:
            for pattern in patterns:
                handle.write(pattern + "\n")
        yield path
    finally:
        path.unlink(missing_ok=True)
