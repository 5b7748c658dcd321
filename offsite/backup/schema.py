import typing


class RawConfiguration(typing.TypedDict):
    """Configuration file contents before validation."""

    # KEY=value lines, values unquoted but otherwise untouched
    scalars: dict[str, str]
    # BEGIN_EXCLUDES ... END_EXCLUDES, one rsync pattern per line
    excludes: list[str]
    # BEGIN_SSH_OPTS ... END_SSH_OPTS, shell-word split
    ssh_options: list[str]
