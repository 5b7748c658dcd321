### stdlib imports
import datetime
import enum
import pathlib
import posixpath
import shlex
import typing

### vendor imports
import pydantic

# Path segment separating the part of a source path that is discarded from the
# part that is recreated under the remote root
ANCHOR = "/./"


def split_anchor(path: str) -> tuple[str, str]:
    """Split an anchored path into its discarded base and its kept remainder.

    `/srv/./www/site/` becomes `("/srv/", "www/site/")`.
    """
    base, separator, keep = path.partition(ANCHOR)
    if not separator:
        raise ValueError(f"Path '{path}' does not contain the '{ANCHOR}' anchor")
    return base + "/", keep


def join_anchor(base: str, keep: str) -> str:
    return base + keep


def naive_destination(path: str) -> str:
    """The local path an anchored path refers to, with the anchor collapsed."""
    return path.replace(ANCHOR, "/", 1)


class BackupTarget(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True)

    path: str

    @pydantic.field_validator("path")
    @classmethod
    def _check_path(cls, value: str) -> str:
        if not value.endswith("/"):
            raise ValueError(f"'{value}' must end with a trailing slash ('/')")
        if ANCHOR not in value:
            raise ValueError(
                f"'{value}' must contain the '{ANCHOR}' anchor marking the part of the path to keep"
            )
        if not split_anchor(value)[1].strip("/"):
            raise ValueError(f"'{value}' has nothing to keep after the anchor")
        return value

    @property
    def base(self) -> str:
        return split_anchor(self.path)[0]

    @property
    def keep(self) -> str:
        return split_anchor(self.path)[1]

    @property
    def local_path(self) -> str:
        return naive_destination(self.path)

    def remote_path(self, box_dir: str) -> str:
        return box_dir + self.keep

    def __str__(self) -> str:
        return self.local_path


class Outcome(str, enum.Enum):
    SUCCESS = "success"
    WARNING = "warning"
    FAILURE = "failure"


# rsync exit codes that mean "completed, but not everything made it"
#   23: partial transfer due to error (some files/attrs were not transferred)
#   24: partial transfer due to vanished source files
WARNING_EXIT_CODES = (23, 24)


def classify_exit_code(exit_code: int) -> Outcome:
    if exit_code == 0:
        return Outcome.SUCCESS
    if exit_code in WARNING_EXIT_CODES:
        return Outcome.WARNING
    return Outcome.FAILURE


class CommandResult(pydantic.BaseModel):
    exit_code: int
    output: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RunResult(pydantic.BaseModel):
    target: BackupTarget
    exit_code: int
    outcome: Outcome

    @classmethod
    def from_exit_code(cls, target: BackupTarget, exit_code: int) -> "RunResult":
        return cls(
            target=target,
            exit_code=exit_code,
            outcome=classify_exit_code(exit_code),
        )


class TransferStats(pydantic.BaseModel):
    # None means the counter could not be read from rsync's output, which is
    # different from rsync reporting zero
    bytes_transferred: typing.Optional[int] = None
    files_created: typing.Optional[int] = None
    files_updated: typing.Optional[int] = None
    files_deleted: typing.Optional[int] = None

    @classmethod
    def unknown(cls) -> "TransferStats":
        return cls()

    @property
    def is_unknown(self) -> bool:
        return all(
            value is None
            for value in (
                self.bytes_transferred,
                self.files_created,
                self.files_updated,
                self.files_deleted,
            )
        )


class BackupReport(pydantic.BaseModel):
    results: list[RunResult]
    started_at: datetime.datetime
    finished_at: datetime.datetime
    stats: TransferStats = TransferStats()

    def _with_outcome(self, outcome: Outcome) -> list[RunResult]:
        return [result for result in self.results if result.outcome is outcome]

    @property
    def succeeded(self) -> list[RunResult]:
        return self._with_outcome(Outcome.SUCCESS)

    @property
    def warned(self) -> list[RunResult]:
        return self._with_outcome(Outcome.WARNING)

    @property
    def failed(self) -> list[RunResult]:
        return self._with_outcome(Outcome.FAILURE)

    @property
    def duration(self) -> datetime.timedelta:
        return self.finished_at - self.started_at

    @property
    def outcome(self) -> Outcome:
        if self.failed:
            return Outcome.FAILURE
        if self.warned:
            return Outcome.WARNING
        return Outcome.SUCCESS

    @property
    def exit_code(self) -> int:
        return {
            Outcome.SUCCESS: 0,
            Outcome.WARNING: 24,
            Outcome.FAILURE: 1,
        }[self.outcome]


def _require_text(value: typing.Any) -> typing.Any:
    if isinstance(value, str) and not value.strip():
        raise ValueError("must not be empty")
    return value


class BackupConfiguration(pydantic.BaseModel):
    """Validated, immutable settings for one invocation of the tool.

    Field names are the lower-cased configuration keys; `excludes` and
    `ssh_options` come from the two delimited blocks of the configuration file.
    """

    model_config = pydantic.ConfigDict(frozen=True, extra="forbid")

    backup_dirs: tuple[BackupTarget, ...]
    box_addr: str
    box_dir: str
    log_file: pathlib.Path

    excludes: tuple[str, ...] = ()
    ssh_options: tuple[str, ...] = ()

    log_max_size_mb: int = pydantic.Field(10, gt=0)
    log_retention_days: int = pydantic.Field(90, gt=0)
    log_min_free_mb: int = pydantic.Field(100, ge=0)
    bandwidth_limit: int = pydantic.Field(0, ge=0)
    rsync_timeout: int = pydantic.Field(300, gt=0)
    ssh_connect_timeout: int = pydantic.Field(10, gt=0)
    checksum_enabled: bool = True

    ntfy_enabled: bool = False
    ntfy_url: typing.Optional[str] = None
    ntfy_token: typing.Optional[str] = None
    ntfy_priority_success: str = "default"
    ntfy_priority_warning: str = "high"
    ntfy_priority_failure: str = "high"

    discord_enabled: bool = False
    discord_webhook_url: typing.Optional[str] = None

    recycle_bin_enabled: bool = False
    recycle_bin_dir: typing.Optional[str] = None
    recycle_bin_retention_days: typing.Optional[int] = pydantic.Field(None, gt=0)

    @pydantic.field_validator("box_addr", "box_dir", "log_file", mode="before")
    @classmethod
    def _check_required_text(cls, value: typing.Any) -> typing.Any:
        return _require_text(value)

    @pydantic.field_validator("backup_dirs", mode="before")
    @classmethod
    def _split_backup_dirs(cls, value: typing.Any) -> typing.Any:
        if isinstance(value, str):
            value = shlex.split(value)
        if not value:
            raise ValueError("at least one backup directory is required")
        return [{"path": entry} if isinstance(entry, str) else entry for entry in value]

    @pydantic.field_validator("box_dir")
    @classmethod
    def _check_box_dir(cls, value: str) -> str:
        if not value.endswith("/"):
            raise ValueError(f"'{value}' must end with a trailing slash ('/')")
        return value

    @pydantic.field_validator(
        "ntfy_url", "ntfy_token", "discord_webhook_url", "recycle_bin_dir"
    )
    @classmethod
    def _blank_is_unset(cls, value: typing.Optional[str]) -> typing.Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @pydantic.field_validator("recycle_bin_dir")
    @classmethod
    def _check_recycle_bin_dir(
        cls, value: typing.Optional[str]
    ) -> typing.Optional[str]:
        if value is None:
            return value
        if posixpath.isabs(value):
            raise ValueError(f"'{value}' must be relative to BOX_DIR")
        if ".." in value.split("/"):
            raise ValueError(f"'{value}' must not contain '..' segments")
        return value

    @pydantic.model_validator(mode="after")
    def _check_dependent_fields(self) -> "BackupConfiguration":
        if self.recycle_bin_enabled:
            if not self.recycle_bin_dir:
                raise ValueError(
                    "RECYCLE_BIN_DIR is required when RECYCLE_BIN_ENABLED is true"
                )
            if self.recycle_bin_retention_days is None:
                raise ValueError(
                    "RECYCLE_BIN_RETENTION_DAYS is required when RECYCLE_BIN_ENABLED is true"
                )
        if self.ntfy_enabled and not (self.ntfy_url and self.ntfy_token):
            raise ValueError(
                "NTFY_URL and NTFY_TOKEN are required when NTFY_ENABLED is true"
            )
        if self.discord_enabled and not self.discord_webhook_url:
            raise ValueError(
                "DISCORD_WEBHOOK_URL is required when DISCORD_ENABLED is true"
            )
        return self

    @property
    def remote_target(self) -> str:
        return f"{self.box_addr}:{self.box_dir}"

    @property
    def ssh_command(self) -> str:
        return shlex.join(["ssh", *self.ssh_options])

    @property
    def recycle_root(self) -> typing.Optional[str]:
        if not self.recycle_bin_enabled or not self.recycle_bin_dir:
            return None
        return self.box_dir + self.recycle_bin_dir.strip("/") + "/"

    def public_dict(self) -> dict[str, typing.Any]:
        """Configuration values safe to print, with credentials masked."""
        data = self.model_dump(mode="json")
        data["backup_dirs"] = [target.path for target in self.backup_dirs]
        for secret in ("ntfy_token", "discord_webhook_url"):
            if data.get(secret):
                data[secret] = "********"
        return data
