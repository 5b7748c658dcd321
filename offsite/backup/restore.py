"""
Interactive restore as an explicit state machine.

`RestoreController.handle` takes one event at a time and moves between states;
it never touches the terminal. `run_interactive` is the prompt loop that
turns operator answers into events.
"""

# Stdlib imports
import enum
import logging
import os
import pathlib
import posixpath
import pwd
import typing

# Vendor imports
import pydantic
import rich.prompt

# Local imports
from . import errors, helper, model, notify, recycle, transfer

log = logging.getLogger(__name__)


class State(str, enum.Enum):
    SELECT_SOURCE = "select_source"
    SELECT_SCOPE = "select_scope"
    SELECT_DESTINATION = "select_destination"
    DRY_RUN_PREVIEW = "dry_run_preview"
    CONFIRM = "confirm"
    EXECUTE = "execute"
    DONE = "done"
    ABORTED = "aborted"
    FAILED = "failed"


TERMINAL_STATES = {State.DONE, State.ABORTED, State.FAILED}


### Events ###


class ChooseTarget(pydantic.BaseModel):
    index: int


class ChooseRecycleItem(pydantic.BaseModel):
    snapshot: str
    relative_path: str


class ChooseScope(pydantic.BaseModel):
    # None restores the whole backup directory
    subpath: typing.Optional[str] = None


class ChooseDestination(pydantic.BaseModel):
    # None restores to the original location
    path: typing.Optional[str] = None


class Proceed(pydantic.BaseModel):
    pass


class Answer(pydantic.BaseModel):
    text: str


class Cancel(pydantic.BaseModel):
    pass


Event = typing.Union[
    ChooseTarget, ChooseRecycleItem, ChooseScope, ChooseDestination, Proceed, Answer, Cancel
]


def clean_relative_path(path: str) -> str:
    cleaned = path.strip().strip("/")
    if not cleaned or ".." in cleaned.split("/"):
        raise errors.NotFoundError(
            f"'{path}' must be a relative path without '..' segments"
        )
    return cleaned


def home_owner(path: str) -> typing.Optional[pwd.struct_passwd]:
    """The local user owning the home directory `path` lies in, if any."""
    parts = pathlib.PurePosixPath(path).parts
    if len(parts) < 3 or parts[:2] != ("/", "home"):
        return None
    try:
        return pwd.getpwnam(parts[2])
    except KeyError:
        return None


def chown_tree(path: pathlib.Path, uid: int, gid: int) -> None:
    os.chown(path, uid, gid, follow_symlinks=False)
    if not path.is_dir() or path.is_symlink():
        return
    for root, dirs, files in os.walk(path):
        for name in [*dirs, *files]:
            os.chown(os.path.join(root, name), uid, gid, follow_symlinks=False)


class RestoreController:
    def __init__(
        self,
        config: model.BackupConfiguration,
        invoker: transfer.Transfer,
        dispatcher: notify.Dispatcher,
        recycle_bin: typing.Optional[recycle.RecycleBin] = None,
        fix_ownership: bool = True,
    ):
        self.config = config
        self.transfer = invoker
        self.dispatcher = dispatcher
        self.recycle_bin = recycle_bin
        self.fix_ownership = fix_ownership

        self.state = State.SELECT_SOURCE
        self.target: typing.Optional[model.BackupTarget] = None
        self.remote_source: typing.Optional[str] = None
        self.is_dir = True
        self.default_destination: typing.Optional[str] = None
        self.destination: typing.Optional[str] = None
        self.preview_output = ""
        self.error: typing.Optional[errors.BackupError] = None

        self._transitions: dict[
            tuple[State, type], typing.Callable[[typing.Any], State]
        ] = {
            (State.SELECT_SOURCE, ChooseTarget): self._choose_target,
            (State.SELECT_SOURCE, ChooseRecycleItem): self._choose_recycle_item,
            (State.SELECT_SCOPE, ChooseScope): self._choose_scope,
            (State.SELECT_DESTINATION, ChooseDestination): self._choose_destination,
            (State.DRY_RUN_PREVIEW, Proceed): self._preview,
            (State.CONFIRM, Answer): self._answer,
            (State.EXECUTE, Proceed): self._execute,
        }

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def source_argument(self) -> str:
        assert self.remote_source is not None
        # A trailing slash makes rsync copy a directory's contents into the destination
        if self.is_dir:
            return self.remote_source.rstrip("/") + "/"
        return self.remote_source

    @property
    def description(self) -> str:
        return f"'{self.source_argument}' to '{self.destination}'"

    def handle(self, event: Event) -> State:
        if isinstance(event, Cancel) and not self.finished:
            log.info("Restore cancelled by operator")
            self.state = State.ABORTED
            return self.state

        handler = self._transitions.get((self.state, type(event)))
        if handler is None:
            raise errors.InvalidTransition(
                f"{type(event).__name__} is not valid in state '{self.state.value}'"
            )

        self.state = handler(event)
        return self.state

    def _lookup(self, remote_path: str) -> recycle.RemoteEntry:
        entry = recycle.remote_entry(self.transfer, remote_path)
        if entry is None:
            raise errors.NotFoundError(f"'{remote_path}' does not exist on the backup host")
        return entry

    def _choose_target(self, event: ChooseTarget) -> State:
        if not 0 <= event.index < len(self.config.backup_dirs):
            raise errors.NotFoundError(f"There is no backup directory #{event.index + 1}")
        self.target = self.config.backup_dirs[event.index]
        return State.SELECT_SCOPE

    def _choose_recycle_item(self, event: ChooseRecycleItem) -> State:
        if self.recycle_bin is None:
            raise errors.InvalidTransition("The recycle bin is not enabled")

        relative = clean_relative_path(event.relative_path)
        remote_path = f"{self.recycle_bin.root}{event.snapshot.strip('/')}/{relative}"
        entry = self._lookup(remote_path)

        self.remote_source = remote_path
        self.is_dir = entry.is_dir

        # Items are stored under the kept part of their backup directory, which
        # tells us where they originally lived
        self.default_destination = None
        for target in self.config.backup_dirs:
            keep = target.keep.rstrip("/")
            if relative == keep or relative.startswith(keep + "/"):
                self.default_destination = target.base + relative
                break

        return State.SELECT_DESTINATION

    def _choose_scope(self, event: ChooseScope) -> State:
        assert self.target is not None
        remote_root = self.target.remote_path(self.config.box_dir)

        if not event.subpath or not event.subpath.strip("/ "):
            self.remote_source = remote_root
            self.is_dir = True
            self.default_destination = self.target.local_path
            return State.SELECT_DESTINATION

        relative = clean_relative_path(event.subpath)
        remote_path = remote_root + relative
        entry = self._lookup(remote_path)

        self.remote_source = remote_path
        self.is_dir = entry.is_dir
        self.default_destination = self.target.local_path + relative
        return State.SELECT_DESTINATION

    def _choose_destination(self, event: ChooseDestination) -> State:
        if event.path:
            directory = os.path.abspath(os.path.expanduser(event.path))
            if os.path.isdir(directory):
                log.warning(
                    f"Destination '{directory}' already exists; matching files in it will be overwritten"
                )
        elif self.default_destination:
            # The original location of a file is the directory that held it
            directory = (
                self.default_destination
                if self.is_dir
                else posixpath.dirname(self.default_destination.rstrip("/"))
            )
        else:
            raise errors.NotFoundError(
                "The original location is unknown, a destination must be entered"
            )

        self.destination = directory.rstrip("/") + "/"
        return State.DRY_RUN_PREVIEW

    def _preview(self, event: Proceed) -> State:
        assert self.destination is not None
        log.info(f"Dry run: restoring {self.description}")
        result = self.transfer.restore(self.source_argument, self.destination, dry_run=True)
        self.preview_output = result.output

        if not result.ok:
            self.error = errors.TransferError(
                f"Dry run failed with exit code {result.exit_code}; nothing was restored"
            )
            log.error(self.error.message)
            return State.FAILED

        return State.CONFIRM

    def _answer(self, event: Answer) -> State:
        answer = event.text.strip()
        if answer == "yes":
            return State.EXECUTE
        if answer == "no":
            log.info("Restore declined at confirmation")
            return State.ABORTED
        return State.CONFIRM

    def _restored_path(self) -> pathlib.Path:
        assert self.destination is not None and self.remote_source is not None
        if self.is_dir:
            return pathlib.Path(self.destination)
        return pathlib.Path(self.destination) / posixpath.basename(self.remote_source)

    def _apply_ownership(self) -> None:
        assert self.destination is not None
        owner = home_owner(self.destination)
        if owner is None:
            return
        restored = self._restored_path()
        log.info(f"Giving ownership of '{restored}' to '{owner.pw_name}'")
        try:
            chown_tree(restored, owner.pw_uid, owner.pw_gid)
        except OSError as err:
            log.warning(f"Could not change ownership of '{restored}': {err}")

    def _execute(self, event: Proceed) -> State:
        assert self.destination is not None
        log.info(f"Restoring {self.description}")
        result = self.transfer.restore(self.source_argument, self.destination)

        if not result.ok:
            self.error = errors.TransferError(
                f"Restore failed with exit code {result.exit_code}"
            )
            log.error(self.error.message)
            self.dispatcher.send(self.dispatcher.restore_notification(False, self.description))
            return State.FAILED

        if self.fix_ownership:
            self._apply_ownership()
        log.info(f"Restore complete: {self.description}")
        self.dispatcher.send(self.dispatcher.restore_notification(True, self.description))
        return State.DONE


### Terminal adapter ###


def _numbered_choice(title: str, options: list[str]) -> int:
    helper.print_line(title)
    for number, option in enumerate(options, start=1):
        helper.print(f"  [yellow]{number}[/]) {option}")
    answer = rich.prompt.Prompt.ask(
        "Choice", choices=[str(number) for number in range(1, len(options) + 1)]
    )
    return int(answer) - 1


def _prompt_source(controller: RestoreController) -> Event:
    options = [target.local_path for target in controller.config.backup_dirs]
    if controller.recycle_bin is not None:
        options.append("Browse recycle bin")
    options.append("Quit")

    choice = _numbered_choice("What do you want to restore?", options)
    if choice == len(options) - 1:
        return Cancel()
    if choice < len(controller.config.backup_dirs):
        return ChooseTarget(index=choice)

    assert controller.recycle_bin is not None
    try:
        snapshots = controller.recycle_bin.list_snapshots()
    except errors.PruneError as err:
        raise errors.NotFoundError(err.message) from err
    if not snapshots:
        raise errors.NotFoundError("The recycle bin is empty")

    snapshot = snapshots[_numbered_choice("Recycle bin snapshots:", snapshots)]
    relative_path = rich.prompt.Prompt.ask(
        f"Path inside '{snapshot}' (e.g. {controller.config.backup_dirs[0].keep}file.txt)"
    )
    return ChooseRecycleItem(snapshot=snapshot, relative_path=relative_path)


def _prompt_scope(controller: RestoreController) -> Event:
    scope = rich.prompt.Prompt.ask(
        "Restore the (w)hole directory or a (s)pecific path?", choices=["w", "s"]
    )
    if scope == "w":
        return ChooseScope()
    return ChooseScope(
        subpath=rich.prompt.Prompt.ask(
            f"Path relative to '{controller.target}'"
        )
    )


def _prompt_destination(controller: RestoreController) -> Event:
    if controller.default_destination:
        helper.print_kv("Original location", controller.default_destination)
        override = rich.prompt.Prompt.ask(
            "Destination directory (leave empty for the original location)",
            default="",
            show_default=False,
        )
        return ChooseDestination(path=override or None)
    return ChooseDestination(path=rich.prompt.Prompt.ask("Destination directory"))


def _next_event(controller: RestoreController) -> Event:
    state = controller.state
    if state is State.SELECT_SOURCE:
        return _prompt_source(controller)
    if state is State.SELECT_SCOPE:
        return _prompt_scope(controller)
    if state is State.SELECT_DESTINATION:
        return _prompt_destination(controller)
    if state is State.DRY_RUN_PREVIEW:
        helper.print_line("Running dry run preview...")
        return Proceed()
    if state is State.CONFIRM:
        helper.print_kv("Restore", controller.description)
        return Answer(text=rich.prompt.Prompt.ask("Proceed with the restore? (yes/no)"))
    if state is State.EXECUTE:
        helper.print_line("Restoring...")
        return Proceed()
    raise errors.InvalidTransition(f"No prompt for state '{state.value}'")


def run_interactive(controller: RestoreController) -> State:
    """Drive a controller from terminal prompts until it reaches a final state."""
    while not controller.finished:
        try:
            controller.handle(_next_event(controller))
        except errors.NotFoundError as err:
            helper.print_warning(err.message)
        except (KeyboardInterrupt, EOFError):
            controller.handle(Cancel())

    if controller.state is State.DONE:
        helper.print_line(f"[green]Success![/] Restored {controller.description}")
    elif controller.state is State.ABORTED:
        helper.print_line("Restore cancelled. Nothing was changed.")
    elif controller.error is not None:
        helper.print_error(controller.error.message)

    return controller.state
