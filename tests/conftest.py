"""
Shared fixtures: a configuration built around temporary directories, a fake
process runner standing in for rsync/ssh, and a dispatcher that records
notifications instead of sending them.
"""

from __future__ import annotations

import logging
import pathlib
import typing

import pytest

from offsite.backup import model, notify


class Call(typing.NamedTuple):
    program: str
    args: list[str]
    env: typing.Optional[dict[str, str]]
    polite: bool


class FakeRunner:
    """Records every command and answers from rules, first match wins."""

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self.rules: list[tuple[typing.Callable[[str, list[str]], bool], model.CommandResult]] = []

    def respond(
        self,
        predicate: typing.Callable[[str, list[str]], bool],
        exit_code: int = 0,
        output: str = "",
    ) -> None:
        self.rules.append((predicate, model.CommandResult(exit_code=exit_code, output=output)))

    def __call__(self, program, args, *, env=None, polite=False, on_line=None):
        self.calls.append(Call(program, list(args), env, polite))
        for predicate, result in self.rules:
            if predicate(program, list(args)):
                if on_line is not None:
                    for line in result.output.splitlines():
                        on_line(line)
                return result
        return model.CommandResult(exit_code=0)

    def calls_to(self, program: str) -> list[Call]:
        return [call for call in self.calls if call.program == program]


class RecordingDispatcher(notify.Dispatcher):
    def __init__(self, config: model.BackupConfiguration):
        super().__init__(config, hostname="testhost")
        self.sent: list[notify.Notification] = []

    def send(self, notification: notify.Notification) -> None:
        self.sent.append(notification)


@pytest.fixture(autouse=True)
def _reset_logging():
    """Undo handler changes made by the CLI so caplog keeps seeing records."""
    yield
    package_log = logging.getLogger("offsite.backup")
    for handler in list(package_log.handlers):
        package_log.removeHandler(handler)
        handler.close()
    package_log.propagate = True
    package_log.setLevel(logging.NOTSET)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def source_dirs(tmp_path: pathlib.Path) -> list[str]:
    for name in ("www", "etc"):
        (tmp_path / "srv" / name).mkdir(parents=True)
    return [f"{tmp_path}/srv/./www/", f"{tmp_path}/srv/./etc/"]


@pytest.fixture
def make_config(tmp_path: pathlib.Path, source_dirs: list[str]):
    log_dir = tmp_path / "logs"
    log_dir.mkdir()

    def factory(**overrides: typing.Any) -> model.BackupConfiguration:
        values: dict[str, typing.Any] = {
            "backup_dirs": source_dirs,
            "box_addr": "u100@u100.example.net",
            "box_dir": "backups/",
            "log_file": log_dir / "backup.log",
            "log_min_free_mb": 0,
            "ssh_options": ("-p", "23"),
        }
        values.update(overrides)
        return model.BackupConfiguration(**values)

    return factory


@pytest.fixture
def config(make_config) -> model.BackupConfiguration:
    return make_config()


@pytest.fixture
def recycle_config(make_config) -> model.BackupConfiguration:
    return make_config(
        recycle_bin_enabled=True,
        recycle_bin_dir="recycle_bin",
        recycle_bin_retention_days=30,
    )


@pytest.fixture
def exclude_file(tmp_path: pathlib.Path) -> pathlib.Path:
    path = tmp_path / "excludes.txt"
    path.write_text("*.tmp\n")
    return path


@pytest.fixture
def dispatcher_for():
    return RecordingDispatcher
