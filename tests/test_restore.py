import pathlib
import types

import pytest

from offsite.backup import errors, recycle, restore, transfer

DIR_ENTRY = "drwx------          4,096 2025/01/01 10:00:00 {name}\n"
FILE_ENTRY = "-rw-------            120 2025/01/01 10:00:00 {name}\n"


def _is_listing(program, args):
    return "--list-only" in args


def _restore_calls(runner):
    return [call for call in runner.calls_to("rsync") if "--list-only" not in call.args]


@pytest.fixture
def make_controller(runner, dispatcher_for):
    def factory(config, fix_ownership=False):
        invoker = transfer.Transfer(config, pathlib.Path("/x"), runner)
        recycle_bin = (
            recycle.RecycleBin(config, invoker) if config.recycle_bin_enabled else None
        )
        return restore.RestoreController(
            config,
            invoker,
            dispatcher_for(config),
            recycle_bin,
            fix_ownership=fix_ownership,
        )

    return factory


def test_whole_directory_restore(config, runner, make_controller):
    controller = make_controller(config)

    assert controller.handle(restore.ChooseTarget(index=0)) is restore.State.SELECT_SCOPE
    assert controller.handle(restore.ChooseScope()) is restore.State.SELECT_DESTINATION
    assert controller.handle(restore.ChooseDestination()) is restore.State.DRY_RUN_PREVIEW
    assert controller.handle(restore.Proceed()) is restore.State.CONFIRM
    assert controller.handle(restore.Answer(text="maybe")) is restore.State.CONFIRM
    assert controller.handle(restore.Answer(text="Yes")) is restore.State.CONFIRM
    assert controller.handle(restore.Answer(text="yes")) is restore.State.EXECUTE
    assert controller.handle(restore.Proceed()) is restore.State.DONE

    preview, real = _restore_calls(runner)
    target = config.backup_dirs[0]
    assert "--dry-run" in preview.args
    assert [arg for arg in preview.args if arg != "--dry-run"] == real.args
    assert real.args[-2:] == [
        "u100@u100.example.net:backups/www/",
        target.local_path,
    ]
    assert controller.dispatcher.sent[-1].status.value == "success"


def test_failed_preview_never_executes(config, runner, make_controller):
    runner.respond(lambda program, args: "--dry-run" in args, exit_code=12)
    controller = make_controller(config)

    controller.handle(restore.ChooseTarget(index=1))
    controller.handle(restore.ChooseScope())
    controller.handle(restore.ChooseDestination())

    assert controller.handle(restore.Proceed()) is restore.State.FAILED
    assert len(_restore_calls(runner)) == 1
    assert isinstance(controller.error, errors.TransferError)
    assert controller.dispatcher.sent == []
    with pytest.raises(errors.InvalidTransition):
        controller.handle(restore.Answer(text="yes"))


def test_declining_aborts_without_transfer(config, runner, make_controller):
    controller = make_controller(config)
    controller.handle(restore.ChooseTarget(index=0))
    controller.handle(restore.ChooseScope())
    controller.handle(restore.ChooseDestination())
    controller.handle(restore.Proceed())

    assert controller.handle(restore.Answer(text="no")) is restore.State.ABORTED
    assert len(_restore_calls(runner)) == 1


def test_failed_restore_notifies(config, runner, make_controller):
    runner.respond(
        lambda program, args: program == "rsync" and "--dry-run" not in args and not _is_listing(program, args),
        exit_code=11,
    )
    controller = make_controller(config)
    for event in (
        restore.ChooseTarget(index=0),
        restore.ChooseScope(),
        restore.ChooseDestination(),
        restore.Proceed(),
        restore.Answer(text="yes"),
    ):
        controller.handle(event)

    assert controller.handle(restore.Proceed()) is restore.State.FAILED
    assert controller.dispatcher.sent[-1].status.value == "failure"


def test_specific_file_restores_into_its_directory(config, runner, make_controller):
    runner.respond(_is_listing, output=FILE_ENTRY.format(name="index.html"))
    controller = make_controller(config)
    controller.handle(restore.ChooseTarget(index=0))

    controller.handle(restore.ChooseScope(subpath="/html/index.html"))
    controller.handle(restore.ChooseDestination())

    target = config.backup_dirs[0]
    assert controller.remote_source == "backups/www/html/index.html"
    assert controller.source_argument == "backups/www/html/index.html"
    assert controller.destination == target.local_path + "html/"


def test_missing_subpath_stays_in_scope(config, runner, make_controller):
    runner.respond(_is_listing, exit_code=23)
    controller = make_controller(config)
    controller.handle(restore.ChooseTarget(index=0))

    with pytest.raises(errors.NotFoundError):
        controller.handle(restore.ChooseScope(subpath="gone/"))
    assert controller.state is restore.State.SELECT_SCOPE


@pytest.mark.parametrize("subpath", ["../etc/passwd", "a/../../b"])
def test_parent_segments_rejected(config, make_controller, subpath):
    controller = make_controller(config)
    controller.handle(restore.ChooseTarget(index=0))
    with pytest.raises(errors.NotFoundError):
        controller.handle(restore.ChooseScope(subpath=subpath))


def test_unknown_target_index(config, make_controller):
    controller = make_controller(config)
    with pytest.raises(errors.NotFoundError):
        controller.handle(restore.ChooseTarget(index=5))
    assert controller.state is restore.State.SELECT_SOURCE


def test_recycle_item_missing_returns_to_source(recycle_config, runner, make_controller):
    runner.respond(_is_listing, exit_code=23)
    controller = make_controller(recycle_config)

    with pytest.raises(errors.NotFoundError):
        controller.handle(
            restore.ChooseRecycleItem(snapshot="2025-01-20_100000", relative_path="www/gone.txt")
        )
    assert controller.state is restore.State.SELECT_SOURCE


def test_recycle_item_defaults_to_original_location(recycle_config, runner, make_controller):
    runner.respond(_is_listing, output=FILE_ENTRY.format(name="index.html"))
    controller = make_controller(recycle_config)

    state = controller.handle(
        restore.ChooseRecycleItem(snapshot="2025-01-20_100000", relative_path="www/index.html")
    )
    assert state is restore.State.SELECT_DESTINATION
    assert controller.remote_source == "backups/recycle_bin/2025-01-20_100000/www/index.html"

    controller.handle(restore.ChooseDestination())
    assert controller.destination == recycle_config.backup_dirs[0].local_path


def test_recycle_item_without_known_origin_needs_destination(
    recycle_config, runner, make_controller, tmp_path, caplog
):
    runner.respond(_is_listing, output=DIR_ENTRY.format(name="stray"))
    controller = make_controller(recycle_config)
    controller.handle(
        restore.ChooseRecycleItem(snapshot="2025-01-20_100000", relative_path="stray")
    )

    with pytest.raises(errors.NotFoundError):
        controller.handle(restore.ChooseDestination())
    assert controller.state is restore.State.SELECT_DESTINATION

    # overriding onto an existing directory only warns
    assert controller.handle(restore.ChooseDestination(path=str(tmp_path))) is restore.State.DRY_RUN_PREVIEW
    assert controller.destination == str(tmp_path) + "/"
    assert controller.source_argument.endswith("stray/")
    assert "already exists" in caplog.text


def test_recycle_browsing_requires_recycle_bin(config, make_controller):
    controller = make_controller(config)
    with pytest.raises(errors.InvalidTransition):
        controller.handle(restore.ChooseRecycleItem(snapshot="x", relative_path="y"))


def test_cancel_from_any_open_state(config, make_controller):
    controller = make_controller(config)
    controller.handle(restore.ChooseTarget(index=0))
    assert controller.handle(restore.Cancel()) is restore.State.ABORTED
    with pytest.raises(errors.InvalidTransition):
        controller.handle(restore.Cancel())


def test_ownership_is_given_to_home_owner(config, runner, make_controller, monkeypatch):
    owner = types.SimpleNamespace(pw_name="alice", pw_uid=1000, pw_gid=1000)
    chowned = []
    monkeypatch.setattr(restore, "home_owner", lambda path: owner)
    monkeypatch.setattr(
        restore, "chown_tree", lambda path, uid, gid: chowned.append((path, uid, gid))
    )

    controller = make_controller(config, fix_ownership=True)
    for event in (
        restore.ChooseTarget(index=0),
        restore.ChooseScope(),
        restore.ChooseDestination(path="/home/alice/restored"),
        restore.Proceed(),
        restore.Answer(text="yes"),
        restore.Proceed(),
    ):
        controller.handle(event)

    assert controller.state is restore.State.DONE
    assert chowned == [(pathlib.Path("/home/alice/restored/"), 1000, 1000)]


def test_home_owner(monkeypatch):
    users = {"alice": types.SimpleNamespace(pw_name="alice")}

    def getpwnam(name):
        return users[name]

    monkeypatch.setattr(restore.pwd, "getpwnam", getpwnam)
    assert restore.home_owner("/home/alice/docs/").pw_name == "alice"
    assert restore.home_owner("/home/bob/docs/") is None
    assert restore.home_owner("/srv/www/") is None
    assert restore.home_owner("/home") is None
