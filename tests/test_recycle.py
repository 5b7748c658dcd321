import datetime
import pathlib

from offsite.backup import recycle, transfer

LISTING = """\
drwx------          4,096 2025/02/01 03:00:00 .
drwx------          4,096 2024/01/01 10:00:00 2024-01-01_100000
drwx------          4,096 2025/01/20 10:00:00 2025-01-20_100000
drwx------          4,096 2024/06/01 10:00:00 not-a-date
-rw-------             12 2024/06/01 10:00:00 2023-01-01_notes.txt
"""


def test_snapshot_path_for(recycle_config, runner):
    bin_ = recycle.RecycleBin(
        recycle_config, transfer.Transfer(recycle_config, pathlib.Path("/x"), runner)
    )
    started = datetime.datetime(2025, 2, 1, 3, 0, 0)
    assert bin_.snapshot_path_for(started) == "backups/recycle_bin/2025-02-01_030000/"


def test_parse_snapshot_date():
    assert recycle.parse_snapshot_date("2024-01-01_1000") == datetime.date(2024, 1, 1)
    assert recycle.parse_snapshot_date("2024-13-01_1000") is None
    assert recycle.parse_snapshot_date("not-a-date") is None


def test_expired_snapshots():
    now = datetime.datetime(2025, 2, 1)
    names = ["2024-01-01_1000", "2025-01-20_1000", "not-a-date"]
    assert recycle.expired_snapshots(names, 30, now) == ["2024-01-01_1000"]


def test_expiry_boundary():
    now = datetime.datetime(2025, 2, 1)
    # exactly at the cutoff is not older than it
    assert recycle.expired_snapshots(["2025-01-02_0000"], 30, now) == []
    assert recycle.expired_snapshots(["2025-01-01_0000"], 30, now) == ["2025-01-01_0000"]


def test_undatable_names_are_never_expired():
    assert recycle.expired_snapshots(["not-a-date", "latest"], 0, datetime.datetime(2100, 1, 1)) == []


def test_parse_listing():
    entries = recycle.parse_listing(LISTING)
    assert recycle.RemoteEntry("2024-01-01_100000", True) in entries
    assert recycle.RemoteEntry("2023-01-01_notes.txt", False) in entries
    assert all(entry.name != "." for entry in entries)


def _recycle_bin(config, runner):
    return recycle.RecycleBin(config, transfer.Transfer(config, pathlib.Path("/x"), runner))


def _is_listing(program, args):
    return program == "rsync" and "--list-only" in args


def test_list_snapshots_only_directories(recycle_config, runner):
    runner.respond(_is_listing, output=LISTING)
    assert _recycle_bin(recycle_config, runner).list_snapshots() == [
        "2024-01-01_100000",
        "2025-01-20_100000",
        "not-a-date",
    ]


def test_prune_removes_only_expired(recycle_config, runner):
    runner.respond(_is_listing, output=LISTING)

    removed = _recycle_bin(recycle_config, runner).prune(
        now=datetime.datetime(2025, 2, 1)
    )

    assert removed == ["2024-01-01_100000"]
    emptied = [call for call in runner.calls_to("rsync") if "--delete" in call.args]
    assert len(emptied) == 1
    assert emptied[0].args[-1] == "u100@u100.example.net:backups/recycle_bin/2024-01-01_100000/"
    assert emptied[0].args[-2].endswith("/")
    rmdir = runner.calls_to("ssh")
    assert len(rmdir) == 1
    assert rmdir[0].args[-2:] == ["rmdir", "backups/recycle_bin/2024-01-01_100000"]


def test_prune_listing_failure_is_not_fatal(recycle_config, runner, caplog):
    runner.respond(_is_listing, exit_code=23)
    assert _recycle_bin(recycle_config, runner).prune() == []
    assert "Could not list recycle bin" in caplog.text


def test_prune_folder_failure_is_logged_and_skipped(recycle_config, runner, caplog):
    runner.respond(_is_listing, output=LISTING.replace("2025-01-20", "2024-02-02"))
    runner.respond(
        lambda program, args: program == "ssh" and "backups/recycle_bin/2024-01-01_100000" in args,
        exit_code=1,
    )

    removed = _recycle_bin(recycle_config, runner).prune(now=datetime.datetime(2025, 2, 1))

    assert removed == ["2024-02-02_100000"]
    assert "Could not remove recycle bin folder" in caplog.text


def test_remote_entry(config, runner):
    invoker = transfer.Transfer(config, pathlib.Path("/x"), runner)
    runner.respond(
        lambda program, args: args[-1].endswith("missing"), exit_code=23
    )
    runner.respond(
        _is_listing,
        output="drwx------          4,096 2025/01/01 10:00:00 site\n",
    )

    assert recycle.remote_entry(invoker, "backups/www/missing") is None
    assert recycle.remote_entry(invoker, "backups/www/site/") == recycle.RemoteEntry("site", True)
    assert runner.calls[-1].args[-1] == "u100@u100.example.net:backups/www/site"


def test_expiry_follows_the_cutoff_rule():
    # 2025-01-01 is 31 days before 2025-02-01, past a 30 day retention too
    now = datetime.datetime(2025, 2, 1)
    names = ["2024-01-01_1000", "2025-01-01_1000", "not-a-date"]
    assert recycle.expired_snapshots(names, 30, now) == [
        "2024-01-01_1000",
        "2025-01-01_1000",
    ]
