import pytest

from offsite.backup import model, stats

TAGGED = """
Number_of_files: 1,204 (reg: 1,100, dir: 104)
Number_of_created_files: 3 (reg: 3)
Number_of_deleted_files: 2 (reg: 2)
Number_of_regular_files_transferred: 7
Total_file_size: 5,242,880
Total_transferred_size: 1048576
"""

LEGACY = """
Number of files: 1,204 (reg: 1,100, dir: 104)
Number of created files: 10 (reg: 10)
Number of deleted files: 1 (reg: 1)
Number of regular files transferred: 4
Total file size: 9,999,999 bytes
Total transferred file size: 2,097,152 bytes
"""


def test_tagged_format():
    parsed = stats.parse_stats(TAGGED)
    assert parsed == model.TransferStats(
        bytes_transferred=1048576,
        files_created=3,
        files_updated=4,
        files_deleted=2,
    )


def test_legacy_format_with_thousands_separators():
    parsed = stats.parse_stats(LEGACY)
    assert parsed.bytes_transferred == 2097152
    assert parsed.files_created == 10
    assert parsed.files_deleted == 1
    # more created than transferred never goes negative
    assert parsed.files_updated == 0


def test_single_tagged_counter():
    parsed = stats.parse_stats("Total_transferred_size: 1048576\n")
    assert parsed.bytes_transferred == 1048576
    assert parsed.files_created is None


def test_unrecognized_output_is_unknown_not_zero(caplog):
    parsed = stats.parse_stats("sending incremental file list\nsent 10 bytes\n")
    assert parsed.is_unknown
    assert parsed.bytes_transferred is None
    assert "unknown" in caplog.text


def test_counters_are_summed_across_targets():
    parsed = stats.parse_stats(TAGGED + "\n" + TAGGED)
    assert parsed.bytes_transferred == 2 * 1048576
    assert parsed.files_deleted == 4


@pytest.mark.parametrize(
    "profile, expected",
    [
        (stats.StatsProfile.TAGGED, None),
        (stats.StatsProfile.LEGACY, 2097152),
    ],
)
def test_explicit_profile(profile, expected):
    assert stats.parse_stats(LEGACY, profile).bytes_transferred == expected


def test_format_stats():
    text = stats.format_stats(stats.parse_stats(TAGGED))
    assert "Data Transferred: 1.0 MiB" in text
    assert "Files Created: 3" in text
    assert "Files Updated: 4" in text
    assert "Files Deleted: 2" in text


def test_format_stats_no_changes_and_unknown():
    assert "0 B (No changes)" in stats.format_stats(
        model.TransferStats(bytes_transferred=0, files_created=0, files_updated=0, files_deleted=0)
    )
    assert "Data Transferred: unknown" in stats.format_stats(model.TransferStats.unknown())
