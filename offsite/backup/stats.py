# Stdlib imports
import enum
import logging
import re
import typing

# Local imports
from . import helper, model

log = logging.getLogger(__name__)


class StatsProfile(str, enum.Enum):
    # rsync --info=stats2 machine-tagged counters ("Total_transferred_size: 42")
    TAGGED = "tagged"
    # rsync --stats human-readable counters ("Total transferred file size: 4,242 bytes")
    LEGACY = "legacy"
    # Tagged first, legacy when the tagged form yields nothing
    AUTO = "auto"


_counter_patterns: dict[StatsProfile, dict[str, str]] = {
    StatsProfile.TAGGED: {
        "bytes_transferred": r"^\s*Total_transferred_size:\s*([\d,]+)",
        "files_created": r"^\s*Number_of_created_files:\s*([\d,]+)",
        "files_deleted": r"^\s*Number_of_deleted_files:\s*([\d,]+)",
        "files_transferred": r"^\s*Number_of_regular_files_transferred:\s*([\d,]+)",
    },
    StatsProfile.LEGACY: {
        "bytes_transferred": r"^\s*Total transferred file size:\s*([\d,]+)",
        "files_created": r"^\s*Number of created files:\s*([\d,]+)",
        "files_deleted": r"^\s*Number of deleted files:\s*([\d,]+)",
        "files_transferred": r"^\s*Number of regular files transferred:\s*([\d,]+)",
    },
}


def _collect(output: str, profile: StatsProfile) -> dict[str, int]:
    """Sum every occurrence of each counter; one rsync run reports each once."""
    counters: dict[str, int] = {}
    for name, pattern in _counter_patterns[profile].items():
        matches = re.findall(pattern, output, flags=re.MULTILINE)
        if matches:
            counters[name] = sum(int(match.replace(",", "")) for match in matches)
    return counters


def parse_stats(
    output: str, profile: StatsProfile = StatsProfile.AUTO
) -> model.TransferStats:
    if profile is StatsProfile.AUTO:
        counters = _collect(output, StatsProfile.TAGGED) or _collect(
            output, StatsProfile.LEGACY
        )
    else:
        counters = _collect(output, profile)

    if not counters:
        log.warning(
            "Could not find transfer statistics in rsync output; reporting them as unknown"
        )
        return model.TransferStats.unknown()

    created = counters.get("files_created")
    transferred = counters.get("files_transferred")
    updated: typing.Optional[int] = None
    if created is not None and transferred is not None:
        updated = max(transferred - created, 0)

    return model.TransferStats(
        bytes_transferred=counters.get("bytes_transferred"),
        files_created=created,
        files_updated=updated,
        files_deleted=counters.get("files_deleted"),
    )


def _count(value: typing.Optional[int]) -> str:
    return "unknown" if value is None else str(value)


def format_stats(stats: model.TransferStats) -> str:
    if stats.bytes_transferred is None:
        transferred = "unknown"
    elif stats.bytes_transferred > 0:
        transferred = helper.human_readable(stats.bytes_transferred)
    else:
        transferred = "0 B (No changes)"

    return "\n".join(
        [
            f"Data Transferred: {transferred}",
            f"Files Created: {_count(stats.files_created)}",
            f"Files Updated: {_count(stats.files_updated)}",
            f"Files Deleted: {_count(stats.files_deleted)}",
        ]
    )
