"""per-source-file line records and their coalescing"""

from typing import Dict, List, NamedTuple


class LineInfo(NamedTuple):
    """execution status of one source line"""

    line: int
    executed: bool


# source path -> line records
LineTable = Dict[str, List[LineInfo]]


def coalesce_line_info(line_table: LineTable) -> None:
    """
    collapse each file's records into one per line, sorted by line number,
    with the executed flags of duplicates OR'd together. works in place and
    is idempotent.
    """
    for infos in line_table.values():
        merged: Dict[int, bool] = {}
        for info in infos:
            merged[info.line] = merged.get(info.line, False) or info.executed

        infos[:] = [LineInfo(line, executed) for line, executed in sorted(merged.items())]


def merge_line_tables(target: LineTable, source: LineTable) -> None:
    """append all records of source into target"""
    for path, infos in source.items():
        target.setdefault(path, []).extend(infos)
