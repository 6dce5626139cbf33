"""LCOV tracefile serialization"""

from typing import List

from .lines import LineTable


def format_lcov(line_table: LineTable) -> str:
    """render one SF/DA/end_of_record block per source file, sorted by path"""
    out: List[str] = []
    for path in sorted(line_table):
        out.append(f"SF:{path}")
        for info in line_table[path]:
            out.append(f"DA:{info.line},{1 if info.executed else 0}")
        out.append("end_of_record")
    return "".join(line + "\n" for line in out)


def write_lcov(path: str, line_table: LineTable):
    with open(path, "w", encoding="utf-8", errors="surrogateescape") as f:
        f.write(format_lcov(line_table))
