"""shared builders for synthetic drcov traces and object images"""

import struct
from typing import Iterable, List, Optional, Sequence, Tuple

import pytest

from drcov2lcov.dwarf import LineRow

COLUMNS = {
    2: "Columns: id, base, end, entry, path",
    3: "Columns: id, containing_id, start, end, entry, path",
    4: "Columns: id, containing_id, start, end, entry, offset, path",
    5: "Columns: id, containing_id, start, end, entry, offset, preferred_base, path",
}


def make_trace(
    module_lines: Sequence[str],
    blocks: Iterable[Tuple[int, int, int]] = (),
    module_version: int = 2,
    legacy: bool = False,
    columns: Optional[str] = None,
    eol: str = "\n",
    bb_count: Optional[int] = None,
) -> bytes:
    """assemble a trace from raw module lines and (start, size, module_id) blocks"""
    blocks = list(blocks)
    lines: List[str] = ["DRCOV VERSION: 2", "DRCOV FLAVOR: drcov"]
    if legacy:
        lines.append(f"Module Table: {len(module_lines)}")
    else:
        lines.append(f"Module Table: version {module_version}, count {len(module_lines)}")
        lines.append(columns or COLUMNS.get(module_version, COLUMNS[5]))
    lines.extend(module_lines)
    lines.append(f"BB Table: {len(blocks) if bb_count is None else bb_count} bbs")

    text = eol.join(lines) + eol
    return text.encode() + b"".join(struct.pack("<IHH", *b) for b in blocks)


class FakeImage:
    """stands in for an ObjectImage in resolver and correlator tests"""

    def __init__(
        self,
        path: str = "/bin/prog",
        rows: Sequence[LineRow] = (),
        load_bias: int = 0,
        link=None,
        debug: bool = True,
        build_id: Optional[str] = None,
    ):
        self.path = path
        self.rows = list(rows)
        self.load_bias = load_bias
        self.link = link
        self.debug = debug
        self._build_id = build_id
        self.closed = False

    def debug_link(self):
        return self.link

    def build_id(self):
        return self._build_id

    def has_debug_info(self) -> bool:
        return self.debug

    def line_rows(self):
        return iter(self.rows)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()


@pytest.fixture
def trace_bytes():
    return make_trace


@pytest.fixture
def write_trace(tmp_path):
    """write a synthetic trace below tmp_path and return its path"""

    def _write(name: str, module_lines: Sequence[str], blocks=(), **kwargs) -> str:
        path = tmp_path / name
        path.write_bytes(make_trace(module_lines, blocks, **kwargs))
        return str(path)

    return _write


@pytest.fixture
def fake_image():
    return FakeImage
