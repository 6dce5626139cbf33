"""tests for the drcov trace decoder"""

import struct

import pytest

from drcov2lcov.drcov import (
    DrCovError,
    MalformedHeaderError,
    MalformedModuleLineError,
    Module,
    Modules,
    TruncatedBasicBlockDataError,
    parse,
    read,
)
from drcov2lcov.filters import DrcovFilters, Filter, ReplacementFilter


class TestModuleLineGrammars:
    """test decoding of each module line grammar"""

    def test_v1_legacy(self, trace_bytes):
        """test legacy tables carry only id, size and path"""
        trace = parse(trace_bytes(["0, 4096, /bin/prog"], legacy=True))

        assert trace.modules.version == 1
        module = trace.modules.table[0]
        assert module.size == 4096
        assert module.path == "/bin/prog"
        assert module.segment_start == 0
        assert module.segment_offset == 0
        assert module.containing_index is None

    def test_v2(self, trace_bytes):
        """test size is derived from base and end"""
        trace = parse(trace_bytes(["0, 0x1000, 0x2000, 0x1100, /bin/prog"]))

        module = trace.modules.table[0]
        assert trace.modules.version == 2
        assert module.size == 0x1000
        assert module.segment_start == 0x1000
        assert module.segment_offset == 0
        assert module.containing_index is None

    def test_v3_containing_offset(self, trace_bytes):
        """test segment offsets are back-filled from the containing module"""
        trace = parse(
            trace_bytes(
                [
                    "0, 0, 0x1000, 0x2000, 0x1100, /lib/libfoo.so",
                    "1, 0, 0x1800, 0x1c00, 0x0, /lib/libfoo.so",
                ],
                module_version=3,
            )
        )

        first, second = trace.modules.table
        assert first.containing_index == 0
        assert first.segment_offset == 0
        assert second.containing_index == 0
        assert second.segment_offset == 0x800
        assert second.size == 0x400

    def test_v4_explicit_offset(self, trace_bytes):
        """test version 4 lines carry their own offset"""
        trace = parse(
            trace_bytes(
                [
                    "0, 0, 0x1000, 0x2000, 0x1100, 0000000000000000, /lib/libfoo.so",
                    "1, 0, 0x1800, 0x1c00, 0x0, 0000000000000200, /lib/libfoo.so",
                ],
                module_version=4,
            )
        )

        first, second = trace.modules.table
        assert first.segment_offset == 0
        # explicit offsets are not re-derived from the container
        assert second.segment_offset == 0x200
        assert second.containing_index == 0

    def test_v4_offset_with_prefix(self, trace_bytes):
        """test the offset field also accepts a 0x prefix"""
        trace = parse(
            trace_bytes(
                ["0, 0, 0x1000, 0x2000, 0x1100, 0x300, /bin/prog"], module_version=4
            )
        )
        assert trace.modules.table[0].segment_offset == 0x300

    def test_v5_preferred_base(self, trace_bytes):
        """test version 5 lines with a preferred base"""
        trace = parse(
            trace_bytes(
                ["0, 0, 0x7f0000, 0x7f8000, 0x7f0100, 0000000000000040, 0x400000, /bin/prog"],
                module_version=5,
            )
        )

        module = trace.modules.table[0]
        assert module.size == 0x8000
        assert module.segment_start == 0x7F0000
        assert module.segment_offset == 0x40
        assert module.path == "/bin/prog"

    def test_later_versions_use_latest_grammar(self, trace_bytes):
        """test unknown newer versions are parsed with the version 5 grammar"""
        trace = parse(
            trace_bytes(
                ["0, 0, 0x1000, 0x2000, 0x1100, 10, 0x1000, /bin/prog"],
                module_version=7,
            )
        )
        assert trace.modules.version == 7
        assert trace.modules.table[0].segment_offset == 0x10

    def test_whitespace_and_paths_with_spaces(self):
        """test separators tolerate spacing and paths keep their spaces"""
        module = Module.from_line(
            " 3 ,0x1000,   0x3000 , 0x1000,  /opt/My App/bin/app  ", 2, index=3
        )
        assert module.id == 3
        assert module.index == 3
        assert module.size == 0x2000
        assert module.path == "/opt/My App/bin/app"

    def test_windows_columns(self, trace_bytes):
        """test checksum and timestamp columns ahead of the path"""
        trace = parse(
            trace_bytes(
                [r"0, 0x140000000, 0x140010000, 0x140001000, 0x1a2b, 0x5f00aa00, C:\Program Files\app.exe"],
                columns="Columns: id, base, end, entry, checksum, timestamp, path",
            )
        )
        module = trace.modules.table[0]
        assert module.size == 0x10000
        assert module.path == r"C:\Program Files\app.exe"

    def test_wrong_grammar_is_rejected(self, trace_bytes):
        """test a version 2 line inside a version 3 table fails"""
        with pytest.raises(MalformedModuleLineError):
            parse(trace_bytes(["0, 0x1000, 0x2000, 0x1100, /bin/prog"], module_version=3))

    def test_end_below_base(self):
        """test a module whose end precedes its base is rejected"""
        with pytest.raises(MalformedModuleLineError):
            Module.from_line("0, 0x2000, 0x1000, 0x0, /bin/prog", 2)

    def test_container_declared_later(self, trace_bytes):
        """test a containing index must point at an earlier module"""
        with pytest.raises(MalformedModuleLineError):
            parse(
                trace_bytes(
                    [
                        "0, 1, 0x1800, 0x1c00, 0x0, /lib/libfoo.so",
                        "1, 1, 0x1000, 0x1800, 0x0, /lib/libfoo.so",
                    ],
                    module_version=3,
                )
            )


class TestHeaders:
    """test header parsing and error reporting"""

    def test_version_and_flavor(self, trace_bytes):
        """test the version and flavor lines are recorded"""
        trace = parse(trace_bytes(["0, 0x1000, 0x2000, 0x1100, /bin/prog"]))
        assert trace.version == 2
        assert trace.flavor == "drcov"
        assert trace.bb_count == 0

    def test_missing_version(self):
        """test a file without a version line"""
        with pytest.raises(MalformedHeaderError):
            parse(b"DRCOV FLAVOR: drcov\n")

    def test_empty_file(self):
        """test an empty buffer"""
        with pytest.raises(MalformedHeaderError):
            parse(b"")

    def test_bad_module_header(self):
        """test an unrecognized module table header"""
        data = b"DRCOV VERSION: 2\nDRCOV FLAVOR: drcov\nModule Table: lots\n"
        with pytest.raises(MalformedHeaderError):
            parse(data)

    def test_missing_bb_header(self):
        """test a module table that is not followed by a BB table"""
        data = (
            b"DRCOV VERSION: 2\nDRCOV FLAVOR: drcov\n"
            b"Module Table: version 2, count 1\n"
            b"Columns: id, base, end, entry, path\n"
            b"0, 0x1000, 0x2000, 0x1100, /bin/prog\n"
        )
        with pytest.raises(MalformedHeaderError):
            parse(data)

    def test_missing_module_lines(self, trace_bytes):
        """test a table declaring more modules than it lists"""
        data = (
            b"DRCOV VERSION: 2\nDRCOV FLAVOR: drcov\n"
            b"Module Table: version 2, count 3\n"
            b"Columns: id, base, end, entry, path\n"
            b"0, 0x1000, 0x2000, 0x1100, /bin/prog\n"
        )
        with pytest.raises(MalformedModuleLineError):
            parse(data)

    def test_errors_share_a_base(self):
        """test all decode errors can be caught together"""
        assert issubclass(MalformedHeaderError, DrCovError)
        assert issubclass(MalformedModuleLineError, DrCovError)
        assert issubclass(TruncatedBasicBlockDataError, DrCovError)

    def test_blank_lines_and_crlf(self):
        """test blank lines and windows line endings in the preamble"""
        data = (
            b"DRCOV VERSION: 2\r\nDRCOV FLAVOR: drcov\r\n\r\n"
            b"Module Table: version 2, count 1\r\n"
            b"Columns: id, base, end, entry, path\r\n"
            b"0, 0x1000, 0x2000, 0x1100, /bin/prog\r\n\r\n"
            b"BB Table: 1 bbs\r\n" + struct.pack("<IHH", 0x10, 4, 0)
        )
        trace = parse(data)

        module = trace.modules.table[0]
        assert module.path == "/bin/prog"
        assert module.executed_offsets == {0x10, 0x11, 0x12}


class TestBasicBlocks:
    """test folding BB records into module bitmaps"""

    MODULE = "0, 0x1000, 0x2000, 0x1100, /bin/prog"

    def test_block_is_inserted(self, trace_bytes):
        """test a block marks its offsets as executed"""
        trace = parse(trace_bytes([self.MODULE], [(0x100, 4, 0)]))
        module = trace.modules.table[0]

        assert module.executed(0x100)
        assert module.executed(0x102)
        assert not module.executed(0x104)
        assert not module.executed(0xFF)

    def test_block_touching_module_end_is_rejected(self, trace_bytes):
        """test start + size at or past the module size leaves the bitmap untouched"""
        size = 0x1000
        trace = parse(trace_bytes([self.MODULE], [(size - 1, 2, 0), (size - 4, 4, 0)]))
        assert trace.modules.table[0].executed_offsets == set()

    def test_out_of_range_module_id(self, trace_bytes):
        """test records for unknown modules are skipped"""
        trace = parse(trace_bytes([self.MODULE], [(0x10, 4, 7), (0x20, 2, 0)]))
        assert trace.modules.table[0].executed_offsets == {0x20}

    def test_truncated_table(self, trace_bytes):
        """test fewer records than declared"""
        with pytest.raises(TruncatedBasicBlockDataError):
            parse(trace_bytes([self.MODULE], [(0x10, 4, 0)], bb_count=2))

    def test_ascii_table(self, trace_bytes):
        """test the textual BB table dump"""
        data = trace_bytes([self.MODULE], bb_count=2) + (
            b"module id, start, size:\n"
            b"module[  0]: 0x0000000000000010,   4\n"
            b"module[  0]: 0x0000000000000040,   3\n"
        )
        trace = parse(data)
        assert trace.modules.table[0].executed_offsets == {0x10, 0x11, 0x12, 0x40, 0x41}

    def test_coverage_all(self, trace_bytes):
        """test the union of all module bitmaps"""
        trace = parse(
            trace_bytes(
                [self.MODULE, "1, 0x3000, 0x4000, 0x3000, /lib/libc.so"],
                [(0x10, 3, 0), (0x20, 3, 1)],
            )
        )
        assert trace.modules.get_coverage_all() == {0x10, 0x11, 0x20, 0x21}


class TestModuleFiltering:
    """test filters applied while decoding"""

    LINES = [
        "0, 0x1000, 0x2000, 0x1000, /bin/prog",
        "1, 0x3000, 0x4000, 0x3000, /lib/libc.so",
    ]

    def test_skip_keeps_original_indices(self, trace_bytes):
        """test BB records keep pointing at the original module positions"""
        filters = DrcovFilters(module_skip_filters=[Filter.parse("prog")])
        trace = parse(trace_bytes(self.LINES, [(0x10, 3, 0), (0x20, 3, 1)]), filters)

        assert len(trace.modules.table) == 1
        libc = trace.modules.table[0]
        assert libc.path == "/lib/libc.so"
        assert libc.index == 1
        assert libc.executed_offsets == {0x20, 0x21}
        assert trace.modules.lookup(0) is None
        assert trace.modules.count == 2

    def test_include_filter(self, trace_bytes):
        """test only matching modules are decoded"""
        filters = DrcovFilters(module_filters=[Filter.parse(r"libc\.so")])
        trace = parse(trace_bytes(self.LINES), filters)
        assert [m.path for m in trace.modules.table] == ["/lib/libc.so"]

    def test_filtered_container_still_gives_offset(self, trace_bytes):
        """test a kept segment whose container was filtered out"""
        lines = [
            "0, 0, 0x1000, 0x2000, 0x1100, /lib/libfoo.so",
            "1, 0, 0x1800, 0x1c00, 0x0, /lib/libfoo.so.data",
        ]
        filters = DrcovFilters(module_filters=[Filter.parse(r"\.data$")])
        trace = parse(trace_bytes(lines, module_version=3), filters)

        assert len(trace.modules.table) == 1
        assert trace.modules.table[0].segment_offset == 0x800

    def test_path_map_before_filters(self, trace_bytes):
        """test module lines are remapped before filtering"""
        filters = DrcovFilters(
            module_filters=[Filter.parse("^.*/local/")],
            path_map_filters=[ReplacementFilter.parse("/remote/:/local/")],
        )
        lines = [
            "0, 0x1000, 0x2000, 0x1000, /remote/prog",
            "1, 0x3000, 0x4000, 0x3000, /lib/libc.so",
        ]
        trace = parse(trace_bytes(lines), filters)
        assert [m.path for m in trace.modules.table] == ["/local/prog"]


class TestModulesModel:
    """test the module collection helpers"""

    def test_lookup_by_index(self):
        """test lookups use the original index"""
        modules = Modules(2, [Module(size=0x10, path="/a", index=3)], count=5)
        assert modules.lookup(3).path == "/a"
        assert modules.lookup(0) is None
        assert modules.count == 5

    def test_mark_executed(self):
        """test the inserted range stops one byte short of the block end"""
        module = Module(size=0x100, path="/a")
        assert module.mark_executed(0x10, 4)
        assert module.executed_offsets == {0x10, 0x11, 0x12}
        assert not module.mark_executed(0xFC, 4)

    def test_unknown_module(self):
        """test the placeholder path used for anonymous code"""
        assert Module(size=1, path="<unknown>").is_unknown
        assert not Module(size=1, path="/bin/prog").is_unknown


class TestRead:
    """test reading traces from disk"""

    def test_read_file(self, write_trace):
        """test read records the source path"""
        path = write_trace("drcov.prog.1.log", ["0, 0x1000, 0x2000, 0x1000, /bin/prog"])
        trace = read(path)
        assert trace.path == path
        assert len(trace.modules.table) == 1

    def test_read_missing_file(self, tmp_path):
        """test reading a non-existent file"""
        with pytest.raises(FileNotFoundError):
            read(str(tmp_path / "missing.log"))
