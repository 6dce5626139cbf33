"""command line interface for drcov2lcov"""

import logging
import re
from enum import Enum
from pathlib import Path
from typing import List, Optional, Set

import typer
from rich.console import Console
from rich.logging import RichHandler

from .analysis import (
    print_conversion_summary,
    print_module_table,
    print_module_table_json,
)
from .core import LineCoverage, reduce_traces
from .drcov import DrCovError, read
from .filters import (
    DrcovFilters,
    Filter,
    FilterError,
    LineInfoFilters,
    ReplacementFilter,
)
from .image import DEFAULT_DEBUG_ROOT
from .reduce import SetReducer

LOGGER = logging.getLogger("drcov2lcov")

DEFAULT_OUTPUT_FILE = "coverage.info"
DRCOV_LOG_FILE_REGEX = re.compile(r"(dr|bb)cov\..*\.?log")


class LogLevel(str, Enum):
    debug = "debug"
    info = "info"
    warning = "warning"
    error = "error"


app = typer.Typer(
    help="convert drcov coverage traces into lcov line coverage",
    no_args_is_help=True,
    context_settings=dict(help_option_names=["-h", "--help"]),
    pretty_exceptions_short=True,
    pretty_exceptions_show_locals=False,
    add_completion=False,
)

# global state for verbose option
verbose_enabled = False


def setup_logging(level: str):
    """route the drcov2lcov logger to stderr through rich"""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main_callback(
    verbose: bool = typer.Option(
        False, "-v", "--verbose", help="enable debug logging for all operations"
    ),
    log_level: LogLevel = typer.Option(
        LogLevel.warning,
        "--log-level",
        envvar="DRCOV2LCOV_LOG",
        case_sensitive=False,
        help="logging threshold",
    ),
):
    """global options for drcov2lcov"""
    global verbose_enabled
    verbose_enabled = verbose
    setup_logging(LogLevel.debug.value if verbose else log_level.value)


def _fail(message: str):
    typer.echo(f"error: {message}", err=True)
    raise typer.Exit(1)


def _parse_filters(expressions: List[str], option: str) -> List[Filter]:
    try:
        return [Filter.parse(e) for e in expressions]
    except FilterError as e:
        raise typer.BadParameter(str(e), param_hint=option)


def _parse_path_maps(path_maps: List[str]) -> List[ReplacementFilter]:
    try:
        return [ReplacementFilter.parse(p) for p in path_maps]
    except FilterError as e:
        raise typer.BadParameter(str(e), param_hint="--path-map")


def validate_inputs(
    input_file: Optional[Path], directory: Optional[Path], list_file: Optional[Path]
):
    """check the input options, exiting with an error message on failure"""
    if input_file is None and directory is None and list_file is None:
        _fail("one of --input, --directory or --list is required")

    if input_file is not None:
        if not input_file.exists():
            _fail(f"input path '{input_file}' does not exist")
        if not input_file.is_file():
            _fail(f"input path '{input_file}' is not a file")

    if directory is not None:
        if not directory.exists():
            _fail(f"directory '{directory}' does not exist")
        if not directory.is_dir():
            _fail(f"given directory '{directory}' is not a directory")

    if list_file is not None:
        if not list_file.exists():
            _fail(f"list file path '{list_file}' does not exist")
        if not list_file.is_file():
            _fail(f"list file path '{list_file}' is not a file")


def validate_output(output: Path):
    parent = output.parent
    if not parent.is_dir():
        _fail(f"target output path '{output}' does not point to a valid directory")


def collect_input_files(
    input_file: Optional[Path], directory: Optional[Path], list_file: Optional[Path]
) -> List[Path]:
    """
    gather trace paths from a single file, a listing and a directory scan,
    canonicalized and de-duplicated, in a stable order
    """
    unique_files: Set[Path] = set()

    if input_file is not None:
        unique_files.add(input_file.resolve())

    if list_file is not None:
        for line in list_file.read_text().splitlines():
            line = line.strip()
            if line:
                unique_files.add(Path(line).resolve())

    if directory is not None:
        for entry in directory.iterdir():
            if entry.is_file() and DRCOV_LOG_FILE_REGEX.search(entry.name):
                unique_files.add(entry.resolve())

    return sorted(unique_files)


def build_drcov_filters(
    module_filters: List[str], module_skip_filters: List[str], path_maps: List[str]
) -> DrcovFilters:
    return DrcovFilters(
        module_filters=_parse_filters(module_filters, "--module-filter"),
        module_skip_filters=_parse_filters(module_skip_filters, "--module-skip-filter"),
        path_map_filters=_parse_path_maps(path_maps),
    )


_INPUT_HELP = "the path to a drcov file"
_DIRECTORY_HELP = "directory with drcov.*.log files to process"
_LIST_HELP = "text file listing drcov files to process, one per line"
_MODULE_FILTER_HELP = "only include modules matching the given regular expression"
_MODULE_SKIP_HELP = "skip modules matching the given regular expression"
_PATH_MAP_HELP = (
    "PATTERN:REPLACEMENT rewriting module lines before debug info lookup "
    "(split at the first colon, first matching map wins, $1 or ${name} insert "
    "groups of the match)"
)


@app.command()
def convert(
    input_file: Optional[Path] = typer.Option(None, "--input", "-i", help=_INPUT_HELP),
    directory: Optional[Path] = typer.Option(
        None, "--directory", "-d", help=_DIRECTORY_HELP
    ),
    list_file: Optional[Path] = typer.Option(None, "--list", "-l", help=_LIST_HELP),
    output: Path = typer.Option(
        Path(DEFAULT_OUTPUT_FILE), "--output", "-o", help="lcov output file"
    ),
    module_filters: List[str] = typer.Option(
        [], "--module-filter", help=_MODULE_FILTER_HELP
    ),
    module_skip_filters: List[str] = typer.Option(
        [], "--module-skip-filter", help=_MODULE_SKIP_HELP
    ),
    source_filters: List[str] = typer.Option(
        [],
        "--source-filter",
        help="only include source files matching the given regular expression",
    ),
    source_skip_filters: List[str] = typer.Option(
        [],
        "--source-skip-filter",
        help="skip source files matching the given regular expression",
    ),
    path_maps: List[str] = typer.Option([], "--path-map", "-p", help=_PATH_MAP_HELP),
    reduce_set_path: Optional[Path] = typer.Option(
        None,
        "--reduce-set-path",
        "-r",
        help="also write the input files with distinct coverage to this path",
    ),
    debug_root: str = typer.Option(
        DEFAULT_DEBUG_ROOT,
        "--debug-root",
        envvar="DRCOV2LCOV_DEBUG_ROOT",
        help="global directory searched for separate debug files",
    ),
):
    """convert drcov traces into an lcov tracefile"""
    drcov_filters = build_drcov_filters(module_filters, module_skip_filters, path_maps)
    line_filters = LineInfoFilters(
        src_filters=_parse_filters(source_filters, "--source-filter"),
        src_skip_filters=_parse_filters(source_skip_filters, "--source-skip-filter"),
    )

    validate_inputs(input_file, directory, list_file)
    validate_output(output)
    if reduce_set_path is not None:
        validate_output(reduce_set_path)

    files = collect_input_files(input_file, directory, list_file)
    if not files:
        LOGGER.warning("No drcov files found")

    reducer = SetReducer() if reduce_set_path is not None else None
    coverage = LineCoverage(drcov_filters, line_filters, debug_root, reducer)
    coverage.add_traces(files)

    try:
        coverage.write_lcov(output)
        if reducer is not None:
            reducer.write(str(reduce_set_path))
    except OSError as e:
        _fail(f"could not write output: {e}")

    if verbose_enabled:
        typer.echo(f"conversion of {len(files)} files:")
        print_conversion_summary(coverage)

    typer.echo(f"wrote coverage for {len(coverage)} source files to {output}")
    if reducer is not None:
        typer.echo(f"wrote {len(reducer)} reduced trace paths to {reduce_set_path}")


@app.command()
def reduce(
    input_file: Optional[Path] = typer.Option(None, "--input", "-i", help=_INPUT_HELP),
    directory: Optional[Path] = typer.Option(
        None, "--directory", "-d", help=_DIRECTORY_HELP
    ),
    list_file: Optional[Path] = typer.Option(None, "--list", "-l", help=_LIST_HELP),
    output: Path = typer.Option(..., "--output", "-o", help="reduced list output file"),
    module_filters: List[str] = typer.Option(
        [], "--module-filter", help=_MODULE_FILTER_HELP
    ),
    module_skip_filters: List[str] = typer.Option(
        [], "--module-skip-filter", help=_MODULE_SKIP_HELP
    ),
    path_maps: List[str] = typer.Option([], "--path-map", "-p", help=_PATH_MAP_HELP),
):
    """list the traces with distinct coverage, without symbolication"""
    drcov_filters = build_drcov_filters(module_filters, module_skip_filters, path_maps)

    validate_inputs(input_file, directory, list_file)
    validate_output(output)

    files = collect_input_files(input_file, directory, list_file)
    reducer = reduce_traces(files, drcov_filters)

    try:
        reducer.write(str(output))
    except OSError as e:
        _fail(f"could not write output: {e}")

    typer.echo(f"kept {len(reducer)} of {len(files)} trace files in {output}")


@app.command()
def modules(
    file: Path = typer.Argument(..., help="drcov file to inspect"),
    module_filters: List[str] = typer.Option(
        [], "--module-filter", help=_MODULE_FILTER_HELP
    ),
    module_skip_filters: List[str] = typer.Option(
        [], "--module-skip-filter", help=_MODULE_SKIP_HELP
    ),
    path_maps: List[str] = typer.Option([], "--path-map", "-p", help=_PATH_MAP_HELP),
    json_output: bool = typer.Option(
        False, "--json", help="output the module table as JSON"
    ),
):
    """display the decoded module table of a trace"""
    drcov_filters = build_drcov_filters(module_filters, module_skip_filters, path_maps)

    try:
        trace = read(str(file), drcov_filters)
    except (DrCovError, OSError) as e:
        _fail(f"could not load {file}: {e}")

    if json_output:
        print_module_table_json(trace)
    else:
        print_module_table(trace)


def main():
    """entry point for the console script"""
    app()


if __name__ == "__main__":
    main()
