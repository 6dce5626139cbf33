"""reporting helpers for decoded traces and conversion results"""

import json
import os
from typing import Any, Dict

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .core import LineCoverage
from .drcov import DrcovTrace


def _module_table_data(trace: DrcovTrace) -> Dict[str, Any]:
    """collect the module table of a trace into plain data"""
    modules = trace.modules
    data = {
        "filename": trace.path,
        "version": trace.version,
        "flavor": trace.flavor,
        "module_version": modules.version,
        "declared_modules": modules.count,
        "basic_blocks": trace.bb_count,
        "modules": [],
    }

    for module in modules.table:
        covered = len(module.executed_offsets)
        data["modules"].append(
            {
                "index": module.index,
                "id": module.id,
                "name": os.path.basename(module.path),
                "path": module.path,
                "base": f"0x{module.segment_start:x}",
                "size": module.size,
                "segment_offset": f"0x{module.segment_offset:x}",
                "containing_index": module.containing_index,
                "covered_bytes": covered,
                "percentage": round(covered / module.size * 100, 2)
                if module.size
                else 0.0,
            }
        )

    return data


def print_module_table(trace: DrcovTrace):
    """display the decoded module table of a trace using Rich"""
    console = Console()
    data = _module_table_data(trace)

    title = (
        f"[bold cyan]drcov version {data['version']}[/bold cyan] "
        f"[dim]({data['flavor']}, module table version {data['module_version']})[/dim]"
    )
    if data["filename"]:
        title += f"\n[dim]{data['filename']}[/dim]"
    console.print(Panel(title, expand=False))

    table = Table(title="[bold]Modules[/bold]")
    table.add_column("Index", justify="right", style="cyan")
    table.add_column("Base", style="magenta", no_wrap=True)
    table.add_column("Size", justify="right", style="blue")
    table.add_column("Seg. Offset", style="magenta", no_wrap=True)
    table.add_column("Container", justify="right")
    table.add_column("Covered", justify="right", style="green")
    table.add_column("Path", style="dim", max_width=60)

    for mod in data["modules"]:
        container = mod["containing_index"]
        table.add_row(
            str(mod["index"]),
            mod["base"],
            f"{mod['size']:,}",
            mod["segment_offset"],
            "-" if container is None else str(container),
            f"{mod['covered_bytes']:,}b ({mod['percentage']:.1f}%)",
            mod["path"],
        )

    console.print(table)
    console.print(
        f"{len(data['modules'])} of {data['declared_modules']} modules, "
        f"{data['basic_blocks']:,} basic block records"
    )


def print_module_table_json(trace: DrcovTrace):
    """output the decoded module table as JSON"""
    typer.echo(json.dumps(_module_table_data(trace), indent=2))


def print_conversion_summary(coverage: LineCoverage):
    """display basic statistics about a finished conversion"""
    total = coverage.total_lines()
    executed = coverage.executed_lines()
    percentage = executed / total if total else 0

    typer.echo(f"  traces processed: {len(coverage.processed)}")
    typer.echo(f"  traces skipped: {len(coverage.skipped)}")
    typer.echo(f"  source files: {len(coverage)}")
    typer.echo(f"  lines: {executed}/{total} executed ({percentage:.2%})")
