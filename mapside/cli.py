#!/usr/bin/env python3
"""mapside Command Line Interface."""

from pathlib import Path

import typer

from mapside.dataset import KeyedDataset, TextDataSource
from mapside.errors import MapsideError
from mapside.execution import InMemoryEnvironment, ThreadPoolEnvironment
from mapside.join import MapsideJoin

app = typer.Typer(
    name="mapside",
    help="mapside - map-side (broadcast) joins for batch pipelines",
    add_completion=False,
)


@app.command()
def version():
    """Show mapside version."""
    import mapside

    typer.echo(f"mapside version: {getattr(mapside, '__version__', 'unknown')}")


def _read_table(paths: list[Path], delimiter: str, name: str) -> KeyedDataset:
    missing = [str(path) for path in paths if not path.exists()]
    if missing:
        typer.echo(f"❌ {name} input not found: {', '.join(missing)}")
        raise typer.Exit(1) from None
    return KeyedDataset(TextDataSource(list(paths), delimiter=delimiter), name=name)


@app.command()
def join(
    left: list[Path] = typer.Option(
        ..., "--left", "-l", help="Streamed table file(s), one partition per file"
    ),
    right: list[Path] = typer.Option(
        ..., "--right", "-r", help="Broadcast table file(s); must fit in memory"
    ),
    delimiter: str = typer.Option("|", "--delimiter", "-d", help="Field delimiter"),
    workers: int = typer.Option(4, "--workers", "-w", help="Number of workers"),
    batch_size: int = typer.Option(65536, "--batch-size", help="Rows per batch"),
    memory_limit: int | None = typer.Option(
        None, "--memory-limit", help="Byte budget for the broadcast side"
    ),
    output: Path | None = typer.Option(
        None, "--output", "-o", help="Write joined rows to this CSV file"
    ),
    local: bool = typer.Option(
        False, "--local", help="Run in the single-process environment"
    ),
):
    """Inner-join LEFT against RIGHT, broadcasting RIGHT to every worker."""
    environment = (
        InMemoryEnvironment() if local else ThreadPoolEnvironment(n_workers=workers)
    )

    try:
        joined = MapsideJoin(
            environment,
            batch_size=batch_size,
            broadcast_memory_limit=memory_limit,
        ).join(
            _read_table(left, delimiter, "left"),
            _read_table(right, delimiter, "right"),
        )
        frame = joined.to_frame()
    except MapsideError as e:
        typer.echo(f"❌ Join failed: {e}")
        raise typer.Exit(1) from e

    if output is not None:
        frame.write_csv(output)
        typer.echo(f"✅ Wrote {len(frame)} joined rows to {output}")
    else:
        for key, left_value, right_value in frame.iter_rows():
            typer.echo(f"{key}{delimiter}{left_value}{delimiter}{right_value}")


def main():
    app()


if __name__ == "__main__":
    main()
