from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import click

from tinyimg.config import MODES, PoolConfig, load_pool_config
from tinyimg.errors import TinyImgError
from tinyimg.execution.converter import Converter
from tinyimg.utils.logging import set_log_level

from .ui import ProgressUI


def output_path(source: Path, out_dir: Optional[Path]) -> Path:
    target_dir = out_dir or source.parent
    return target_dir / f"{source.stem}.jpg"


async def convert_files(
    converter: Converter,
    paths: Sequence[Path],
    out_dir: Optional[Path],
    ui: ProgressUI,
    stream: bool = False,
) -> List[Tuple[Path, Optional[str]]]:
    async def _one(path: Path) -> Tuple[Path, Optional[str]]:
        on_progress = ui.track(path.name)
        try:
            with path.open("rb") as handle:
                if stream:
                    data = await converter.stream_convert(handle, on_progress)
                else:
                    data = await converter.convert_auto(handle, on_progress)
        except (TinyImgError, OSError) as exc:
            return path, str(exc)
        target = output_path(path, out_dir)
        target.write_bytes(data)
        return target, None

    return list(await asyncio.gather(*(_one(path) for path in paths)))


async def _run(config: PoolConfig, paths: Sequence[Path], out_dir: Optional[Path], stream: bool) -> int:
    failures = 0
    with ProgressUI() as ui:
        async with Converter(config) as converter:
            results = await convert_files(converter, paths, out_dir, ui, stream=stream)
        for path, error in results:
            if error:
                failures += 1
                ui.write_error(f"{path}: {error}")
            else:
                ui.write_output(f"wrote {path}")
    return failures


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Debug logging")
def cli(verbose: bool) -> None:
    """Convert large TIFF images to JPEG on a pool of execution contexts."""
    if verbose:
        set_log_level(logging.DEBUG)


@cli.command()
@click.argument("inputs", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("-o", "--out-dir", type=click.Path(file_okay=False, path_type=Path), help="Output directory")
@click.option("--mode", type=click.Choice(MODES), help="single context or pool")
@click.option("--pool-size", type=int, help="Number of execution contexts")
@click.option("--chunk-size", type=int, help="Chunk size in bytes for streamed input")
@click.option("--stream", is_flag=True, help="Always use the chunked protocol")
def convert(
    inputs: Tuple[Path, ...],
    out_dir: Optional[Path],
    mode: Optional[str],
    pool_size: Optional[int],
    chunk_size: Optional[int],
    stream: bool,
) -> None:
    """Convert INPUTS to <name>.jpg."""
    overrides = {
        key: value
        for key, value in (("mode", mode), ("pool_size", pool_size), ("chunk_size", chunk_size))
        if value is not None
    }
    try:
        config = dataclasses.replace(load_pool_config(), **overrides)
    except ValueError as exc:
        raise click.BadParameter(str(exc)) from exc
    if out_dir is not None:
        out_dir.mkdir(parents=True, exist_ok=True)
    try:
        failures = asyncio.run(_run(config, list(inputs), out_dir, stream))
    except TinyImgError as exc:
        raise click.ClickException(str(exc)) from exc
    if failures:
        raise SystemExit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
