"""
CLI interface for encwheel.

Commands:
- addresses: print every account the configured program derives
- init: ensure the computation definition is finalized
- spin: submit one confidential spin and print the decrypted segment

init and spin run against the in-process LocalCluster, the only transport
this package ships.
"""

import asyncio
import sys
from pathlib import Path
from typing import Optional

import click
from rich.table import Table

from encwheel import __version__
from encwheel.addressing import definition_offset
from encwheel.config import EncwheelConfig, load_config
from encwheel.definitions import describe
from encwheel.errors import EncwheelError
from encwheel.simulator import LocalCluster
from encwheel.utils import console, setup_logging
from encwheel.wheel import EncryptedWheel


def _local_cluster(config: EncwheelConfig, key_unavailable_fetches: int = 0) -> LocalCluster:
    return LocalCluster(
        config.addresses().cluster_program_id,
        event_name=config.event_name,
        key_unavailable_fetches=key_unavailable_fetches,
    )


@click.group()
@click.version_option(version=__version__, prog_name="encwheel")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Path to config.yaml (default: $ENCWHEEL_HOME/config.yaml)")
@click.option("--log-level", default=None, help="Override the configured log level")
@click.pass_context
def main(ctx, config_path: Optional[Path], log_level: Optional[str]):
    """
    encwheel - confidential wheel spins on an MPC execution cluster.
    """
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except FileNotFoundError:
        if config_path is not None:
            raise click.UsageError(f"Config file not found: {config_path}")
        config = EncwheelConfig()
    except EncwheelError as e:
        raise click.UsageError(str(e))

    setup_logging(
        log_level=log_level or config.get_log_level(),
        log_format=config.get_log_format(),
        log_file=config.get_log_file_path(),
    )
    ctx.obj["config"] = config


@main.command()
@click.option("--offset", type=int, default=None, help="Also derive the computation account for this request offset")
@click.pass_context
def addresses(ctx, offset: Optional[int]):
    """Print derived account addresses."""
    config: EncwheelConfig = ctx.obj["config"]
    book = config.addresses()

    table = Table(title=f"Accounts for {config.circuit_name} (offset {definition_offset(config.circuit_name)})")
    table.add_column("Account")
    table.add_column("Address")
    rows = [
        ("program", book.program_id),
        ("definition", book.definition(config.circuit_name)),
        ("raw_circuit", book.raw_circuit(config.circuit_name)),
        ("mxe", book.mxe()),
        ("mempool", book.mempool()),
        ("executing_pool", book.executing_pool()),
        ("cluster", book.cluster()),
        ("fee_pool", book.fee_pool()),
        ("clock", book.clock()),
        ("sign_authority", book.sign_authority()),
    ]
    if offset is not None:
        rows.append(("computation", book.computation(offset)))
    for name, address in rows:
        table.add_row(name, str(address))
    console.print(table)


@main.command()
@click.pass_context
def init(ctx):
    """Ensure the computation definition is finalized (local cluster)."""
    config: EncwheelConfig = ctx.obj["config"]

    async def _run():
        cluster = _local_cluster(config)
        try:
            return await EncryptedWheel(cluster, config).initialize()
        finally:
            await cluster.aclose()

    try:
        ready = asyncio.run(_run())
    except EncwheelError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ {describe(ready)}")


@main.command()
@click.option("--segments", "-n", type=click.IntRange(1, 255), default=8, show_default=True,
              help="Number of wheel segments")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for the result")
@click.option("--spins", type=click.IntRange(1, 1000), default=1, show_default=True,
              help="Number of concurrent spins")
@click.pass_context
def spin(ctx, segments: int, timeout: Optional[float], spins: int):
    """Spin the wheel (local cluster)."""
    config: EncwheelConfig = ctx.obj["config"]

    async def _run():
        cluster = _local_cluster(config)
        wheel = EncryptedWheel(cluster, config)
        try:
            await wheel.initialize()
            return await asyncio.gather(*(wheel.spin(segments, timeout=timeout) for _ in range(spins)))
        finally:
            await cluster.aclose()

    try:
        outcomes = asyncio.run(_run())
    except EncwheelError as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)

    for outcome in outcomes:
        click.echo(f"✓ offset {outcome.offset}: segment {outcome.segment}/{outcome.num_segments}")


if __name__ == "__main__":
    main()
