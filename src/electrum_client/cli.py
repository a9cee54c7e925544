"""
electrum_client/cli.py

Command line front-end.

Usage:
    electrum-client --server ssl://electrum.blockstream.info:50002 features
    electrum-client --server tcp://abc...xyz.onion:50001 --proxy 127.0.0.1:9050 fee 6
    ELECTRUM_SERVER=ssl://host:50002 electrum-client balance bc1q...
"""

import json
import logging
import sys
from typing import Any

import click
from bitcoin.core import b2lx

from .client import ElectrumClient
from .config import ClientConfig
from .errors import ElectrumError
from .scripthash import address_to_scripthash

logger = logging.getLogger("electrum_client.cli")


def _to_jsonable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, bytes):
        return value.hex()
    if isinstance(value, (list, tuple)):
        return [_to_jsonable(item) for item in value]
    return value


def _echo(value: Any) -> None:
    click.echo(json.dumps(_to_jsonable(value), indent=2, default=str))


@click.group()
@click.option("--server", "-s", envvar="ELECTRUM_SERVER", required=True,
              help="Server URL, e.g. ssl://electrum.blockstream.info:50002")
@click.option("--proxy", envvar="ELECTRUM_PROXY", default=None,
              help="SOCKS5 proxy host:port (needed for .onion servers)")
@click.option("--timeout", type=float, default=None, help="Per-call timeout in seconds")
@click.option("--no-validate-domain", is_flag=True, default=False,
              help="Accept any TLS certificate (self-signed servers)")
@click.option("--verbose", "-v", count=True, help="-v for info, -vv for wire traffic")
@click.pass_context
def main(ctx, server, proxy, timeout, no_validate_domain, verbose):
    """Query an Electrum server."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        client = ElectrumClient(
            server,
            proxy=proxy,
            validate_domain=not no_validate_domain,
            timeout=timeout,
            config=ClientConfig.from_env(),
        )
    except ValueError as e:
        raise click.BadParameter(str(e))

    ctx.obj = client


def _run(ctx, operation):
    client: ElectrumClient = ctx.obj
    try:
        with client:
            return operation(client)
    except ElectrumError as e:
        logger.debug("Command failed", exc_info=True)
        raise click.ClickException(str(e))


@main.command()
@click.pass_context
def features(ctx):
    """Show server.features."""
    _echo(_run(ctx, lambda c: c.server_features()))


@main.command()
@click.pass_context
def version(ctx):
    """Show the negotiated server software and protocol version."""
    _echo(_run(ctx, lambda c: [c.server_software, c.negotiated_protocol]))


@main.command()
@click.argument("address")
@click.pass_context
def balance(ctx, address):
    """Confirmed and unconfirmed balance of ADDRESS, in satoshis."""
    _echo(_run(ctx, lambda c: c.script_get_balance(address_to_scripthash(address))))


@main.command()
@click.argument("address")
@click.pass_context
def history(ctx, address):
    """Transaction history of ADDRESS."""
    _echo(_run(ctx, lambda c: c.script_get_history(address_to_scripthash(address))))


@main.command()
@click.argument("address")
@click.pass_context
def unspent(ctx, address):
    """Unspent outputs of ADDRESS."""
    _echo(_run(ctx, lambda c: c.script_list_unspent(address_to_scripthash(address))))


@main.command()
@click.argument("blocks", type=int, default=6)
@click.pass_context
def fee(ctx, blocks):
    """Fee rate (BTC/kB) to confirm within BLOCKS blocks."""
    _echo(_run(ctx, lambda c: c.estimate_fee(blocks)))


@main.command()
@click.argument("txid")
@click.pass_context
def tx(ctx, txid):
    """Raw transaction TXID, hex encoded."""
    _echo(_run(ctx, lambda c: c.transaction_get_raw(txid)))


@main.command("watch-headers")
@click.option("--count", "-n", type=int, default=1, help="Number of new tips to wait for")
@click.option("--wait", type=float, default=1200.0, show_default=True,
              help="Seconds to wait for each tip")
@click.pass_context
def watch_headers(ctx, count, wait):
    """Print the chain tip, then each new tip as it arrives."""
    def operation(client: ElectrumClient) -> None:
        tip = client.block_headers_subscribe()
        click.echo(f"{tip.height} {b2lx(tip.header.GetHash())}")
        for _ in range(count):
            tip = client.block_headers_wait(timeout=wait)
            click.echo(f"{tip.height} {b2lx(tip.header.GetHash())}")

    _run(ctx, operation)


if __name__ == "__main__":
    main()
