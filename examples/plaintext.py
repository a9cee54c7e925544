"""
electrum_client/examples/plaintext.py

Print a server's features over a plaintext connection.

Usage:
    python examples/plaintext.py [tcp://host:port]
"""

import logging
import sys
from pprint import pprint

from electrum_client import ElectrumClient

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s'
)


def main(server: str = "tcp://electrum.blockstream.info:50001") -> None:
    with ElectrumClient(server) as client:
        pprint(client.server_features())
        print(f"relay fee: {client.relay_fee()} BTC/kB")


if __name__ == "__main__":
    main(*sys.argv[1:2])
