"""
electrum_client - Electrum protocol client for Bitcoin

Speaks the client half of the Electrum JSON-RPC protocol over:
- plaintext TCP
- TLS (optionally accepting self-signed certificates)
- a SOCKS5 proxy such as Tor, for .onion servers

One background reader thread per connection demultiplexes responses and
subscription notifications, so any number of threads can share a client.

Usage:
    from electrum_client import ElectrumClient

    with ElectrumClient("ssl://electrum.blockstream.info:50002") as client:
        print(client.server_features())
        print(client.estimate_fee(6))

Engine Usage:
    from electrum_client import ElectrumEngine, Endpoint

    engine = ElectrumEngine.connect(Endpoint.parse("tcp://localhost:50001"))
    engine.call("server.version", ["my-wallet", "1.4"])
    engine.call_batch([("server.ping", []), ("blockchain.relayfee", [])])
    engine.close()
"""

from .client import ElectrumClient, connect_any
from .config import (
    ClientConfig,
    Endpoint,
    ProxyConfig,
    TransportMode,
    DEFAULT_TCP_PORT,
    DEFAULT_SSL_PORT,
)
from .engine import ConnectionState, ElectrumEngine
from .errors import (
    ConnectError,
    ConnectionClosedError,
    DisconnectedError,
    DuplicateIdError,
    ElectrumError,
    FrameError,
    InvalidResponseError,
    NotSubscribedError,
    ProtocolError,
    RequestTimeoutError,
    RpcError,
)
from .scripthash import address_to_scripthash, script_hash
from .types import (
    GetBalanceRes,
    GetHeadersRes,
    GetHistoryRes,
    GetMerkleRes,
    HeaderNotification,
    ListUnspentRes,
    ServerFeaturesRes,
)

__version__ = "0.1.0"

__all__ = [
    # Client
    "ElectrumClient",
    "connect_any",
    # Engine
    "ElectrumEngine",
    "ConnectionState",
    # Config
    "ClientConfig",
    "Endpoint",
    "ProxyConfig",
    "TransportMode",
    "DEFAULT_TCP_PORT",
    "DEFAULT_SSL_PORT",
    # Errors
    "ElectrumError",
    "ConnectError",
    "ConnectionClosedError",
    "DisconnectedError",
    "DuplicateIdError",
    "FrameError",
    "InvalidResponseError",
    "NotSubscribedError",
    "ProtocolError",
    "RequestTimeoutError",
    "RpcError",
    # Script hashes
    "address_to_scripthash",
    "script_hash",
    # Result types
    "GetBalanceRes",
    "GetHeadersRes",
    "GetHistoryRes",
    "GetMerkleRes",
    "HeaderNotification",
    "ListUnspentRes",
    "ServerFeaturesRes",
]
