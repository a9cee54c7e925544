"""
electrum_client/types.py

Typed results for the Electrum RPC methods.

Each model is built from the server's JSON payload with from_payload(); a
payload that does not fit raises InvalidResponseError.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Callable, List, Optional, Tuple, TypeVar

from bitcoin.core import CBlockHeader, x
from bitcoin.core.serialize import SerializationError

from .errors import InvalidResponseError

T = TypeVar("T")

BLOCK_HEADER_SIZE = 80


def _parse(model: str, payload: Any, build: Callable[[], T]) -> T:
    try:
        return build()
    except (AttributeError, KeyError, TypeError, ValueError, SerializationError) as e:
        raise InvalidResponseError(f"Invalid {model} payload: {e}", payload) from e


def deserialize_header(raw: bytes) -> CBlockHeader:
    if len(raw) != BLOCK_HEADER_SIZE:
        raise ValueError(f"block header must be {BLOCK_HEADER_SIZE} bytes, got {len(raw)}")
    return CBlockHeader.deserialize(raw)


@dataclass
class GetHistoryRes:
    """Entry of blockchain.scripthash.get_history."""
    height: int      # 0 if unconfirmed, -1 if unconfirmed with unconfirmed inputs
    tx_hash: str
    fee: Optional[int] = None  # only reported for mempool transactions

    @classmethod
    def from_payload(cls, payload: Any) -> "GetHistoryRes":
        return _parse("history", payload, lambda: cls(
            height=int(payload["height"]),
            tx_hash=str(payload["tx_hash"]),
            fee=int(payload["fee"]) if payload.get("fee") is not None else None,
        ))

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ListUnspentRes:
    """Entry of blockchain.scripthash.listunspent."""
    height: int
    tx_hash: str
    tx_pos: int
    value: int  # In satoshis

    @classmethod
    def from_payload(cls, payload: Any) -> "ListUnspentRes":
        return _parse("unspent", payload, lambda: cls(
            height=int(payload.get("height", 0)),
            tx_hash=str(payload["tx_hash"]),
            tx_pos=int(payload["tx_pos"]),
            value=int(payload["value"]),
        ))

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ServerFeaturesRes:
    """Result of server.features."""
    server_version: str
    genesis_hash: bytes
    protocol_min: str
    protocol_max: str
    hash_function: Optional[str] = None
    pruning: Optional[int] = None
    hosts: dict = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "ServerFeaturesRes":
        return _parse("server features", payload, lambda: cls(
            server_version=str(payload["server_version"]),
            genesis_hash=x(payload["genesis_hash"]),
            protocol_min=str(payload["protocol_min"]),
            protocol_max=str(payload["protocol_max"]),
            hash_function=payload.get("hash_function"),
            pruning=int(payload["pruning"]) if payload.get("pruning") is not None else None,
            hosts=dict(payload.get("hosts") or {}),
        ))

    def to_dict(self) -> dict:
        data = asdict(self)
        data["genesis_hash"] = self.genesis_hash.hex()
        return data


@dataclass
class GetHeadersRes:
    """Result of blockchain.block.headers."""
    max: int
    count: int
    raw_headers: bytes
    headers: List[CBlockHeader] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> "GetHeadersRes":
        def build() -> "GetHeadersRes":
            raw = x(payload["hex"])
            if len(raw) % BLOCK_HEADER_SIZE:
                raise ValueError(f"{len(raw)} bytes is not a whole number of headers")
            headers = [
                deserialize_header(raw[i:i + BLOCK_HEADER_SIZE])
                for i in range(0, len(raw), BLOCK_HEADER_SIZE)
            ]
            count = int(payload["count"])
            if count != len(headers):
                raise ValueError(f"count is {count} but {len(headers)} headers were sent")
            return cls(max=int(payload["max"]), count=count, raw_headers=raw, headers=headers)

        return _parse("headers", payload, build)


@dataclass
class GetBalanceRes:
    """Result of blockchain.scripthash.get_balance, in satoshis."""
    confirmed: int
    unconfirmed: int

    @classmethod
    def from_payload(cls, payload: Any) -> "GetBalanceRes":
        return _parse("balance", payload, lambda: cls(
            confirmed=int(payload["confirmed"]),
            unconfirmed=int(payload["unconfirmed"]),
        ))

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class GetMerkleRes:
    """Result of blockchain.transaction.get_merkle."""
    block_height: int
    pos: int
    merkle: List[bytes]

    @classmethod
    def from_payload(cls, payload: Any) -> "GetMerkleRes":
        return _parse("merkle", payload, lambda: cls(
            block_height=int(payload["block_height"]),
            pos=int(payload["pos"]),
            merkle=[x(node) for node in payload["merkle"]],
        ))


@dataclass
class HeaderNotification:
    """A new chain tip, from blockchain.headers.subscribe."""
    height: int
    header: CBlockHeader

    @classmethod
    def from_payload(cls, payload: Any) -> "HeaderNotification":
        return _parse("header notification", payload, lambda: cls(
            height=int(payload["height"]),
            header=deserialize_header(x(payload["hex"])),
        ))


def parse_fee_histogram(payload: Any) -> List[Tuple[float, int]]:
    """mempool.get_fee_histogram: [[fee_rate, vsize], ...]"""
    return _parse("fee histogram", payload, lambda: [
        (float(fee), int(vsize)) for fee, vsize in payload
    ])
