"""
electrum_client/client.py

Electrum JSON-RPC client for Bitcoin blockchain interaction.

Provides methods for:
- Server information and fee estimates
- Block headers (one-off and subscriptions)
- Script hash balances, history, UTXOs and status subscriptions
- Transaction lookups and broadcasting

All socket handling, correlation and notification routing lives in
ElectrumEngine; this module only builds parameters and decodes results.
"""

import logging
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bitcoin.core import CBlockHeader, CTransaction, b2x, x
from bitcoin.core.serialize import SerializationError

from .config import ClientConfig, Endpoint, ProxyConfig
from .engine import ConnectionState, ElectrumEngine
from .errors import (
    ConnectError,
    DisconnectedError,
    ElectrumError,
    InvalidResponseError,
    RequestTimeoutError,
    RpcError,
)
from .scripthash import ScriptLike, to_scripthash
from .types import (
    GetBalanceRes,
    GetHeadersRes,
    GetHistoryRes,
    GetMerkleRes,
    HeaderNotification,
    ListUnspentRes,
    ServerFeaturesRes,
    deserialize_header,
    parse_fee_histogram,
)

logger = logging.getLogger("electrum_client.client")

HEADERS_SUBSCRIBE = "blockchain.headers.subscribe"
SCRIPTHASH_SUBSCRIBE = "blockchain.scripthash.subscribe"

ScriptRef = Union[ScriptLike, str]


def _raise_first_error(results: List[Any]) -> List[Any]:
    """Batch helpers fail as a whole if any item failed."""
    for item in results:
        if isinstance(item, ElectrumError):
            raise item
    return results


class ElectrumClient:
    """
    Electrum client for Bitcoin.

    Provides high-level methods for blockchain interaction on top of a
    single ElectrumEngine connection.

    Example:
        client = ElectrumClient("ssl://electrum.blockstream.info:50002")
        client.connect()

        # Get the balance of an output script
        balance = client.script_get_balance(script_pubkey)

        # Follow the chain tip
        tip = client.block_headers_subscribe()
        new_tip = client.block_headers_wait(timeout=600)

        client.close()
    """

    def __init__(
        self,
        server: Union[str, Endpoint],
        proxy: Union[str, ProxyConfig, None] = None,
        validate_domain: bool = True,
        timeout: Optional[float] = None,
        config: Optional[ClientConfig] = None,
    ):
        """
        Initialize the client.

        Args:
            server: Server URL ('ssl://host:port', 'tcp://host:port') or Endpoint
            proxy: SOCKS5 proxy ('host:port' or ProxyConfig), required for .onion
            validate_domain: Verify the server's TLS certificate and hostname
            timeout: Default per-call timeout in seconds (overrides config)
            config: Engine configuration
        """
        if isinstance(proxy, str):
            proxy = ProxyConfig.parse(proxy)
        if isinstance(server, Endpoint):
            self.endpoint = server
        else:
            self.endpoint = Endpoint.parse(server, validate_domain=validate_domain, proxy=proxy)

        self.config = config or ClientConfig()
        if timeout is not None:
            self.config = replace(self.config, timeout=timeout)

        self._engine: Optional[ElectrumEngine] = None
        self._server_version: Optional[str] = None
        self._protocol_version: Optional[str] = None

    @property
    def engine(self) -> ElectrumEngine:
        if self._engine is None:
            raise DisconnectedError("Not connected to server")
        return self._engine

    @property
    def connected(self) -> bool:
        """Check if connected to a server."""
        return self._engine is not None and self._engine.is_connected

    @property
    def connection_state(self) -> ConnectionState:
        if self._engine is None:
            return ConnectionState.DISCONNECTED
        return self._engine.connection_state

    @property
    def server_software(self) -> Optional[str]:
        """Server software reported during the handshake."""
        return self._server_version

    @property
    def negotiated_protocol(self) -> Optional[str]:
        return self._protocol_version

    def connect(self, handshake: bool = True) -> "ElectrumClient":
        """
        Connect to the server and negotiate the protocol version.

        A client connects once; after a disconnect build a new client.

        Raises:
            ConnectError: If the connection or handshake fails
        """
        if self._engine is not None:
            raise ElectrumError("Client already connected; create a new client to reconnect")

        self._engine = ElectrumEngine.connect(self.endpoint, self.config)
        if handshake:
            try:
                self._handshake()
            except ElectrumError as e:
                self._engine.close()
                self._engine = None
                raise ConnectError(f"Handshake with {self.endpoint} failed: {e}") from e

        logger.info(f"Connected to {self.endpoint} (version: {self._server_version})")
        return self

    def close(self) -> None:
        """Close the connection."""
        if self._engine:
            self._engine.close()

    def _handshake(self) -> None:
        result = self.server_version(self.config.client_name, self.config.protocol_version)
        self._server_version = result[0]
        self._protocol_version = result[1] if len(result) > 1 else None

    def _call(self, method: str, *params: Any, timeout: Optional[float] = None) -> Any:
        return self.engine.call(method, list(params), timeout=timeout)

    def _batch(self, method: str, param_sets: Sequence[Sequence[Any]]) -> List[Any]:
        results = self.engine.call_batch([(method, list(params)) for params in param_sets])
        return _raise_first_error(results)

    @property
    def calls_made(self) -> int:
        return self.engine.calls_made

    # ========================================================================
    # SERVER
    # ========================================================================

    def server_version(self, client_name: str, protocol_version: str) -> List[str]:
        """
        Identify the client and negotiate the protocol version.

        Returns:
            [server_software, protocol_version]
        """
        result = self._call("server.version", client_name, protocol_version)
        if not isinstance(result, list) or not result:
            raise InvalidResponseError("Invalid server.version payload", result)
        return result

    def server_features(self) -> ServerFeaturesRes:
        return ServerFeaturesRes.from_payload(self._call("server.features"))

    def server_banner(self) -> str:
        return str(self._call("server.banner"))

    def server_donation_address(self) -> str:
        return str(self._call("server.donation_address"))

    def server_peers_subscribe(self) -> List[Any]:
        """Known peer servers. Despite the name no notifications follow."""
        return self._call("server.peers.subscribe")

    def ping(self) -> None:
        """
        Ping the server to keep the session alive.

        Raises:
            ElectrumError: If the server does not answer
        """
        self._call("server.ping")

    # ========================================================================
    # HEADERS AND FEES
    # ========================================================================

    def block_header_raw(self, height: int) -> bytes:
        return x(self._call("blockchain.block.header", height))

    def block_header(self, height: int) -> CBlockHeader:
        """Header of the block at height."""
        raw = self.block_header_raw(height)
        try:
            return deserialize_header(raw)
        except (ValueError, SerializationError) as e:
            raise InvalidResponseError(f"Invalid block header: {e}", raw.hex()) from e

    def block_headers(self, start_height: int, count: int) -> GetHeadersRes:
        """Up to count consecutive headers starting at start_height."""
        return GetHeadersRes.from_payload(self._call("blockchain.block.headers", start_height, count))

    def estimate_fee(self, blocks: int) -> float:
        """
        Fee rate (BTC/kB) to confirm within blocks; -1 if the server cannot tell.
        """
        return float(self._call("blockchain.estimatefee", blocks))

    def batch_estimate_fee(self, targets: Sequence[int]) -> List[float]:
        return [float(rate) for rate in self._batch("blockchain.estimatefee", [[n] for n in targets])]

    def relay_fee(self) -> float:
        """Minimum fee rate (BTC/kB) the server's node relays."""
        return float(self._call("blockchain.relayfee"))

    def mempool_get_fee_histogram(self) -> List[Tuple[float, int]]:
        return parse_fee_histogram(self._call("mempool.get_fee_histogram"))

    def block_headers_subscribe(self) -> HeaderNotification:
        """Subscribe to new chain tips and return the current one."""
        result = self.engine.subscribe(HEADERS_SUBSCRIBE, [])
        return HeaderNotification.from_payload(result)

    def block_headers_pop(self) -> Optional[HeaderNotification]:
        """Next queued chain tip, or None if none arrived yet."""
        try:
            payload = self.engine.pop_next(HEADERS_SUBSCRIBE, None, timeout=0)
        except RequestTimeoutError:
            return None
        return HeaderNotification.from_payload(payload)

    def block_headers_wait(self, timeout: Optional[float] = None) -> HeaderNotification:
        """Block until the next chain tip arrives."""
        payload = self.engine.pop_next(HEADERS_SUBSCRIBE, None, timeout=timeout)
        return HeaderNotification.from_payload(payload)

    # ========================================================================
    # SCRIPT HASHES
    # ========================================================================

    def script_subscribe(self, script: ScriptRef) -> Optional[str]:
        """
        Subscribe to status changes of a script.

        Returns:
            Current status hash, or None if the script has no history
        """
        return self.engine.subscribe(SCRIPTHASH_SUBSCRIBE, [to_scripthash(script)])

    def script_unsubscribe(self, script: ScriptRef) -> bool:
        """
        Drop a subscription. The server is told once the last local subscriber leaves.

        Raises:
            NotSubscribedError: If the script was not subscribed
        """
        scripthash = to_scripthash(script)
        remaining = self.engine.unsubscribe(SCRIPTHASH_SUBSCRIBE, scripthash)
        if remaining > 0:
            return True
        return bool(self._call("blockchain.scripthash.unsubscribe", scripthash))

    def script_pop(self, script: ScriptRef) -> Optional[str]:
        """Next queued status of a script, or None if no change arrived."""
        try:
            return self.engine.pop_next(SCRIPTHASH_SUBSCRIBE, to_scripthash(script), timeout=0)
        except RequestTimeoutError:
            return None

    def script_wait(self, script: ScriptRef, timeout: Optional[float] = None) -> Optional[str]:
        """Block until the status of a script changes."""
        return self.engine.pop_next(SCRIPTHASH_SUBSCRIBE, to_scripthash(script), timeout=timeout)

    def script_status(self, script: ScriptRef) -> Optional[str]:
        """Last known status of a subscribed script."""
        return self.engine.peek(SCRIPTHASH_SUBSCRIBE, to_scripthash(script))

    def script_get_balance(self, script: ScriptRef) -> GetBalanceRes:
        """
        Get confirmed and unconfirmed balance of a script.

        Returns:
            GetBalanceRes with balances in satoshis
        """
        result = self._call("blockchain.scripthash.get_balance", to_scripthash(script))
        return GetBalanceRes.from_payload(result)

    def batch_script_get_balance(self, scripts: Sequence[ScriptRef]) -> List[GetBalanceRes]:
        results = self._batch(
            "blockchain.scripthash.get_balance", [[to_scripthash(s)] for s in scripts]
        )
        return [GetBalanceRes.from_payload(item) for item in results]

    def script_get_history(self, script: ScriptRef) -> List[GetHistoryRes]:
        """Confirmed and mempool transactions touching a script."""
        result = self._call("blockchain.scripthash.get_history", to_scripthash(script))
        return [GetHistoryRes.from_payload(item) for item in result]

    def batch_script_get_history(self, scripts: Sequence[ScriptRef]) -> List[List[GetHistoryRes]]:
        results = self._batch(
            "blockchain.scripthash.get_history", [[to_scripthash(s)] for s in scripts]
        )
        return [[GetHistoryRes.from_payload(item) for item in history] for history in results]

    def script_list_unspent(self, script: ScriptRef) -> List[ListUnspentRes]:
        """
        Get unspent transaction outputs of a script.

        Returns:
            List of ListUnspentRes
        """
        result = self._call("blockchain.scripthash.listunspent", to_scripthash(script))
        return [ListUnspentRes.from_payload(item) for item in result]

    def batch_script_list_unspent(self, scripts: Sequence[ScriptRef]) -> List[List[ListUnspentRes]]:
        results = self._batch(
            "blockchain.scripthash.listunspent", [[to_scripthash(s)] for s in scripts]
        )
        return [[ListUnspentRes.from_payload(item) for item in utxos] for utxos in results]

    # ========================================================================
    # TRANSACTIONS
    # ========================================================================

    def transaction_get_raw(self, txid: str) -> bytes:
        return x(self._call("blockchain.transaction.get", txid))

    def transaction_get(self, txid: str) -> CTransaction:
        """Get and deserialize a transaction."""
        raw = self.transaction_get_raw(txid)
        try:
            return CTransaction.deserialize(raw)
        except (ValueError, SerializationError) as e:
            raise InvalidResponseError(f"Invalid transaction {txid}: {e}", raw.hex()) from e

    def batch_transaction_get(self, txids: Sequence[str]) -> List[CTransaction]:
        results = self._batch("blockchain.transaction.get", [[txid] for txid in txids])
        transactions = []
        for txid, raw_hex in zip(txids, results):
            try:
                transactions.append(CTransaction.deserialize(x(raw_hex)))
            except (TypeError, ValueError, SerializationError) as e:
                raise InvalidResponseError(f"Invalid transaction {txid}: {e}", raw_hex) from e
        return transactions

    def transaction_broadcast_raw(self, raw_tx: Union[bytes, str]) -> str:
        """
        Broadcast a signed, serialized transaction to the network.

        Returns:
            Transaction ID (txid)

        Raises:
            RpcError: If the server's node rejects the transaction
        """
        tx_hex = raw_tx if isinstance(raw_tx, str) else b2x(raw_tx)
        result = self._call("blockchain.transaction.broadcast", tx_hex)

        if isinstance(result, str) and len(result) == 64:
            logger.info(f"Transaction broadcast successful: {result}")
            return result
        # Old servers report rejection as a result string
        raise RpcError(code=None, message=f"Broadcast failed: {result}")

    def transaction_broadcast(self, tx: CTransaction) -> str:
        return self.transaction_broadcast_raw(tx.serialize())

    def transaction_get_merkle(self, txid: str, height: int) -> GetMerkleRes:
        """Merkle branch proving txid is in the block at height."""
        result = self._call("blockchain.transaction.get_merkle", txid, height)
        return GetMerkleRes.from_payload(result)

    # ========================================================================
    # CONTEXT MANAGER
    # ========================================================================

    def __enter__(self) -> "ElectrumClient":
        """Context manager entry."""
        if self._engine is None:
            self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit."""
        self.close()


# ============================================================================
# CONVENIENCE FUNCTIONS
# ============================================================================

def connect_any(
    servers: Sequence[Union[str, Endpoint]],
    proxy: Union[str, ProxyConfig, None] = None,
    validate_domain: bool = True,
    config: Optional[ClientConfig] = None,
) -> ElectrumClient:
    """
    Connect to the first server in the list that accepts.

    Each server is tried once, in order. This only picks a server for the
    initial connection; a later disconnect is not retried.

    Raises:
        ConnectError: If no server could be reached
    """
    errors: Dict[str, str] = {}
    for server in servers:
        client = ElectrumClient(server, proxy=proxy, validate_domain=validate_domain, config=config)
        try:
            return client.connect()
        except ConnectError as e:
            logger.warning(f"Failed to connect to {server}: {e}")
            errors[str(server)] = str(e)

    logger.error("Failed to connect to any Electrum server")
    raise ConnectError(f"Failed to connect to any Electrum server: {errors}")
