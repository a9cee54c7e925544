"""
electrum_client/scripthash.py

Electrum script hashes.

Electrum servers index addresses by the SHA256 of the output script, byte
reversed and hex encoded.
"""

import hashlib
import logging
from typing import Union

from bitcoin.core.script import CScript
from bitcoin.wallet import CBitcoinAddress, CBitcoinAddressError

from .errors import ElectrumError

logger = logging.getLogger("electrum_client.scripthash")

ScriptLike = Union[bytes, bytearray, CScript]


def script_hash(script: ScriptLike) -> str:
    """
    Convert an output script to its Electrum script hash.

    Args:
        script: scriptPubKey bytes

    Returns:
        Scripthash as hex string
    """
    digest = hashlib.sha256(bytes(script)).digest()
    return digest[::-1].hex()


def address_to_script(address: str) -> CScript:
    """Output script paying to a Bitcoin address (network per bitcoin.SelectParams)."""
    try:
        return CBitcoinAddress(address).to_scriptPubKey()
    except (CBitcoinAddressError, ValueError) as e:
        logger.debug(f"Failed to parse address {address!r}: {e}")
        raise ElectrumError(f"Invalid address: {address}") from e


def address_to_scripthash(address: str) -> str:
    """
    Convert a Bitcoin address to the Electrum scripthash format.

    Raises:
        ElectrumError: If the address cannot be parsed
    """
    return script_hash(address_to_script(address))


def to_scripthash(script_or_hash: Union[ScriptLike, str]) -> str:
    """
    Accept either a raw script or an already computed hex script hash.

    Strings are taken to be script hashes; bytes are hashed.
    """
    if isinstance(script_or_hash, str):
        value = script_or_hash.lower()
        if len(value) != 64 or any(c not in "0123456789abcdef" for c in value):
            raise ElectrumError(f"Invalid script hash: {script_or_hash!r}")
        return value
    return script_hash(script_or_hash)
