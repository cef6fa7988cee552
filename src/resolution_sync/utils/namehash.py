"""
Domain name hashing utilities.

CNS and UNS registries identify domains by their EIP-137 namehash
(keccak-256); the Zilliqa ZNS registry uses the same construction with
SHA-256.
"""

import hashlib

from web3 import Web3

from ..models import Blockchain

NULL_NODE = "0x" + "0" * 64
BURN_ADDRESSES = frozenset({"0x" + "0" * 40, "0x0"})

UNS_TLDS = (
    "crypto",
    "coin",
    "wallet",
    "bitcoin",
    "x",
    "888",
    "nft",
    "dao",
    "blockchain",
    "zil",
)


def _keccak(data: bytes) -> bytes:
    return bytes(Web3.keccak(data))


def _sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def _node_bytes(node: str) -> bytes:
    hex_str = node[2:] if node.startswith("0x") else node
    if len(hex_str) != 64:
        raise ValueError(f"Invalid node length: {node}")
    return bytes.fromhex(hex_str)


def normalize_name(name: str) -> str:
    return name.strip().lower()


def child_node(parent: str, label: str, blockchain: Blockchain) -> str:
    """Compute the node of ``label`` directly under ``parent``."""
    digest = _sha256 if blockchain is Blockchain.ZNS else _keccak
    node = digest(_node_bytes(parent) + digest(label.encode("utf-8")))
    return "0x" + node.hex()


def _namehash(name: str, blockchain: Blockchain) -> str:
    node = NULL_NODE
    name = normalize_name(name)
    if name:
        for label in reversed(name.split(".")):
            node = child_node(node, label, blockchain)
    return node


def eip137_namehash(name: str) -> str:
    return _namehash(name, Blockchain.CNS)


def zns_namehash(name: str) -> str:
    return _namehash(name, Blockchain.ZNS)


def namehash_for(name: str, blockchain: Blockchain) -> str:
    """Namehash of ``name`` as computed by the registries of ``blockchain``."""
    return _namehash(name, blockchain)


def token_id_to_node(token_id: int) -> str:
    return "0x" + format(token_id, "064x")


def is_burn_address(address: str | None) -> bool:
    return address is None or address.lower() in BURN_ADDRESSES


# Root nodes let child domains resolve their parent's name without a row.
ROOT_NODES: dict[str, str] = {
    **{eip137_namehash(tld): tld for tld in UNS_TLDS},
    zns_namehash("zil"): "zil",
}
