"""Tests for the domain name hashing utilities."""

import pytest

from resolution_sync.models import Blockchain
from resolution_sync.utils.namehash import (
    NULL_NODE,
    ROOT_NODES,
    child_node,
    eip137_namehash,
    is_burn_address,
    namehash_for,
    normalize_name,
    token_id_to_node,
    zns_namehash,
)

ETH_NODE = "0x93cdeb708b7545dc668eb9280176169d1c33cfd8ed6f04690a0bcc88a93fc4ae"
FOO_ETH_NODE = "0xde9b09fd7c5f901e23a3f19fecc54828e9c848539801e86591bd9801b019f84f"
CRYPTO_NODE = "0x0f4a10a4f46c288cea365fcf45cccf0e9d901b945b9829ccdb54c10dc3cb7a6f"
ZIL_ZNS_NODE = "0x9915d0456b878862e822e2361da37232f626a2e47505c8795134a95d36138ed3"


class TestNamehash:
    """Known vectors for both hash families."""

    def test_empty_name_is_null_node(self):
        assert eip137_namehash("") == NULL_NODE
        assert zns_namehash("") == NULL_NODE

    def test_eip137_vectors(self):
        assert eip137_namehash("eth") == ETH_NODE
        assert eip137_namehash("foo.eth") == FOO_ETH_NODE
        assert eip137_namehash("crypto") == CRYPTO_NODE

    def test_zns_root(self):
        assert zns_namehash("zil") == ZIL_ZNS_NODE

    def test_names_are_normalized(self):
        assert eip137_namehash("  Foo.ETH ") == FOO_ETH_NODE
        assert normalize_name(" Alpha.Crypto ") == "alpha.crypto"

    def test_child_node_composes(self):
        """Hashing a label under its parent matches hashing the full name."""
        assert child_node(ETH_NODE, "foo", Blockchain.CNS) == FOO_ETH_NODE
        assert child_node(ZIL_ZNS_NODE, "brad", Blockchain.ZNS) == zns_namehash("brad.zil")

    def test_families_differ(self):
        assert zns_namehash("brad.zil") != eip137_namehash("brad.zil")

    def test_namehash_for_picks_family(self):
        assert namehash_for("brad.zil", Blockchain.ZNS) == zns_namehash("brad.zil")
        assert namehash_for("brad.zil", Blockchain.UNS) == eip137_namehash("brad.zil")
        assert namehash_for("alpha.crypto", Blockchain.CNS) == eip137_namehash("alpha.crypto")

    def test_invalid_parent_length(self):
        with pytest.raises(ValueError, match="Invalid node length"):
            child_node("0x1234", "foo", Blockchain.CNS)


class TestHelpers:
    """Token ids, burn addresses and root nodes."""

    def test_token_id_to_node(self):
        assert token_id_to_node(int(CRYPTO_NODE, 16)) == CRYPTO_NODE
        assert token_id_to_node(1) == "0x" + "0" * 63 + "1"

    def test_burn_addresses(self):
        assert is_burn_address("0x0000000000000000000000000000000000000000")
        assert is_burn_address(None)
        assert not is_burn_address("0x000000000000000000000000000000000000dead")

    def test_root_nodes(self):
        assert ROOT_NODES[CRYPTO_NODE] == "crypto"
        assert ROOT_NODES[ZIL_ZNS_NODE] == "zil"
        assert ROOT_NODES[eip137_namehash("zil")] == "zil"
