import json
from pathlib import Path
from typing import Any

from web3 import Web3
from web3.contract import Contract


class ContractUtility:
    """
    Utility for registry ABI loading and offline log decoding.

    No provider is attached: the contract objects built here are only used
    to decode logs that were fetched elsewhere.
    """

    CONTRACTS_DIR: Path = Path(__file__).parent.parent / "contracts"

    def __init__(self) -> None:
        self.w3 = Web3()

    def get_contract_abi(self, contract_name: str) -> list[dict[str, Any]]:
        """Fetches ABI of the given contract from the contracts folder.

        Args:
            contract_name: Name of the contract (without .json extension)

        Returns:
            List of ABI dictionaries for the contract

        Raises:
            FileNotFoundError: If the contract file doesn't exist
            json.JSONDecodeError: If the contract file is invalid JSON
        """
        contract_path: Path = (self.CONTRACTS_DIR / f"{contract_name}.json").resolve()

        with contract_path.open() as file:
            contract_data: dict[str, Any] = json.load(file)

        return contract_data["abi"]

    def get_contract(self, contract_name: str) -> type[Contract]:
        """Build an address-less contract object for decoding its events."""
        return self.w3.eth.contract(abi=self.get_contract_abi(contract_name))


def event_signature(event_abi: dict[str, Any]) -> str:
    """Canonical signature, e.g. ``Transfer(address,address,uint256)``."""
    types = ",".join(item["type"] for item in event_abi.get("inputs", []))
    return f"{event_abi['name']}({types})"


def topic_for(signature: str) -> str:
    """topic0 of the event with canonical ``signature``."""
    return "0x" + bytes(Web3.keccak(text=signature)).hex()


def event_topics(abi: list[dict[str, Any]]) -> dict[str, str]:
    """Map topic0 hex strings to event names for every event in ``abi``."""
    return {
        topic_for(event_signature(item)): item["name"]
        for item in abi
        if item.get("type") == "event" and not item.get("anonymous", False)
    }


def to_hex(value: Any) -> str:
    """Normalize bytes or hex strings to a lower-cased 0x-prefixed string."""
    match value:
        case bytes() | bytearray():
            return "0x" + bytes(value).hex()
        case str() if value.startswith(("0x", "0X")):
            return "0x" + value[2:].lower()
        case str():
            return "0x" + value.lower()
        case _:
            raise TypeError(f"Unexpected hex value type: {type(value)}")
