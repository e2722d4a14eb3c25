"""
Contract instance creation utilities.
"""

import functools
import json
from typing import Any, Dict, List

from web3 import Web3
from web3.contract import Contract


@functools.lru_cache(maxsize=None)
def _read_interface(abi_path: str) -> str:
    with open(abi_path, "r", encoding="utf-8") as file:
        return file.read()


def load_abi(abi_path: str) -> List[Dict[str, Any]]:
    """Return the "abi" list of a compiled contract interface file."""
    interface = json.loads(_read_interface(abi_path))
    return interface["abi"]


def create_contract_instance(w3: Web3, address: str, abi_path: str) -> Contract:
    """
    Create and return a Web3 contract instance.

    Args:
        w3: Web3 instance of the chain the contract lives on.
        address: The address of the contract.
        abi_path: Path to the ABI JSON file.

    Returns:
        Web3 contract instance.
    """
    return w3.eth.contract(address=Web3.to_checksum_address(address), abi=load_abi(abi_path))
