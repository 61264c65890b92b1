"""
TodoRegistry contract binding data: ABI, deployed addresses and networks.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class NetworkConfig:
    name: str
    chain_id: int
    rpc_url: str
    block_explorer: str


NETWORKS: Dict[str, NetworkConfig] = {
    "sepolia": NetworkConfig(
        name="Sepolia",
        chain_id=11155111,
        rpc_url=os.getenv("SEPOLIA_RPC_URL", "https://ethereum-sepolia-rpc.publicnode.com"),
        block_explorer="https://sepolia.etherscan.io",
    ),
    "localhost": NetworkConfig(
        name="Localhost",
        chain_id=1337,
        rpc_url="http://127.0.0.1:8545",
        block_explorer="http://localhost:8545",
    ),
    "hardhat": NetworkConfig(
        name="Hardhat",
        chain_id=1337,
        rpc_url="http://127.0.0.1:8545",
        block_explorer="http://localhost:8545",
    ),
}

CONTRACT_ADDRESSES: Dict[str, str] = {
    "sepolia": "0x24907eC5abCEeD2FfC0b0db9DFDee98898a85172",
    "localhost": "0x5FbDB2315678afecb367f032d93F642f64180aa3",
    "hardhat": "0x5FbDB2315678afecb367f032d93F642f64180aa3",
}


def _fn(name: str, inputs: List[tuple], outputs: List[tuple], mutability: str) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t, "internalType": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t, "internalType": t} for n, t in outputs],
    }


TODO_REGISTRY_ABI: List[Dict[str, Any]] = [
    _fn("createTodo", [("todoId", "string"), ("todoHash", "bytes32")], [], "nonpayable"),
    _fn("updateTodo", [("todoId", "string"), ("newHash", "bytes32")], [], "nonpayable"),
    _fn("deleteTodo", [("todoId", "string")], [], "nonpayable"),
    _fn("restoreTodo", [("todoId", "string")], [], "nonpayable"),
    _fn("verifyTodo", [("todoId", "string"), ("expectedHash", "bytes32")], [("", "bool")], "view"),
    _fn(
        "getTodo",
        [("todoId", "string")],
        [("todoHash", "bytes32"), ("owner", "address"), ("timestamp", "uint256"), ("isDeleted", "bool")],
        "view",
    ),
    _fn("todoExistsByID", [("todoId", "string")], [("", "bool")], "view"),
]


# PUBLIC_INTERFACE
def get_network_config(network: str = "sepolia", rpc_url: Optional[str] = None) -> NetworkConfig:
    """Return the named network (Sepolia when unknown), with an optional RPC URL override."""
    config = NETWORKS.get(network, NETWORKS["sepolia"])
    if rpc_url:
        return replace(config, rpc_url=rpc_url)
    return config


# PUBLIC_INTERFACE
def get_contract_address(network: str = "sepolia", override: Optional[str] = None) -> str:
    """Return the deployed TodoRegistry address for the network."""
    if override:
        return override
    return CONTRACT_ADDRESSES.get(network, CONTRACT_ADDRESSES["sepolia"])
