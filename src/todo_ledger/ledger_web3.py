"""
TodoRegistry client over JSON-RPC using web3.py.

Construction order is fixed: resolve network config, build the signing
account, bind the contract. One instance is built per process and shared.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .contracts import TODO_REGISTRY_ABI, NetworkConfig, get_contract_address, get_network_config
from .errors import (
    LedgerError,
    LedgerInvalidArgumentError,
    LedgerNotOwnerError,
    LedgerRecordDeletedError,
    LedgerRecordExistsError,
    LedgerRecordNotDeletedError,
    LedgerRecordNotFoundError,
    LedgerUnavailableError,
)
from .hashing import bytes32_to_hex, hex_to_bytes32
from .ledger import Ledger, to_digest_bytes
from .models import LedgerRecord
from .settings import Settings

logger = logging.getLogger(__name__)

_REVERT_REASONS = [
    ("Todo already exists", LedgerRecordExistsError),
    ("Todo does not exist", LedgerRecordNotFoundError),
    ("caller is not the todo owner", LedgerNotOwnerError),
    ("Cannot update deleted todo", LedgerRecordDeletedError),
    ("Todo is already deleted", LedgerRecordDeletedError),
    ("Todo is not deleted", LedgerRecordNotDeletedError),
    ("Todo ID cannot be empty", LedgerInvalidArgumentError),
    ("hash cannot be empty", LedgerInvalidArgumentError),
]


# PUBLIC_INTERFACE
def map_revert(message: str) -> LedgerError:
    """Translate a contract revert message into the matching ledger error."""
    reason = (message or "").split("reverted:")[-1].strip() or "Transaction reverted"
    for needle, error_cls in _REVERT_REASONS:
        if needle in reason:
            return error_cls(reason)
    return LedgerError(reason)


class Web3Ledger(Ledger):
    """Ledger client that signs and sends TodoRegistry transactions."""

    def __init__(
        self,
        network: NetworkConfig,
        private_key: str,
        contract_address: str,
        tx_timeout_seconds: float = 120.0,
    ) -> None:
        self._network = network
        self._w3 = Web3(Web3.HTTPProvider(network.rpc_url, request_kwargs={"timeout": 30}))
        self._account = self._w3.eth.account.from_key(private_key)
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=TODO_REGISTRY_ABI
        )
        self._tx_timeout = tx_timeout_seconds
        # Serializes nonce allocation and submission for the shared signer.
        self._send_lock = Lock()
        logger.info(
            "Blockchain ledger initialized (network=%s, chain_id=%d, contract=%s, signer=%s)",
            network.name, network.chain_id, self._contract.address, self._account.address,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3Ledger":
        if not settings.blockchain_private_key:
            raise ValueError("BLOCKCHAIN_PRIVATE_KEY is required when LEDGER_BACKEND=web3")
        network = get_network_config(settings.blockchain_network, settings.blockchain_rpc_url)
        return cls(
            network=network,
            private_key=settings.blockchain_private_key,
            contract_address=get_contract_address(settings.blockchain_network, settings.contract_address),
            tx_timeout_seconds=settings.ledger_tx_timeout_seconds,
        )

    @property
    def signer_address(self) -> str:
        return self._account.address

    def _transact(self, action: str, todo_id: str, build: Callable[[], Any]) -> str:
        try:
            with self._send_lock:
                tx = build().build_transaction(
                    {
                        "from": self._account.address,
                        "nonce": self._w3.eth.get_transaction_count(self._account.address, "pending"),
                        "chainId": self._network.chain_id,
                    }
                )
                signed = self._account.sign_transaction(tx)
                tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._tx_timeout)
        except ContractLogicError as exc:
            raise map_revert(str(exc.message or exc)) from exc
        except TimeExhausted as exc:
            raise LedgerUnavailableError(f"Timed out waiting for {action} receipt") from exc
        except (Web3Exception, ValueError, OSError) as exc:
            raise LedgerUnavailableError(f"Ledger {action} failed: {exc}") from exc

        if receipt["status"] != 1:
            raise LedgerError(f"Ledger {action} transaction reverted")
        tx_ref = Web3.to_hex(receipt["transactionHash"])
        logger.info(
            "Ledger %s confirmed for %s (tx=%s, block=%d)",
            action, todo_id, tx_ref, receipt["blockNumber"],
        )
        return tx_ref

    def _call(self, fn: Any) -> Any:
        try:
            return fn.call()
        except ContractLogicError as exc:
            raise map_revert(str(exc.message or exc)) from exc
        except (Web3Exception, ValueError, OSError) as exc:
            raise LedgerUnavailableError(f"Ledger call failed: {exc}") from exc

    def create(self, todo_id: str, todo_hash: str) -> str:
        if not todo_id:
            raise LedgerInvalidArgumentError("Todo ID cannot be empty")
        raw = to_digest_bytes(todo_hash, "Todo hash cannot be empty")
        return self._transact("create", todo_id, lambda: self._contract.functions.createTodo(todo_id, raw))

    def update(self, todo_id: str, new_hash: str) -> str:
        raw = to_digest_bytes(new_hash, "New hash cannot be empty")
        return self._transact("update", todo_id, lambda: self._contract.functions.updateTodo(todo_id, raw))

    def delete(self, todo_id: str) -> str:
        return self._transact("delete", todo_id, lambda: self._contract.functions.deleteTodo(todo_id))

    def restore(self, todo_id: str) -> str:
        return self._transact("restore", todo_id, lambda: self._contract.functions.restoreTodo(todo_id))

    def verify(self, todo_id: str, expected_hash: str) -> bool:
        try:
            raw = hex_to_bytes32(expected_hash)
        except ValueError:
            return False
        return bool(self._call(self._contract.functions.verifyTodo(todo_id, raw)))

    def get(self, todo_id: str) -> LedgerRecord:
        todo_hash, owner, timestamp, is_deleted = self._call(self._contract.functions.getTodo(todo_id))
        return LedgerRecord(
            todo_id=todo_id,
            todo_hash=bytes32_to_hex(todo_hash),
            owner=owner,
            timestamp=datetime.fromtimestamp(int(timestamp), tz=timezone.utc),
            deleted=bool(is_deleted),
        )

    def exists(self, todo_id: str) -> bool:
        return bool(self._call(self._contract.functions.todoExistsByID(todo_id)))
