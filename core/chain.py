"""
CipherWealth Client - On-chain calls for the encrypted balance contract

Reads the encrypted balance handles and submits the three mutating
entrypoints (deposit, withdraw, transfer), each carrying an encrypted
uint64 handle plus its input proof.

Design:
- Sync Web3 calls wrapped in run_in_executor() (same as the deploy script)
- Gas estimation + 20% buffer, nonce auto from chain
- A revert during gas estimation is reported with its reason instead of
  sending a transaction that is known to fail
- Transaction outcomes are TxResult values, not exceptions
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from web3 import Web3
from web3.exceptions import ContractLogicError

from .fhe import to_handle

logger = logging.getLogger("cipherwealth.chain")

_GAS_BUFFER = 1.2
_DEFAULT_GAS = 500_000        # FHE ops are far above plain ERC20 gas
_RECEIPT_TIMEOUT = 120


@dataclass
class TxResult:
    """Result of an on-chain transaction attempt."""
    success: bool
    tx_hash: str = ""
    error: str = ""
    gas_used: int = 0
    block_number: int = 0


def revert_reason(err: Exception) -> str:
    """Human-readable reason from a ContractLogicError (or anything else)."""
    message = getattr(err, "message", None) or str(err)
    return message or type(err).__name__


class CipherWealthClient:
    """
    Bound to one contract address, one chain and (optionally) one signer.

    Usage:
        client = CipherWealthClient(read_w3, address, abi, write_w3=w3, signer=account, chain_id=31337)
        handle = await client.get_balance(account.address)
        result = await client.deposit(enc.handle, enc.input_proof)
    """

    def __init__(
        self,
        read_w3: Web3,
        address: str,
        abi: list,
        write_w3: Optional[Web3] = None,
        signer=None,
        chain_id: Optional[int] = None,
    ):
        self._read_w3 = read_w3
        self._write_w3 = write_w3
        self._signer = signer
        self._chain_id = chain_id
        self.address = Web3.to_checksum_address(address)
        self._read_contract = read_w3.eth.contract(address=self.address, abi=abi)
        self._write_contract = (
            write_w3.eth.contract(address=self.address, abi=abi) if write_w3 is not None else None
        )

    @classmethod
    def from_network(cls, info, network) -> "CipherWealthClient":
        """Build from a ChainContractInfo and the current NetworkContext."""
        return cls(
            read_w3=network.read_provider,
            address=info.address,
            abi=info.abi,
            write_w3=network.write_provider,
            signer=network.signer,
            chain_id=network.chain_id,
        )

    # ============================================================
    # READS
    # ============================================================

    async def get_balance(self, user_address: str) -> bytes:
        """getBalance() as seen by user_address (msg.sender)."""
        fn = self._read_contract.functions.getBalance()
        raw = await self._call(lambda: fn.call({"from": Web3.to_checksum_address(user_address)}))
        return to_handle(raw)

    async def get_balance_of(self, user_address: str) -> bytes:
        fn = self._read_contract.functions.getBalanceOf(Web3.to_checksum_address(user_address))
        raw = await self._call(fn.call)
        return to_handle(raw)

    async def protocol_id(self) -> int:
        fn = self._read_contract.functions.protocolId()
        return int(await self._call(fn.call))

    async def _call(self, fn):
        return await asyncio.get_running_loop().run_in_executor(None, fn)

    # ============================================================
    # WRITES
    # ============================================================

    async def deposit(self, handle: bytes, input_proof: bytes) -> TxResult:
        if self._write_contract is None:
            return TxResult(success=False, error="no write provider")
        return await self._send_tx(self._write_contract.functions.deposit(handle, input_proof), "deposit")

    async def withdraw(self, handle: bytes, input_proof: bytes) -> TxResult:
        if self._write_contract is None:
            return TxResult(success=False, error="no write provider")
        return await self._send_tx(self._write_contract.functions.withdraw(handle, input_proof), "withdraw")

    async def transfer(self, to_address: str, handle: bytes, input_proof: bytes) -> TxResult:
        if self._write_contract is None:
            return TxResult(success=False, error="no write provider")
        to = Web3.to_checksum_address(to_address)
        return await self._send_tx(self._write_contract.functions.transfer(to, handle, input_proof), "transfer")

    async def _send_tx(self, tx_fn, label: str) -> TxResult:
        """
        Build, sign, send, wait for receipt.

        Args:
            tx_fn: bound contract function, e.g. contract.functions.deposit(h, proof)
            label: entrypoint name for logs
        """
        if self._signer is None or self._write_w3 is None:
            return TxResult(success=False, error="no signer connected")

        w3 = self._write_w3
        sender = self._signer.address

        def _execute():
            tx = tx_fn.build_transaction({
                "from": sender,
                "nonce": w3.eth.get_transaction_count(sender),
                "gasPrice": w3.eth.gas_price,
                "chainId": self._chain_id if self._chain_id is not None else w3.eth.chain_id,
            })

            # ContractLogicError propagates: the transaction would revert
            try:
                gas_estimate = w3.eth.estimate_gas(tx)
                tx["gas"] = int(gas_estimate * _GAS_BUFFER)
            except ContractLogicError:
                raise
            except Exception as gas_err:
                logger.warning(f"Gas estimation failed for {label}, using default {_DEFAULT_GAS}: {gas_err}")
                tx["gas"] = _DEFAULT_GAS

            signed = self._signer.sign_transaction(tx)
            tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=_RECEIPT_TIMEOUT)
            reason = _replay_revert_reason(w3, tx, receipt) if receipt["status"] != 1 else ""
            return receipt, Web3.to_hex(tx_hash), reason

        try:
            receipt, tx_hash_hex, reason = await asyncio.get_running_loop().run_in_executor(None, _execute)
        except ContractLogicError as e:
            reason = revert_reason(e)
            logger.warning(f"TX REVERTED [{label}]: {reason}")
            return TxResult(success=False, error=reason)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(f"TX ERROR [{label}]: {error}")
            return TxResult(success=False, error=error)

        if receipt["status"] != 1:
            error = f"TX reverted: {tx_hash_hex}"
            if reason:
                error = f"{error} ({reason})"
            logger.warning(f"TX FAILED [{label}]: {error}")
            return TxResult(success=False, tx_hash=tx_hash_hex, error=error)

        gas_used = receipt.get("gasUsed", 0)
        logger.info(f"TX SUCCESS [{label}]: {tx_hash_hex[:18]}... | gas={gas_used}")
        return TxResult(
            success=True,
            tx_hash=tx_hash_hex,
            gas_used=gas_used,
            block_number=receipt.get("blockNumber", 0),
        )


def _replay_revert_reason(w3: Web3, tx: dict, receipt) -> str:
    """
    Re-run a mined, failed transaction as eth_call on the parent block state
    to recover its revert reason. Empty string when the node gives none.
    """
    call = {key: tx[key] for key in ("from", "to", "data", "value", "gas") if key in tx}
    block_number = receipt.get("blockNumber") or 0
    try:
        w3.eth.call(call, block_identifier=max(block_number - 1, 0))
    except ContractLogicError as e:
        return revert_reason(e)
    except Exception as e:
        logger.debug(f"Revert reason replay failed: {type(e).__name__}: {e}")
    return ""
