"""
Balance Controller - Encrypted balance workflow

Coordinates the wallet, the FHE gateway and the CipherWealth contract:
refresh the encrypted balance handle, decrypt it with a cached user
signature, and submit encrypted deposits, withdrawals and transfers.

Three independent lanes (refresh, decrypt, operate), each an explicit
LaneState. A lane is marked IN_FLIGHT before the first await and
settled after the last one, so a second call sees the gate closed
before any I/O is reissued.

Every action:
- checks its readiness gate, and returns False without side effects if closed
- captures a NetworkSnapshot and discards its result if the chain or
  signer changed while it was in flight
- converts every failure into the status message; nothing is raised

The clear value is stored together with the handle it was decrypted
from, so replacing the handle always invalidates the clear value.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .chain import CipherWealthClient, TxResult
from .fhe import EncryptionError, EncryptionGateway, handle_hex, is_zero_handle
from .network import NetworkContext, NetworkSnapshot
from .registry import ChainContractInfo, ContractRegistry, ZERO_ADDRESS
from .signature import DecryptionSignatureCache

logger = logging.getLogger("cipherwealth.controller")

ClientFactory = Callable[[ChainContractInfo, NetworkContext], CipherWealthClient]


class LaneStatus(Enum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class LaneState:
    status: LaneStatus = LaneStatus.IDLE
    reason: str = ""

    @property
    def in_flight(self) -> bool:
        return self.status == LaneStatus.IN_FLIGHT

    def to_dict(self) -> dict:
        return {"status": self.status.value, "reason": self.reason}


_IDLE = LaneState()
_IN_FLIGHT = LaneState(LaneStatus.IN_FLIGHT)
_SUCCEEDED = LaneState(LaneStatus.SUCCEEDED)
_STALE_REASON = "stale: network changed while in flight"
_UNRESOLVED = object()


@dataclass(frozen=True)
class DecryptedBalance:
    handle: bytes
    clear_value: int


class BalanceController:
    """
    Usage:
        controller = BalanceController(network, registry, gateway, signature_cache)
        await controller.refresh_balance()
        await controller.decrypt_balance()
        await controller.deposit(500)
    """

    def __init__(
        self,
        network: NetworkContext,
        registry: ContractRegistry,
        gateway: EncryptionGateway,
        signatures: DecryptionSignatureCache,
        client_factory: Optional[ClientFactory] = None,
    ):
        self._network = network
        self._registry = registry
        self._gateway = gateway
        self._signatures = signatures
        self._client_factory = client_factory or CipherWealthClient.from_network

        self._handle: Optional[bytes] = None
        self._decrypted: Optional[DecryptedBalance] = None
        self._refresh = _IDLE
        self._decrypt = _IDLE
        self._operate = _IDLE
        self._message: str = ""
        # Advances whenever the on-chain balance may have moved (refresh, confirmed operation)
        self._balance_epoch: int = 0

        self._info_chain_id: object = _UNRESOLVED
        self._info: ChainContractInfo = registry.resolve(None)
        self._sync_contract_info()
        network.on_change(self._on_network_change)

    # ============================================================
    # CONTRACT INFO
    # ============================================================

    def _sync_contract_info(self) -> ChainContractInfo:
        """Re-resolve the contract whenever the chain id changes."""
        chain_id = self._network.chain_id
        if self._info_chain_id is _UNRESOLVED or chain_id != self._info_chain_id:
            self._info_chain_id = chain_id
            self._info = self._registry.resolve(chain_id)
            if not self._info.address:
                self._message = f"CipherWealth deployment not found for chainId={chain_id}."
        return self._info

    @property
    def contract_info(self) -> ChainContractInfo:
        return self._sync_contract_info()

    @property
    def contract_address(self) -> Optional[str]:
        return self.contract_info.address

    @property
    def is_deployed(self) -> bool:
        return self.contract_info.is_deployed

    # ============================================================
    # STATE
    # ============================================================

    @property
    def balance_handle(self) -> Optional[bytes]:
        return self._handle

    @property
    def clear_value(self) -> Optional[int]:
        return self._decrypted.clear_value if self.is_decrypted else None

    @property
    def is_decrypted(self) -> bool:
        return self._decrypted is not None and self._decrypted.handle == self._handle

    @property
    def is_refreshing(self) -> bool:
        return self._refresh.in_flight

    @property
    def is_decrypting(self) -> bool:
        return self._decrypt.in_flight

    @property
    def is_operating(self) -> bool:
        return self._operate.in_flight

    @property
    def message(self) -> str:
        return self._message

    @property
    def lanes(self) -> dict[str, LaneState]:
        return {"refresh": self._refresh, "decrypt": self._decrypt, "operate": self._operate}

    # ============================================================
    # READINESS GATES
    # ============================================================

    def _environment_ok(self, generation: Optional[int]) -> bool:
        """
        The caller's view of the network is current.

        The generation is the check: it advances on every chain or signer
        switch, so a matching generation means same chain and same signer.
        Results are re-checked against the start snapshot in _discard_if_stale.
        """
        if generation is not None and generation != self._network.generation:
            return False
        return self._network.chain_id is not None

    def can_fetch_balance(self, generation: Optional[int] = None) -> bool:
        return bool(
            self._gateway.ready
            and self.is_deployed
            and self._network.read_provider is not None
            and self._network.signer is not None
            and self._environment_ok(generation)
            and not self._refresh.in_flight
        )

    def can_decrypt(self, generation: Optional[int] = None) -> bool:
        return bool(
            self._gateway.ready
            and self.is_deployed
            and not is_zero_handle(self._handle)
            and self._network.write_provider is not None
            and self._network.signer is not None
            and self._environment_ok(generation)
            and not self._decrypt.in_flight
            and not self.is_decrypted
        )

    def can_operate(self, generation: Optional[int] = None) -> bool:
        return bool(
            self._gateway.ready
            and self.is_deployed
            and self._network.write_provider is not None
            and self._network.signer is not None
            and self._environment_ok(generation)
            and not self._operate.in_flight
        )

    # ============================================================
    # REFRESH
    # ============================================================

    async def refresh_balance(self, generation: Optional[int] = None) -> bool:
        if not self.can_fetch_balance(generation):
            return False

        snap = self._network.snapshot()
        info = self.contract_info
        self._refresh = _IN_FLIGHT
        self._message = "Fetching encrypted balance..."

        try:
            client = self._client_factory(info, self._network)
            handle = await client.get_balance(snap.account)
        except Exception as e:
            logger.warning(f"Balance refresh failed: {type(e).__name__}: {e}")
            self._refresh = LaneState(LaneStatus.FAILED, str(e) or type(e).__name__)
            self._message = f"Error: {str(e) or 'Failed to get balance'}"
            return False

        if self._discard_if_stale(snap, "refresh"):
            self._refresh = LaneState(LaneStatus.FAILED, _STALE_REASON)
            return False

        self._handle = handle
        self._decrypted = None
        self._balance_epoch += 1
        if not self._decrypt.in_flight:
            self._decrypt = _IDLE
        self._refresh = _SUCCEEDED
        self._message = "Balance handle retrieved successfully"
        logger.info(f"Balance handle refreshed: {handle_hex(handle)[:18]}...")
        return True

    # ============================================================
    # DECRYPT
    # ============================================================

    async def decrypt_balance(self, generation: Optional[int] = None) -> bool:
        if not self.can_decrypt(generation):
            return False

        snap = self._network.snapshot()
        contract_address = self.contract_info.address
        handle = self._handle
        epoch = self._balance_epoch
        signer = self._network.signer
        self._decrypt = _IN_FLIGHT
        self._message = "Decrypting balance..."

        try:
            sig = await self._signatures.load_or_sign(
                self._gateway.instance, [contract_address], signer,
            )
            if sig is None:
                self._decrypt = LaneState(LaneStatus.FAILED, "no decryption signature")
                self._message = "Unable to build FHEVM decryption signature"
                return False

            clear_value = await self._gateway.decrypt_handle(handle, contract_address, sig)
        except Exception as e:
            logger.warning(f"Balance decryption failed: {type(e).__name__}: {e}")
            self._decrypt = LaneState(LaneStatus.FAILED, str(e) or type(e).__name__)
            self._message = f"Decryption error: {str(e) or 'Failed to decrypt'}"
            return False

        if self._discard_if_stale(snap, "decrypt"):
            self._decrypt = LaneState(LaneStatus.FAILED, _STALE_REASON)
            return False

        if handle != self._handle or epoch != self._balance_epoch:
            # A refresh or a confirmed operation landed meanwhile; the value may be outdated
            self._decrypt = LaneState(LaneStatus.FAILED, "balance handle changed")
            self._message = "Balance changed while decrypting, decrypt again"
            return False

        self._decrypted = DecryptedBalance(handle=handle, clear_value=clear_value)
        self._decrypt = _SUCCEEDED
        self._message = f"Decrypted balance: {clear_value}"
        return True

    # ============================================================
    # DEPOSIT / WITHDRAW / TRANSFER
    # ============================================================

    async def deposit(self, amount: int, generation: Optional[int] = None) -> bool:
        return await self._operate_encrypted(
            "deposit", amount, generation,
            pending=f"Depositing {amount}...",
            success=f"Successfully deposited {amount}",
            error_prefix="Deposit error",
        )

    async def withdraw(self, amount: int, generation: Optional[int] = None) -> bool:
        return await self._operate_encrypted(
            "withdraw", amount, generation,
            pending=f"Withdrawing {amount}...",
            success=f"Successfully withdrew {amount}",
            error_prefix="Withdrawal error",
        )

    async def transfer(self, to_address: str, amount: int, generation: Optional[int] = None) -> bool:
        return await self._operate_encrypted(
            "transfer", amount, generation,
            pending=f"Transferring {amount} to {to_address}...",
            success=f"Successfully transferred {amount} to {to_address}",
            error_prefix="Transfer error",
            to_address=to_address,
        )

    async def _operate_encrypted(
        self,
        action: str,
        amount: int,
        generation: Optional[int],
        pending: str,
        success: str,
        error_prefix: str,
        to_address: Optional[str] = None,
    ) -> bool:
        if not self.can_operate(generation):
            return False

        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            self._message = f"{error_prefix}: amount must be a positive integer"
            return False

        snap = self._network.snapshot()
        info = self.contract_info
        self._operate = _IN_FLIGHT
        self._message = pending

        try:
            # Bound to the signer of the snapshot, not whoever is connected after the await
            client = self._client_factory(info, self._network)
            encrypted = await self._gateway.encrypt_amount(info.address, snap.account, amount)
            if action == "deposit":
                result: TxResult = await client.deposit(encrypted.handle, encrypted.input_proof)
            elif action == "withdraw":
                result = await client.withdraw(encrypted.handle, encrypted.input_proof)
            else:
                result = await client.transfer(to_address or ZERO_ADDRESS, encrypted.handle, encrypted.input_proof)
        except EncryptionError as e:
            logger.warning(f"{action} encryption failed: {e}")
            self._operate = LaneState(LaneStatus.FAILED, str(e))
            self._message = f"{error_prefix}: {e}"
            return False
        except Exception as e:
            logger.warning(f"{action} failed: {type(e).__name__}: {e}")
            self._operate = LaneState(LaneStatus.FAILED, str(e) or type(e).__name__)
            self._message = f"{error_prefix}: {str(e) or 'Failed to ' + action}"
            return False

        if not result.success:
            self._operate = LaneState(LaneStatus.FAILED, result.error)
            self._message = f"{error_prefix}: {result.error}"
            return False

        if self._discard_if_stale(snap, action):
            # The transaction is confirmed; only the local bookkeeping is skipped
            self._operate = LaneState(LaneStatus.FAILED, _STALE_REASON)
            self._message = f"{success} (network changed, balance not refreshed)"
            return True

        self._decrypted = None
        self._balance_epoch += 1
        self._operate = _SUCCEEDED
        self._message = success
        logger.info(f"{action} confirmed: {result.tx_hash[:18]}...")

        # Follow-up refresh in the same task; on failure its error stays in the message
        if await self.refresh_balance():
            self._message = success
        return True

    # ============================================================
    # READ-ONLY QUERIES
    # ============================================================

    async def balance_of(self, user_address: str) -> Optional[bytes]:
        """Encrypted handle of another account. Never decryptable without their signature."""
        info = self.contract_info
        if not info.is_deployed or self._network.read_provider is None:
            return None
        try:
            client = self._client_factory(info, self._network)
            return await client.get_balance_of(user_address)
        except Exception as e:
            logger.warning(f"getBalanceOf({user_address[:10]}...) failed: {e}")
            return None

    async def protocol_id(self) -> Optional[int]:
        info = self.contract_info
        if not info.is_deployed or self._network.read_provider is None:
            return None
        try:
            client = self._client_factory(info, self._network)
            return await client.protocol_id()
        except Exception as e:
            logger.warning(f"protocolId() failed: {e}")
            return None

    # ============================================================
    # HELPERS
    # ============================================================

    def _discard_if_stale(self, snap: NetworkSnapshot, action: str) -> bool:
        if self._network.is_current(snap):
            return False
        logger.warning(
            f"Discarding {action} result: network moved from generation "
            f"{snap.generation} to {self._network.generation}"
        )
        self._message = f"Discarded {action} result: network changed during the operation"
        return True

    def _on_network_change(self, snap: NetworkSnapshot) -> None:
        # A handle read for another chain/account means nothing here.
        # In-flight lanes keep their state; their results get discarded on completion.
        self._handle = None
        self._decrypted = None
        if not self._decrypt.in_flight:
            self._decrypt = _IDLE
        self._sync_contract_info()

    def snapshot(self) -> dict:
        """Plain-dict view of the whole state for the presentation layer."""
        info = self.contract_info
        return {
            "contract_address": info.address,
            "chain_id": self._network.chain_id,
            "chain_name": info.chain_name,
            "is_deployed": info.is_deployed,
            "account": self._network.account,
            "generation": self._network.generation,
            "fhevm_status": self._gateway.status,
            "balance_handle": handle_hex(self._handle) if self._handle is not None else None,
            "clear_value": self.clear_value,
            "is_decrypted": self.is_decrypted,
            "is_refreshing": self.is_refreshing,
            "is_decrypting": self.is_decrypting,
            "is_operating": self.is_operating,
            "can_get_balance": self.can_fetch_balance(),
            "can_decrypt": self.can_decrypt(),
            "can_operate": self.can_operate(),
            "lanes": {name: lane.to_dict() for name, lane in self.lanes.items()},
            "message": self._message,
        }
