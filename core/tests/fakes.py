"""
In-memory doubles for the FHE SDK and the CipherWealth contract.

MockFhevm keeps clear values next to their handles, an ACL per handle,
and verifies the EIP-712 user-decrypt signature the same way the real
gateway does (recovered signer == user, window not expired, contract in
the signed list, user allowed on the handle).

FakeCipherWealth mirrors the contract: encrypted balances per user,
checked inputs, saturating withdraw/transfer, and the two transfer
reverts. FakeClient exposes it through the CipherWealthClient surface.
"""

import asyncio
import secrets
import time
from typing import Callable, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import keccak
from web3.exceptions import ContractLogicError

from core.chain import TxResult, revert_reason
from core.fhe import ZERO_HANDLE, handle_hex, to_handle
from core.registry import ZERO_ADDRESS

DECRYPTION_VERIFIER = "0x5ffdaab0373e62e2ea2944776209aef29e631a64"
MAX_UINT64 = 2**64 - 1

ALICE_KEY = "0x" + "a1" * 32
BOB_KEY = "0x" + "b2" * 32
CONTRACT = "0x" + "c1" * 20


class Clock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MockEncryptedInput:
    def __init__(self, fhevm: "MockFhevm", contract_address: str, user_address: str):
        self._fhevm = fhevm
        self._contract = contract_address
        self._user = user_address
        self._values: list[int] = []

    def add64(self, value: int) -> "MockEncryptedInput":
        if not 0 <= value <= MAX_UINT64:
            raise ValueError(f"Value {value} does not fit in 64 bits")
        self._values.append(value)
        return self

    def encrypt(self) -> dict:
        handles = [self._fhevm.new_handle(v) for v in self._values]
        proof = self._fhevm.proof_for(handles, self._contract, self._user)
        return {"handles": handles, "inputProof": proof}


class MockFhevm:
    """Stands in for the FHE SDK instance and the on-chain coprocessor."""

    def __init__(self, chain_id: int = 31337, clock: Optional[Callable[[], float]] = None):
        self.chain_id = chain_id
        self._clock = clock or time.time
        self._values: dict[bytes, int] = {}
        self._acl: dict[bytes, set[str]] = {}
        self._counter = 0
        self.decrypt_calls = 0
        self.keypairs_generated = 0

    # ---- coprocessor side ----

    def new_handle(self, value: int, allowed=()) -> bytes:
        self._counter += 1
        handle = keccak(b"mock-fhevm-handle" + self._counter.to_bytes(8, "big"))
        self._values[handle] = value
        self._acl[handle] = {a.lower() for a in allowed}
        return handle

    def value_of(self, handle: bytes) -> int:
        return self._values[handle]

    def proof_for(self, handles: list[bytes], contract_address: str, user_address: str) -> bytes:
        return keccak(b"".join(handles) + contract_address.lower().encode() + user_address.lower().encode())

    def verify_input(self, handle: bytes, proof: bytes, contract_address: str, user_address: str) -> int:
        if proof != self.proof_for([handle], contract_address, user_address):
            raise ContractLogicError("execution reverted: InvalidInputProof")
        return self._values[handle]

    # ---- SDK side ----

    def create_encrypted_input(self, contract_address: str, user_address: str) -> MockEncryptedInput:
        return MockEncryptedInput(self, contract_address, user_address)

    def generate_keypair(self) -> dict:
        self.keypairs_generated += 1
        return {"publicKey": "0x" + secrets.token_hex(32), "privateKey": "0x" + secrets.token_hex(32)}

    def create_eip712(self, public_key, contract_addresses, start_timestamp, duration_days) -> dict:
        return {
            "types": {
                "EIP712Domain": [
                    {"name": "name", "type": "string"},
                    {"name": "version", "type": "string"},
                    {"name": "chainId", "type": "uint256"},
                    {"name": "verifyingContract", "type": "address"},
                ],
                "UserDecryptRequestVerification": [
                    {"name": "publicKey", "type": "bytes"},
                    {"name": "contractAddresses", "type": "address[]"},
                    {"name": "startTimestamp", "type": "uint256"},
                    {"name": "durationDays", "type": "uint256"},
                    {"name": "extraData", "type": "bytes"},
                ],
            },
            "primaryType": "UserDecryptRequestVerification",
            "domain": {
                "name": "Decryption",
                "version": "1",
                "chainId": self.chain_id,
                "verifyingContract": DECRYPTION_VERIFIER,
            },
            "message": {
                "publicKey": public_key,
                "contractAddresses": list(contract_addresses),
                "startTimestamp": int(start_timestamp),
                "durationDays": int(duration_days),
                "extraData": "0x00",
            },
        }

    def user_decrypt(
        self,
        requests,
        private_key,
        public_key,
        signature,
        contract_addresses,
        user_address,
        start_timestamp,
        duration_days,
    ) -> dict:
        self.decrypt_calls += 1
        eip712 = self.create_eip712(public_key, contract_addresses, start_timestamp, duration_days)
        recovered = Account.recover_message(encode_typed_data(full_message=eip712), signature=signature)
        if recovered.lower() != user_address.lower():
            raise PermissionError("Invalid EIP-712 signature for user")
        if self._clock() >= start_timestamp + duration_days * 86_400:
            raise PermissionError("Decryption signature expired")

        signed_contracts = {a.lower() for a in contract_addresses}
        result = {}
        for req in requests:
            handle = to_handle(req["handle"])
            if req["contractAddress"].lower() not in signed_contracts:
                raise PermissionError("Contract not covered by the signature")
            if user_address.lower() not in self._acl.get(handle, set()):
                raise PermissionError(f"User {user_address} is not allowed to decrypt {handle_hex(handle)[:18]}...")
            result[handle_hex(handle)] = self._values[handle]
        return result


class FakeCipherWealth:
    """Contract double. Balances are handles owned by the mock coprocessor."""

    PROTOCOL_ID = 10001

    def __init__(self, fhevm: MockFhevm, address: str):
        self.fhevm = fhevm
        self.address = address
        self._balances: dict[str, bytes] = {}
        self.events: list[tuple[str, str]] = []
        self.hold: Optional[asyncio.Event] = None   # set to pause clients mid-flight
        self.paused = 0
        self.fail_reads: Optional[Exception] = None

    def get_balance(self, user: str) -> bytes:
        if self.fail_reads is not None:
            raise self.fail_reads
        return self._balances.get(user.lower(), ZERO_HANDLE)

    def clear_balance(self, user: str) -> int:
        handle = self._balances.get(user.lower())
        return self.fhevm.value_of(handle) if handle else 0

    def deposit(self, sender: str, handle: bytes, proof: bytes) -> None:
        amount = self.fhevm.verify_input(handle, proof, self.address, sender)
        self._set(sender, self.clear_balance(sender) + amount)
        self.events.append(("Deposit", sender))

    def withdraw(self, sender: str, handle: bytes, proof: bytes) -> None:
        amount = self.fhevm.verify_input(handle, proof, self.address, sender)
        current = self.clear_balance(sender)
        # FHE.select: an oversized withdrawal leaves the balance as is
        self._set(sender, current - amount if amount <= current else current)
        self.events.append(("Withdrawal", sender))

    def transfer(self, sender: str, to: str, handle: bytes, proof: bytes) -> None:
        if to.lower() == ZERO_ADDRESS:
            raise ContractLogicError("execution reverted: Cannot transfer to zero address")
        if to.lower() == sender.lower():
            raise ContractLogicError("execution reverted: Cannot transfer to yourself")
        amount = self.fhevm.verify_input(handle, proof, self.address, sender)
        current = self.clear_balance(sender)
        moved = amount if amount <= current else 0
        self._set(sender, current - moved)
        self._set(to, self.clear_balance(to) + moved)

    def _set(self, user: str, value: int) -> None:
        self._balances[user.lower()] = self.fhevm.new_handle(value, allowed=(user, self.address))


class FakeClient:
    """CipherWealthClient surface over a FakeCipherWealth, bound to one sender."""

    def __init__(self, contract: FakeCipherWealth, sender: Optional[str]):
        self._contract = contract
        self._sender = sender
        self.address = contract.address

    async def _pause(self) -> None:
        if self._contract.hold is not None:
            self._contract.paused += 1
            await self._contract.hold.wait()

    async def get_balance(self, user_address: str) -> bytes:
        await self._pause()
        return self._contract.get_balance(user_address)

    async def get_balance_of(self, user_address: str) -> bytes:
        return self._contract.get_balance(user_address)

    async def protocol_id(self) -> int:
        return FakeCipherWealth.PROTOCOL_ID

    async def deposit(self, handle: bytes, input_proof: bytes) -> TxResult:
        return await self._send(self._contract.deposit, self._sender, handle, input_proof)

    async def withdraw(self, handle: bytes, input_proof: bytes) -> TxResult:
        return await self._send(self._contract.withdraw, self._sender, handle, input_proof)

    async def transfer(self, to_address: str, handle: bytes, input_proof: bytes) -> TxResult:
        return await self._send(self._contract.transfer, self._sender, to_address, handle, input_proof)

    async def _send(self, fn, *args) -> TxResult:
        await self._pause()
        try:
            fn(*args)
        except ContractLogicError as e:
            return TxResult(success=False, error=revert_reason(e))
        return TxResult(success=True, tx_hash="0x" + secrets.token_hex(32), gas_used=210_000)


def fake_client_factory(contract: FakeCipherWealth):
    def _factory(info, network):
        return FakeClient(contract, network.account)
    return _factory


