"""
Encryption Gateway - Adapter over the external FHE SDK instance

The heavy lifting (TFHE encryption, input proofs, user decryption)
belongs to the FHE SDK. This module only:
- normalizes ciphertext handles (32 bytes, zero = uninitialized)
- builds an encrypted uint64 input bound to (contract, user)
- runs an authenticated user decryption for one handle

The SDK instance is created by a factory named in configuration
("package.module:callable", called with chain_id and rpc_url), so the
client never imports a particular SDK binding directly.

SDK calls are treated as blocking and run in the default executor.
"""

import asyncio
import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, Sequence, Union

from eth_utils import to_bytes

logger = logging.getLogger("cipherwealth.fhe")

HANDLE_SIZE = 32
ZERO_HANDLE = bytes(HANDLE_SIZE)


class EncryptionError(RuntimeError):
    """Raised when an amount cannot be turned into an encrypted input."""


class DecryptionError(RuntimeError):
    """Raised when the SDK does not return a clear value for a handle."""


# ============================================================
# SDK SURFACE (consumed)
# ============================================================

class EncryptedInputBuilder(Protocol):
    def add64(self, value: int) -> Any:
        ...

    def encrypt(self) -> dict:
        ...


class FhevmInstance(Protocol):
    def create_encrypted_input(self, contract_address: str, user_address: str) -> EncryptedInputBuilder:
        ...

    def user_decrypt(
        self,
        requests: Sequence[dict],
        private_key: str,
        public_key: str,
        signature: str,
        contract_addresses: Sequence[str],
        user_address: str,
        start_timestamp: int,
        duration_days: int,
    ) -> dict:
        ...

    def generate_keypair(self) -> dict:
        ...

    def create_eip712(
        self,
        public_key: str,
        contract_addresses: Sequence[str],
        start_timestamp: int,
        duration_days: int,
    ) -> dict:
        ...


# ============================================================
# HANDLES
# ============================================================

def to_handle(value: Union[bytes, bytearray, str]) -> bytes:
    """Normalize a bytes32 handle given as bytes or 0x-hex."""
    if isinstance(value, str):
        raw = to_bytes(hexstr=value)
    else:
        raw = bytes(value)
    if len(raw) > HANDLE_SIZE:
        raise ValueError(f"Handle must be {HANDLE_SIZE} bytes, got {len(raw)}")
    return raw.rjust(HANDLE_SIZE, b"\x00")


def handle_hex(handle: bytes) -> str:
    return "0x" + handle.hex()


def is_zero_handle(handle: Optional[bytes]) -> bool:
    return handle is None or handle == ZERO_HANDLE


@dataclass(frozen=True)
class EncryptedAmount:
    """Ciphertext handle + validity proof for one encrypted uint64."""
    handle: bytes
    input_proof: bytes


# ============================================================
# GATEWAY
# ============================================================

class EncryptionGateway:
    """
    Holds the SDK instance for the current chain.

    status: "idle" (nothing loaded), "ready", or "error".
    """

    def __init__(self, instance: Optional[FhevmInstance] = None):
        self._instance: Optional[FhevmInstance] = instance
        self._status: str = "ready" if instance is not None else "idle"
        self._error: str = ""

    @property
    def instance(self) -> Optional[FhevmInstance]:
        return self._instance

    @property
    def ready(self) -> bool:
        return self._instance is not None

    @property
    def status(self) -> str:
        return self._status

    @property
    def error(self) -> str:
        return self._error

    def attach(self, instance: FhevmInstance) -> None:
        self._instance = instance
        self._status = "ready"
        self._error = ""

    def detach(self) -> None:
        self._instance = None
        self._status = "idle"
        self._error = ""

    def load(self, factory: Callable[..., FhevmInstance], chain_id: int, rpc_url: str) -> bool:
        """(Re)create the SDK instance for a chain. Failure leaves the gateway not ready."""
        self._instance = None
        try:
            instance = factory(chain_id, rpc_url)
        except Exception as e:
            self._status = "error"
            self._error = f"{type(e).__name__}: {e}"
            logger.warning(f"FHE instance creation failed for chain {chain_id}: {self._error}")
            return False
        self.attach(instance)
        logger.info(f"FHE instance ready for chain {chain_id}")
        return True

    async def encrypt_amount(self, contract_address: str, user_address: str, amount: int) -> EncryptedAmount:
        """Encrypt one uint64 bound to (contract, user)."""
        if self._instance is None:
            raise EncryptionError("FHE instance not ready")
        if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
            raise EncryptionError(f"Amount must be a positive integer, got {amount!r}")

        instance = self._instance

        def _encrypt() -> dict:
            builder = instance.create_encrypted_input(contract_address, user_address)
            builder.add64(amount)
            return builder.encrypt()

        try:
            result = await asyncio.get_running_loop().run_in_executor(None, _encrypt)
        except Exception as e:
            raise EncryptionError(f"{type(e).__name__}: {e}") from e

        handles = result.get("handles") or []
        if not handles:
            raise EncryptionError("SDK returned no ciphertext handle")
        proof = result.get("inputProof", b"")
        if isinstance(proof, str):
            proof = to_bytes(hexstr=proof)
        return EncryptedAmount(handle=to_handle(handles[0]), input_proof=bytes(proof))

    async def decrypt_handle(self, handle: bytes, contract_address: str, signature) -> int:
        """
        Authenticated user decryption of a single handle.

        `signature` is a DecryptionSignature (see core.signature).
        """
        if self._instance is None:
            raise DecryptionError("FHE instance not ready")

        instance = self._instance
        key = handle_hex(handle)

        def _decrypt() -> dict:
            return instance.user_decrypt(
                [{"handle": key, "contractAddress": contract_address}],
                signature.private_key,
                signature.public_key,
                signature.signature,
                list(signature.contract_addresses),
                signature.user_address,
                signature.start_timestamp,
                signature.duration_days,
            )

        result = await asyncio.get_running_loop().run_in_executor(None, _decrypt)

        clear = _lookup_clear(result, handle)
        if clear is None:
            raise DecryptionError(f"No clear value returned for handle {key[:18]}...")
        return int(clear)


def _lookup_clear(result: dict, handle: bytes) -> Optional[Any]:
    key = handle_hex(handle)
    for candidate in (key, key.lower(), handle):
        if candidate in result:
            return result[candidate]
    return None


def load_instance_factory(target: str) -> Callable[..., FhevmInstance]:
    """Resolve "package.module:callable" to the SDK instance factory."""
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"FHE factory must look like 'package.module:callable', got '{target}'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise AttributeError(f"{module_name} has no callable '{attr}'")
    return factory
