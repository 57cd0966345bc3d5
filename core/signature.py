"""
Decryption Signature Cache

User decryption needs an EIP-712 signature over an ephemeral key pair,
a contract-address list and a validity window. Signing on every decrypt
would mean a wallet prompt every time, so signatures are persisted and
reused until they expire or stop matching (user, contracts).

Design:
- Key = keccak("<user>:<sorted contract list>") in a string storage
- Storage backends: in-memory (tests, ephemeral sessions) or a JSON file
- Per-key asyncio.Lock: rapid repeated calls produce a single prompt
- Signing failure returns None, never raises to the caller
"""

import os
import json
import time
import asyncio
import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence

from eth_account.messages import encode_typed_data
from eth_utils import keccak, to_hex

logger = logging.getLogger("cipherwealth.signature")

SECONDS_PER_DAY = 86_400


# ============================================================
# SIGNATURE
# ============================================================

@dataclass(frozen=True)
class DecryptionSignature:
    private_key: str
    public_key: str
    signature: str
    contract_addresses: tuple[str, ...]
    user_address: str
    start_timestamp: int
    duration_days: int

    @property
    def expires_at(self) -> int:
        return self.start_timestamp + self.duration_days * SECONDS_PER_DAY

    def is_valid(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now < self.expires_at

    def matches(self, user_address: str, contract_addresses: Sequence[str]) -> bool:
        if self.user_address.lower() != user_address.lower():
            return False
        return _normalize(self.contract_addresses) == _normalize(contract_addresses)

    def to_dict(self) -> dict:
        return {
            "privateKey": self.private_key,
            "publicKey": self.public_key,
            "signature": self.signature,
            "contractAddresses": list(self.contract_addresses),
            "userAddress": self.user_address,
            "startTimestamp": self.start_timestamp,
            "durationDays": self.duration_days,
        }

    @staticmethod
    def from_dict(data: dict) -> "DecryptionSignature":
        return DecryptionSignature(
            private_key=data["privateKey"],
            public_key=data["publicKey"],
            signature=data["signature"],
            contract_addresses=tuple(data["contractAddresses"]),
            user_address=data["userAddress"],
            start_timestamp=int(data["startTimestamp"]),
            duration_days=int(data["durationDays"]),
        )


def _normalize(addresses: Sequence[str]) -> list[str]:
    return sorted(a.lower() for a in addresses)


def storage_key(user_address: str, contract_addresses: Sequence[str]) -> str:
    material = f"{user_address.lower()}:{','.join(_normalize(contract_addresses))}"
    return keccak(text=material).hex()


# ============================================================
# STORAGE
# ============================================================

class StringStorage(Protocol):
    def get_item(self, key: str) -> Optional[str]:
        ...

    def set_item(self, key: str, value: str) -> None:
        ...

    def remove_item(self, key: str) -> None:
        ...


class InMemoryStorage:
    def __init__(self):
        self._items: dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def __len__(self) -> int:
        return len(self._items)


class FileStorage:
    """JSON object on disk. Every write rewrites the file atomically."""

    def __init__(self, path: Path):
        self._path = Path(path)

    def get_item(self, key: str) -> Optional[str]:
        return self._read_all().get(key)

    def set_item(self, key: str, value: str) -> None:
        items = self._read_all()
        items[key] = value
        self._write_all(items)

    def remove_item(self, key: str) -> None:
        items = self._read_all()
        if items.pop(key, None) is not None:
            self._write_all(items)

    def _read_all(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Signature store {self._path} unreadable, starting empty: {e}")
            return {}

    def _write_all(self, items: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_path = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp", prefix="signatures_")
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
                json.dump(items, f, indent=2)
            os.replace(tmp_path, str(self._path))
        except Exception:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise


# ============================================================
# CACHE
# ============================================================

class DecryptionSignatureCache:
    """
    Usage:
        cache = DecryptionSignatureCache(FileStorage(path))
        sig = await cache.load_or_sign(instance, [contract_address], signer)
        if sig is None:
            ...  # user refused / signer failed
    """

    def __init__(
        self,
        storage: StringStorage,
        duration_days: int = 365,
        clock: Optional[Callable[[], float]] = None,
    ):
        self._storage = storage
        self._duration_days = duration_days
        self._clock = clock or time.time
        self._locks: dict[str, asyncio.Lock] = {}
        self.sign_count: int = 0

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def load(self, user_address: str, contract_addresses: Sequence[str]) -> Optional[DecryptionSignature]:
        """Stored signature for (user, contracts) if it is still usable."""
        key = storage_key(user_address, contract_addresses)
        raw = self._storage.get_item(key)
        if raw is None:
            return None
        try:
            sig = DecryptionSignature.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Dropping malformed stored signature {key[:12]}...: {e}")
            self._storage.remove_item(key)
            return None
        if not sig.matches(user_address, contract_addresses):
            return None
        if not sig.is_valid(self._clock()):
            logger.info(f"Stored decryption signature for {user_address[:10]}... expired")
            return None
        return sig

    async def load_or_sign(self, instance, contract_addresses: Sequence[str], signer) -> Optional[DecryptionSignature]:
        user_address = signer.address
        key = storage_key(user_address, contract_addresses)

        async with self._lock_for(key):
            cached = self.load(user_address, contract_addresses)
            if cached is not None:
                return cached

            # Key generation and signing block; the lock stays held across the executor hop
            sig = await asyncio.get_running_loop().run_in_executor(
                None, self._sign_new, instance, list(contract_addresses), signer,
            )
            if sig is None:
                return None
            self._storage.set_item(key, json.dumps(sig.to_dict()))
            return sig

    def _sign_new(self, instance, contract_addresses: list[str], signer) -> Optional[DecryptionSignature]:
        start = int(self._clock())
        try:
            keypair = instance.generate_keypair()
            eip712 = instance.create_eip712(
                keypair["publicKey"], contract_addresses, start, self._duration_days,
            )
            signature = sign_typed_data(signer, eip712)
        except Exception as e:
            logger.warning(f"Decryption signature not created for {signer.address[:10]}...: {e}")
            return None

        self.sign_count += 1
        logger.info(
            f"New decryption signature for {signer.address[:10]}... "
            f"({len(contract_addresses)} contract(s), {self._duration_days} days)"
        )
        return DecryptionSignature(
            private_key=keypair["privateKey"],
            public_key=keypair["publicKey"],
            signature=signature,
            contract_addresses=tuple(contract_addresses),
            user_address=signer.address,
            start_timestamp=start,
            duration_days=self._duration_days,
        )


def sign_typed_data(signer, eip712: dict) -> str:
    """Sign EIP-712 typed data, accepting both full messages and split parts."""
    types = dict(eip712.get("types", {}))
    if "EIP712Domain" in types:
        signable = encode_typed_data(full_message=eip712)
    else:
        signable = encode_typed_data(
            domain_data=eip712["domain"],
            message_types=types,
            message_data=eip712["message"],
        )
    signed = signer.sign_message(signable)
    return to_hex(signed.signature)
