"""Tests for the decryption signature cache."""

import asyncio
import json
import time

import pytest
from eth_account import Account
from eth_account.messages import encode_typed_data

from core.signature import (
    DecryptionSignature,
    DecryptionSignatureCache,
    FileStorage,
    InMemoryStorage,
    sign_typed_data,
    storage_key,
)
from core.tests.fakes import ALICE_KEY, BOB_KEY, CONTRACT, Clock, MockFhevm

pytestmark = pytest.mark.asyncio

ALICE = Account.from_key(ALICE_KEY)
BOB = Account.from_key(BOB_KEY)
OTHER_CONTRACT = "0x" + "e3" * 20
DAY = 86_400


def _cache(clock=None, storage=None, days=365) -> DecryptionSignatureCache:
    return DecryptionSignatureCache(storage or InMemoryStorage(), duration_days=days, clock=clock or Clock())


async def test_storage_key_ignores_order_and_case():
    a = storage_key(ALICE.address, [CONTRACT, OTHER_CONTRACT])
    b = storage_key(ALICE.address.lower(), [OTHER_CONTRACT.upper().replace("0X", "0x"), CONTRACT])
    assert a == b
    assert a != storage_key(BOB.address, [CONTRACT, OTHER_CONTRACT])
    assert a != storage_key(ALICE.address, [CONTRACT])


async def test_signature_validity_window():
    sig = DecryptionSignature(
        private_key="0x01", public_key="0x02", signature="0x03",
        contract_addresses=(CONTRACT,), user_address=ALICE.address,
        start_timestamp=1000, duration_days=1,
    )
    assert sig.expires_at == 1000 + DAY
    assert sig.is_valid(1000 + DAY - 1)
    assert not sig.is_valid(1000 + DAY)
    assert sig.matches(ALICE.address.lower(), [CONTRACT])
    assert not sig.matches(BOB.address, [CONTRACT])
    assert DecryptionSignature.from_dict(sig.to_dict()) == sig


async def test_signature_is_reused_within_window():
    clock = Clock()
    fhevm = MockFhevm(clock=clock)
    cache = _cache(clock)

    first = await cache.load_or_sign(fhevm, [CONTRACT], ALICE)
    clock.advance(30 * DAY)
    second = await cache.load_or_sign(fhevm, [CONTRACT], ALICE)

    assert first == second
    assert cache.sign_count == 1
    assert fhevm.keypairs_generated == 1


async def test_expired_signature_triggers_one_new_prompt():
    clock = Clock()
    fhevm = MockFhevm(clock=clock)
    cache = _cache(clock, days=1)

    first = await cache.load_or_sign(fhevm, [CONTRACT], ALICE)
    clock.advance(DAY)
    second = await cache.load_or_sign(fhevm, [CONTRACT], ALICE)
    third = await cache.load_or_sign(fhevm, [CONTRACT], ALICE)

    assert second != first
    assert second == third
    assert cache.sign_count == 2


async def test_signatures_are_scoped_per_user_and_contracts():
    fhevm = MockFhevm()
    cache = _cache()
    await cache.load_or_sign(fhevm, [CONTRACT], ALICE)
    await cache.load_or_sign(fhevm, [CONTRACT], BOB)
    await cache.load_or_sign(fhevm, [CONTRACT, OTHER_CONTRACT], ALICE)
    assert cache.sign_count == 3


async def test_concurrent_requests_sign_once():
    class SlowSigner:
        """Signs after a delay so overlapping requests really contend for the lock."""
        address = ALICE.address

        def __init__(self):
            self.calls = 0

        def sign_message(self, signable):
            self.calls += 1
            time.sleep(0.05)
            return ALICE.sign_message(signable)

    fhevm = MockFhevm()
    cache = _cache()
    signer = SlowSigner()
    results = await asyncio.gather(*[cache.load_or_sign(fhevm, [CONTRACT], signer) for _ in range(5)])

    assert signer.calls == 1
    assert cache.sign_count == 1
    assert fhevm.keypairs_generated == 1
    assert results[0] is not None
    assert all(r == results[0] for r in results)



async def test_signing_failure_returns_none():
    class RefusingSigner:
        address = ALICE.address

        def sign_message(self, signable):
            raise PermissionError("user rejected the request")

    cache = _cache()
    assert await cache.load_or_sign(MockFhevm(), [CONTRACT], RefusingSigner()) is None
    assert cache.sign_count == 0


async def test_malformed_stored_entry_is_dropped():
    storage = InMemoryStorage()
    key = storage_key(ALICE.address, [CONTRACT])
    storage.set_item(key, json.dumps({"privateKey": "0x01"}))

    cache = _cache(storage=storage)
    assert cache.load(ALICE.address, [CONTRACT]) is None
    assert storage.get_item(key) is None


async def test_signature_recovers_to_signer():
    fhevm = MockFhevm()
    sig = await _cache().load_or_sign(fhevm, [CONTRACT], ALICE)
    eip712 = fhevm.create_eip712(sig.public_key, list(sig.contract_addresses), sig.start_timestamp, sig.duration_days)
    recovered = Account.recover_message(encode_typed_data(full_message=eip712), signature=sig.signature)
    assert recovered == ALICE.address


async def test_sign_typed_data_split_parts():
    eip712 = MockFhevm().create_eip712("0x1234", [CONTRACT], 1000, 1)
    types = dict(eip712["types"])
    types.pop("EIP712Domain")
    split = {"domain": eip712["domain"], "types": types, "message": eip712["message"]}
    assert sign_typed_data(ALICE, split) == sign_typed_data(ALICE, eip712)


async def test_file_storage_persists_across_instances(tmp_path):
    path = tmp_path / "signatures.json"
    clock = Clock()
    fhevm = MockFhevm(clock=clock)

    first = await _cache(clock, storage=FileStorage(path)).load_or_sign(fhevm, [CONTRACT], ALICE)
    reopened = _cache(clock, storage=FileStorage(path))
    assert reopened.load(ALICE.address, [CONTRACT]) == first

    FileStorage(path).remove_item(storage_key(ALICE.address, [CONTRACT]))
    assert reopened.load(ALICE.address, [CONTRACT]) is None
