"""Tests for the contract registry and the deployments table."""

import json

import pytest

from core.registry import (
    CIPHER_WEALTH_ABI,
    ContractRegistry,
    Deployment,
    ZERO_ADDRESS,
    load_deployments,
    record_deployment,
)
from core.tests.fakes import CONTRACT


def _abi_names() -> set[str]:
    return {entry.get("name") for entry in CIPHER_WEALTH_ABI}


# ── resolve ──


def test_resolve_without_chain_id_returns_abi_only(registry):
    info = registry.resolve(None)
    assert info.abi == CIPHER_WEALTH_ABI
    assert info.address is None
    assert info.chain_id is None
    assert not info.is_deployed

    assert registry.resolve(0).chain_id is None


def test_resolve_deployed_chain(registry):
    info = registry.resolve(31337)
    assert info.address == CONTRACT
    assert info.chain_id == 31337
    assert info.chain_name == "hardhat"
    assert info.is_deployed


def test_resolve_zero_address_entry_is_not_deployed(registry):
    info = registry.resolve(11155111)
    assert info.address is None
    assert info.chain_id == 11155111
    assert not info.is_deployed


def test_resolve_unknown_chain_keeps_requested_id(registry):
    info = registry.resolve(4242)
    assert info.address is None
    assert info.chain_id == 4242
    assert info.chain_name is None


def test_resolve_missing_chain_name_is_none():
    reg = ContractRegistry({"5": Deployment(address=CONTRACT)})
    info = reg.resolve(5)
    assert info.chain_id == 5
    assert info.chain_name is None
    assert info.is_deployed


def test_abi_covers_contract_surface():
    names = _abi_names()
    for fn in ("getBalance", "getBalanceOf", "deposit", "withdraw", "transfer", "protocolId"):
        assert fn in names
    for event in ("Deposit", "Withdrawal"):
        assert event in names


def test_chain_ids_sorted(registry):
    assert registry.chain_ids() == ["11155111", "31337"]


# ── deployments table ──


def test_load_deployments_missing_file(tmp_path):
    assert load_deployments(tmp_path / "nope.json") == {}


def test_load_deployments_corrupt_file(tmp_path):
    path = tmp_path / "deployments.json"
    path.write_text("{not json")
    assert load_deployments(path) == {}


def test_load_deployments_skips_malformed_entries(tmp_path):
    path = tmp_path / "deployments.json"
    path.write_text(json.dumps({
        "31337": {"address": CONTRACT, "chainId": 31337, "chainName": "hardhat"},
        "1": "garbage",
    }))
    table = load_deployments(path)
    assert list(table) == ["31337"]
    assert table["31337"] == Deployment(address=CONTRACT, chain_id=31337, chain_name="hardhat")


def test_record_deployment_merges(tmp_path):
    path = tmp_path / "data" / "deployments.json"
    record_deployment(path, Deployment(address=CONTRACT, chain_id=31337, chain_name="hardhat"))
    other = "0x" + "d2" * 20
    record_deployment(path, Deployment(address=other, chain_id=11155111, chain_name="sepolia"))

    raw = json.loads(path.read_text())
    assert raw["31337"] == {"address": CONTRACT, "chainId": 31337, "chainName": "hardhat"}
    assert raw["11155111"]["address"] == other

    reg = ContractRegistry.from_file(path)
    assert reg.resolve(11155111).address == other
    assert not list(path.parent.glob("*.tmp"))


def test_record_deployment_overwrites_same_chain(tmp_path):
    path = tmp_path / "deployments.json"
    record_deployment(path, Deployment(address=ZERO_ADDRESS, chain_id=31337))
    record_deployment(path, Deployment(address=CONTRACT, chain_id=31337))
    assert ContractRegistry.from_file(path).resolve(31337).is_deployed


def test_record_deployment_requires_chain_id(tmp_path):
    with pytest.raises(ValueError):
        record_deployment(tmp_path / "deployments.json", Deployment(address=CONTRACT))
