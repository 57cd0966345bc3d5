"""
Contract Registry - Per-chain CipherWealth deployments

Resolves the CipherWealth address + ABI for the connected chain id.
The deployments table is loaded once from JSON (written by
scripts/deploy_cipher_wealth.py) and injected into ContractRegistry.

Table format (keyed by chain id as a string):
    {"31337": {"address": "0x...", "chainId": 31337, "chainName": "hardhat"}}

A missing entry or a zero address means "not deployed on this chain".
That is a normal, representable state, never an exception.
"""

import os
import json
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger("cipherwealth.registry")

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


# ============================================================
# ABI: the CipherWealth surface consumed by the client
# ============================================================

CIPHER_WEALTH_ABI = [
    {
        "anonymous": False,
        "inputs": [{"indexed": True, "internalType": "address", "name": "user", "type": "address"}],
        "name": "Deposit",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [{"indexed": True, "internalType": "address", "name": "user", "type": "address"}],
        "name": "Withdrawal",
        "type": "event",
    },
    # deposit(externalEuint64 inputEuint64, bytes inputProof)
    {
        "inputs": [
            {"internalType": "externalEuint64", "name": "inputEuint64", "type": "bytes32"},
            {"internalType": "bytes", "name": "inputProof", "type": "bytes"},
        ],
        "name": "deposit",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # getBalance() → euint64 handle of msg.sender
    {
        "inputs": [],
        "name": "getBalance",
        "outputs": [{"internalType": "euint64", "name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function",
    },
    # getBalanceOf(address user) → euint64 handle
    {
        "inputs": [{"internalType": "address", "name": "user", "type": "address"}],
        "name": "getBalanceOf",
        "outputs": [{"internalType": "euint64", "name": "", "type": "bytes32"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "protocolId",
        "outputs": [{"internalType": "uint256", "name": "", "type": "uint256"}],
        "stateMutability": "pure",
        "type": "function",
    },
    # transfer(address to, externalEuint64 inputEuint64, bytes inputProof)
    {
        "inputs": [
            {"internalType": "address", "name": "to", "type": "address"},
            {"internalType": "externalEuint64", "name": "inputEuint64", "type": "bytes32"},
            {"internalType": "bytes", "name": "inputProof", "type": "bytes"},
        ],
        "name": "transfer",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    # withdraw(externalEuint64 inputEuint64, bytes inputProof)
    {
        "inputs": [
            {"internalType": "externalEuint64", "name": "inputEuint64", "type": "bytes32"},
            {"internalType": "bytes", "name": "inputProof", "type": "bytes"},
        ],
        "name": "withdraw",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]


# ============================================================
# TYPES
# ============================================================

@dataclass(frozen=True)
class Deployment:
    """One row of the deployments table."""
    address: str
    chain_id: Optional[int] = None
    chain_name: str = ""

    def to_dict(self) -> dict:
        return {"address": self.address, "chainId": self.chain_id, "chainName": self.chain_name}

    @staticmethod
    def from_dict(data: dict) -> "Deployment":
        chain_id = data.get("chainId")
        return Deployment(
            address=data.get("address", ZERO_ADDRESS),
            chain_id=int(chain_id) if chain_id is not None else None,
            chain_name=data.get("chainName", ""),
        )


@dataclass(frozen=True)
class ChainContractInfo:
    """Snapshot of where (and whether) CipherWealth lives on a chain."""
    abi: list = field(repr=False)
    address: Optional[str] = None
    chain_id: Optional[int] = None
    chain_name: Optional[str] = None

    @property
    def is_deployed(self) -> bool:
        return bool(self.address) and self.address.lower() != ZERO_ADDRESS


class ContractRegistry:
    """Pure chain id → ChainContractInfo lookup over an injected table."""

    def __init__(self, deployments: dict[str, Deployment], abi: Optional[list] = None):
        self._deployments = dict(deployments)
        self._abi = abi if abi is not None else CIPHER_WEALTH_ABI

    @classmethod
    def from_file(cls, path: Path, abi: Optional[list] = None) -> "ContractRegistry":
        return cls(load_deployments(path), abi=abi)

    @property
    def abi(self) -> list:
        return self._abi

    def chain_ids(self) -> list[str]:
        return sorted(self._deployments)

    def resolve(self, chain_id: Optional[int]) -> ChainContractInfo:
        if not chain_id:
            return ChainContractInfo(abi=self._abi)

        entry = self._deployments.get(str(chain_id))
        if entry is None or not entry.address or entry.address.lower() == ZERO_ADDRESS:
            return ChainContractInfo(abi=self._abi, chain_id=chain_id)

        return ChainContractInfo(
            abi=self._abi,
            address=entry.address,
            chain_id=entry.chain_id or chain_id,
            chain_name=entry.chain_name or None,
        )


# ============================================================
# DEPLOYMENTS TABLE PERSISTENCE
# ============================================================

def load_deployments(path: Path) -> dict[str, Deployment]:
    """Read the deployments table. Missing or unreadable file → empty table."""
    p = Path(path)
    if not p.exists():
        logger.info(f"No deployments table at {p}: every chain reads as undeployed")
        return {}

    try:
        with open(p, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to read deployments table {p}: {e}")
        return {}

    table = {}
    for chain_key, entry in raw.items():
        if not isinstance(entry, dict):
            logger.warning(f"Skipping malformed deployment entry for chain {chain_key}")
            continue
        table[str(chain_key)] = Deployment.from_dict(entry)
    logger.info(f"Loaded {len(table)} deployment(s) from {p}")
    return table


def record_deployment(path: Path, deployment: Deployment) -> None:
    """Merge one deployment into the table, keyed by its chain id."""
    if deployment.chain_id is None:
        raise ValueError("Deployment must carry a chain id to be recorded")

    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)

    existing = {}
    if p.exists():
        with open(p, "r", encoding="utf-8") as f:
            existing = json.load(f)
    existing[str(deployment.chain_id)] = deployment.to_dict()

    # Atomic write: temp file in the same directory, then rename
    tmp_fd, tmp_path = tempfile.mkstemp(dir=str(p.parent), suffix=".tmp", prefix="deployments_")
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            json.dump(existing, f, indent=2)
        os.replace(tmp_path, str(p))
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    logger.info(f"Recorded CipherWealth deployment on chain {deployment.chain_id}: {deployment.address}")
