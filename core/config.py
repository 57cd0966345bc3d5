"""
Settings - Environment-driven configuration

Everything the service needs at startup comes from the environment
(optionally a .env file): which chain to connect to, RPC endpoints,
the local signing key, where the deployments table and the decryption
signature store live, and which FHE SDK factory to load.

Design:
- One flat Settings dataclass, built once by load_settings()
- Chain defaults embedded; per-chain RPC overridable via <CHAIN>_RPC_URL
- No module-level mutable state: callers pass Settings around
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger("cipherwealth.config")


# ============================================================
# CHAIN DEFAULTS
# ============================================================

CHAIN_DEFAULTS = {
    "localhost": {
        "rpc": "http://127.0.0.1:8545",
        "chain_id": 31337,
        "chain_name": "hardhat",
        "explorer": "",
        "native_symbol": "ETH",
    },
    "sepolia": {
        "rpc": "https://ethereum-sepolia-rpc.publicnode.com",
        "chain_id": 11155111,
        "chain_name": "sepolia",
        "explorer": "https://sepolia.etherscan.io",
        "native_symbol": "ETH",
    },
}

DEFAULT_CHAIN = "localhost"
DEFAULT_SIGNATURE_DURATION_DAYS = 365


@dataclass(frozen=True)
class ChainConfig:
    """Connection parameters for one chain."""
    key: str
    chain_id: int
    chain_name: str
    rpc_url: str
    write_rpc_url: str = ""       # empty = same endpoint as rpc_url
    explorer: str = ""
    native_symbol: str = "ETH"

    def tx_url(self, tx_hash: str) -> str:
        if not self.explorer:
            return ""
        return f"{self.explorer}/tx/{tx_hash}"


@dataclass
class Settings:
    chain: str = DEFAULT_CHAIN
    chains: dict[str, ChainConfig] = field(default_factory=dict)
    private_key: str = ""
    deployments_path: Path = Path("data/deployments.json")
    signature_store_path: Path = Path("data/decryption_signatures.json")
    signature_duration_days: int = DEFAULT_SIGNATURE_DURATION_DAYS
    fhe_factory: str = ""          # "package.module:callable"
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    def chain_config(self, key: Optional[str] = None) -> ChainConfig:
        key = key or self.chain
        if key not in self.chains:
            raise KeyError(f"Unknown chain '{key}'. Options: {sorted(self.chains)}")
        return self.chains[key]

    def chain_by_id(self, chain_id: int) -> Optional[ChainConfig]:
        for cfg in self.chains.values():
            if cfg.chain_id == chain_id:
                return cfg
        return None


def build_chain_configs() -> dict[str, ChainConfig]:
    """Merge CHAIN_DEFAULTS with <CHAIN>_RPC_URL / <CHAIN>_WRITE_RPC_URL overrides."""
    configs = {}
    for key, defaults in CHAIN_DEFAULTS.items():
        prefix = key.upper()
        configs[key] = ChainConfig(
            key=key,
            chain_id=defaults["chain_id"],
            chain_name=defaults["chain_name"],
            rpc_url=os.getenv(f"{prefix}_RPC_URL", defaults["rpc"]),
            write_rpc_url=os.getenv(f"{prefix}_WRITE_RPC_URL", ""),
            explorer=defaults["explorer"],
            native_symbol=defaults["native_symbol"],
        )
    return configs


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """
    Read Settings from the environment.

    Args:
        env_file: Optional .env path. Values already in os.environ win.
    """
    if env_file is not None:
        load_dotenv(env_file)
    else:
        load_dotenv()

    chains = build_chain_configs()
    chain = os.getenv("CIPHERWEALTH_CHAIN", DEFAULT_CHAIN).strip().lower()
    if chain not in chains:
        logger.warning(f"Unknown CIPHERWEALTH_CHAIN '{chain}', falling back to {DEFAULT_CHAIN}")
        chain = DEFAULT_CHAIN

    try:
        duration_days = int(os.getenv("SIGNATURE_DURATION_DAYS", str(DEFAULT_SIGNATURE_DURATION_DAYS)))
    except ValueError:
        logger.warning("SIGNATURE_DURATION_DAYS is not an integer, using default")
        duration_days = DEFAULT_SIGNATURE_DURATION_DAYS

    return Settings(
        chain=chain,
        chains=chains,
        private_key=os.getenv("PRIVATE_KEY", "").strip(),
        deployments_path=Path(os.getenv("CIPHERWEALTH_DEPLOYMENTS", "data/deployments.json")),
        signature_store_path=Path(
            os.getenv("CIPHERWEALTH_SIGNATURE_STORE", "data/decryption_signatures.json")
        ),
        signature_duration_days=duration_days,
        fhe_factory=os.getenv("CIPHERWEALTH_FHE_FACTORY", "").strip(),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        cors_origins=[o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()],
    )
