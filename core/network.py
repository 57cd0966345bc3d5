"""
Network Context - Connected chain, account and providers

Holds the wallet side of the client: which chain we're on, which
account signs, and the Web3 providers used for reads and writes.

Every chain or account switch advances a generation counter. Actions
capture a NetworkSnapshot when they start and compare it when they
finish, so a result computed against an old chain/signer is never
applied to the new one.

Design:
- Local signer only (eth_account LocalAccount from a private key)
- Web3 HTTPProvider per endpoint; write provider may differ from read
- Listeners notified synchronously after every switch
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

from .config import ChainConfig

logger = logging.getLogger("cipherwealth.network")


def _http_provider(rpc_url: str) -> Web3:
    return Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 30}))


@dataclass(frozen=True)
class NetworkSnapshot:
    """What the network looked like when an action started."""
    generation: int
    chain_id: Optional[int]
    account: Optional[str]
    signer: Optional[LocalAccount] = field(default=None, compare=False, repr=False)


class NetworkContext:
    """
    Tracks the connected chain and signer.

    Usage:
        network = NetworkContext(settings.chains)
        network.connect("sepolia", private_key)
        snap = network.snapshot()
        ...
        if network.is_current(snap):
            apply(result)
    """

    def __init__(
        self,
        chains: dict[str, ChainConfig],
        provider_factory: Optional[Callable[[str], Web3]] = None,
    ):
        self._chains = dict(chains)
        self._provider_factory = provider_factory or _http_provider

        self._chain: Optional[ChainConfig] = None
        self._read_provider: Optional[Web3] = None
        self._write_provider: Optional[Web3] = None
        self._signer: Optional[LocalAccount] = None
        self._generation: int = 0

        self._listeners: list[Callable[[NetworkSnapshot], None]] = []

    # ============================================================
    # STATE
    # ============================================================

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def chain(self) -> Optional[ChainConfig]:
        return self._chain

    @property
    def chain_id(self) -> Optional[int]:
        return self._chain.chain_id if self._chain else None

    @property
    def signer(self) -> Optional[LocalAccount]:
        return self._signer

    @property
    def account(self) -> Optional[str]:
        return self._signer.address if self._signer else None

    @property
    def accounts(self) -> list[str]:
        return [self._signer.address] if self._signer else []

    @property
    def read_provider(self) -> Optional[Web3]:
        return self._read_provider

    @property
    def write_provider(self) -> Optional[Web3]:
        """Only present while a signer is connected."""
        if self._signer is None:
            return None
        return self._write_provider

    @property
    def is_connected(self) -> bool:
        return self._chain is not None and self._signer is not None

    def available_chains(self) -> list[str]:
        return sorted(self._chains)

    # ============================================================
    # EQUALITY CHECKS
    # ============================================================

    def same_chain(self, chain_id: Optional[int]) -> bool:
        return chain_id is not None and chain_id == self.chain_id

    def same_signer(self, signer: Optional[LocalAccount]) -> bool:
        if signer is None or self._signer is None:
            return False
        return signer.address == self._signer.address

    def snapshot(self) -> NetworkSnapshot:
        return NetworkSnapshot(
            generation=self._generation,
            chain_id=self.chain_id,
            account=self.account,
            signer=self._signer,
        )

    def is_current(self, snap: NetworkSnapshot) -> bool:
        """Same generation, same chain and same signer as when `snap` was taken."""
        if snap.generation != self._generation or not self.same_chain(snap.chain_id):
            return False
        if snap.signer is None:
            return self._signer is None
        return self.same_signer(snap.signer)

    def on_change(self, callback: Callable[[NetworkSnapshot], None]) -> None:
        self._listeners.append(callback)

    # ============================================================
    # SWITCHES
    # ============================================================

    def connect(self, chain_key: str, private_key: str = "") -> bool:
        """Select a chain and (optionally) a signer in one step."""
        if not self.switch_chain(chain_key):
            return False
        if private_key:
            return self.switch_account(private_key)
        return True

    def switch_chain(self, chain_key: str) -> bool:
        cfg = self._chains.get(chain_key)
        if cfg is None:
            logger.warning(f"Unknown chain '{chain_key}': options: {self.available_chains()}")
            return False

        read = self._provider_factory(cfg.rpc_url)
        if cfg.write_rpc_url and cfg.write_rpc_url != cfg.rpc_url:
            write = self._provider_factory(cfg.write_rpc_url)
        else:
            write = read

        self._chain = cfg
        self._read_provider = read
        self._write_provider = write
        logger.info(f"Network switched to {cfg.key} (chain_id={cfg.chain_id})")
        self._advance()
        return True

    def switch_account(self, private_key: Optional[str]) -> bool:
        """Replace the signer. None/empty disconnects it."""
        if not private_key:
            self._signer = None
            logger.info("Signer disconnected")
            self._advance()
            return True

        try:
            signer = Account.from_key(private_key)
        except Exception as e:
            logger.error(f"Invalid private key: {type(e).__name__}")
            return False

        self._signer = signer
        logger.info(f"Signer connected: {signer.address[:10]}...")
        self._advance()
        return True

    def disconnect(self) -> None:
        self._chain = None
        self._read_provider = None
        self._write_provider = None
        self._signer = None
        logger.info("Network disconnected")
        self._advance()

    def verify(self) -> bool:
        """Check the read RPC answers and reports the configured chain id."""
        if self._read_provider is None or self._chain is None:
            return False
        try:
            if not self._read_provider.is_connected():
                logger.warning(f"Cannot reach {self._chain.key} RPC ({self._chain.rpc_url})")
                return False
            remote_id = self._read_provider.eth.chain_id
        except Exception as e:
            logger.warning(f"RPC check failed for {self._chain.key}: {e}")
            return False
        if remote_id != self._chain.chain_id:
            logger.warning(
                f"RPC for {self._chain.key} reports chain_id={remote_id}, "
                f"expected {self._chain.chain_id}"
            )
            return False
        return True

    def _advance(self) -> None:
        self._generation += 1
        snap = self.snapshot()
        for callback in self._listeners:
            try:
                callback(snap)
            except Exception as e:
                logger.warning(f"Network listener failed: {e}")
