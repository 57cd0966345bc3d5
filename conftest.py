import pytest
from web3 import Web3

from core.config import ChainConfig
from core.controller import BalanceController
from core.fhe import EncryptionGateway
from core.network import NetworkContext
from core.registry import ContractRegistry, Deployment, ZERO_ADDRESS
from core.signature import DecryptionSignatureCache, InMemoryStorage
from core.tests.fakes import (
    ALICE_KEY,
    CONTRACT,
    Clock,
    FakeCipherWealth,
    MockFhevm,
    fake_client_factory,
)


@pytest.fixture
def chains() -> dict[str, ChainConfig]:
    return {
        "localhost": ChainConfig(key="localhost", chain_id=31337, chain_name="hardhat",
                                 rpc_url="http://127.0.0.1:8545"),
        "sepolia": ChainConfig(key="sepolia", chain_id=11155111, chain_name="sepolia",
                               rpc_url="http://127.0.0.1:8546"),
        "devnet": ChainConfig(key="devnet", chain_id=4242, chain_name="devnet",
                              rpc_url="http://127.0.0.1:8547"),
    }


@pytest.fixture
def registry() -> ContractRegistry:
    # devnet has no entry at all, sepolia a zero-address placeholder
    return ContractRegistry({
        "31337": Deployment(address=CONTRACT, chain_id=31337, chain_name="hardhat"),
        "11155111": Deployment(address=ZERO_ADDRESS, chain_id=11155111, chain_name="sepolia"),
    })


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def network(chains) -> NetworkContext:
    net = NetworkContext(chains, provider_factory=lambda url: Web3(Web3.HTTPProvider(url)))
    net.connect("localhost", ALICE_KEY)
    return net


@pytest.fixture
def fhevm(clock) -> MockFhevm:
    return MockFhevm(chain_id=31337, clock=clock)


@pytest.fixture
def ledger(fhevm) -> FakeCipherWealth:
    return FakeCipherWealth(fhevm, CONTRACT)


@pytest.fixture
def signatures(clock) -> DecryptionSignatureCache:
    return DecryptionSignatureCache(InMemoryStorage(), duration_days=365, clock=clock)


@pytest.fixture
def controller(network, registry, fhevm, signatures, ledger) -> BalanceController:
    return BalanceController(
        network,
        registry,
        EncryptionGateway(fhevm),
        signatures,
        client_factory=fake_client_factory(ledger),
    )
