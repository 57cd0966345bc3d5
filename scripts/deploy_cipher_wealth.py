"""
Deploy CipherWealth Contract

Deploys CipherWealth to a configured chain and records its address in
the deployments table (data/deployments.json by default) that the API
server reads at startup.

Usage:
    python scripts/deploy_cipher_wealth.py                    # localhost (hardhat node)
    python scripts/deploy_cipher_wealth.py --chain sepolia
    python scripts/deploy_cipher_wealth.py --dry-run          # compile + summary only

Artifacts:
    contracts/CipherWealth.json with {"abi": [...], "bytecode": "0x..."} is used
    when present. Otherwise contracts/CipherWealth.sol is compiled with py-solc-x;
    the FHEVM Solidity library must be installed under node_modules/@fhevm.

Prerequisites:
    pip install -e .
    PRIVATE_KEY in .env (deployer)
"""

import sys
import json
import argparse
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Add project root to path
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

load_dotenv(ROOT / ".env")

from core.config import ChainConfig, load_settings  # noqa: E402
from core.registry import Deployment, record_deployment  # noqa: E402

logger = logging.getLogger("cipherwealth.deploy")

CONTRACT_NAME = "CipherWealth"
SOLC_VERSION = "0.8.24"
MIN_NATIVE_BALANCE = 0.001


class DeployError(RuntimeError):
    """Raised when compilation or deployment cannot proceed."""


# ============================================================
# COMPILE
# ============================================================

def compile_contract(contracts_dir: Path = ROOT / "contracts") -> tuple[list, str]:
    """
    Return (abi, bytecode) for CipherWealth.
    Pre-compiled artifacts win; otherwise compile from source with py-solc-x
    and cache the result next to the source.
    """
    artifacts_path = contracts_dir / f"{CONTRACT_NAME}.json"

    if artifacts_path.exists():
        logger.info(f"Using pre-compiled artifacts from {artifacts_path}")
        with open(artifacts_path, "r", encoding="utf-8") as f:
            compiled = json.load(f)
        bytecode = compiled["bytecode"]
        if not bytecode.startswith("0x"):
            bytecode = "0x" + bytecode
        return compiled["abi"], bytecode

    sol_path = contracts_dir / f"{CONTRACT_NAME}.sol"
    if not sol_path.exists():
        raise DeployError(
            f"Neither {artifacts_path} nor {sol_path} exists. "
            f"Provide pre-compiled artifacts with {{\"abi\": [...], \"bytecode\": \"0x...\"}}"
        )

    import solcx

    installed = {str(v) for v in solcx.get_installed_solc_versions()}
    if SOLC_VERSION not in installed:
        logger.info(f"Installing Solidity compiler {SOLC_VERSION}...")
        solcx.install_solc(SOLC_VERSION)

    import_remappings = []
    fhevm_path = ROOT / "node_modules" / "@fhevm"
    if fhevm_path.exists():
        import_remappings.append(f"@fhevm/={fhevm_path}/")
    else:
        logger.warning("node_modules/@fhevm not found: FHEVM imports will not resolve")

    logger.info(f"Compiling {sol_path.name}...")
    try:
        compiled = solcx.compile_source(
            sol_path.read_text(encoding="utf-8"),
            output_values=["abi", "bin"],
            import_remappings=import_remappings or None,
            solc_version=SOLC_VERSION,
        )
    except Exception as e:
        raise DeployError(f"Compilation failed: {e}") from e

    contract_key = next((key for key in compiled if key.endswith(f":{CONTRACT_NAME}")), None)
    if contract_key is None:
        raise DeployError(f"{CONTRACT_NAME} not found in compilation output")

    abi = compiled[contract_key]["abi"]
    bytecode = "0x" + compiled[contract_key]["bin"]

    with open(artifacts_path, "w", encoding="utf-8") as f:
        json.dump({"abi": abi, "bytecode": bytecode}, f, indent=2)
    logger.info(f"Artifacts saved to {artifacts_path}")

    return abi, bytecode


# ============================================================
# DEPLOY
# ============================================================

def deploy(
    chain: ChainConfig,
    private_key: str,
    deployments_path: Path,
    dry_run: bool = False,
    w3=None,
) -> Optional[str]:
    """Deploy CipherWealth to `chain`. Returns the contract address (None on dry run)."""
    from web3 import Web3

    if not private_key:
        raise DeployError("PRIVATE_KEY not set in .env")

    if w3 is None:
        w3 = Web3(Web3.HTTPProvider(chain.rpc_url, request_kwargs={"timeout": 30}))
    if not w3.is_connected():
        raise DeployError(f"Cannot connect to {chain.rpc_url}")

    remote_chain_id = w3.eth.chain_id
    if remote_chain_id != chain.chain_id:
        raise DeployError(f"RPC reports chain_id={remote_chain_id}, expected {chain.chain_id} for {chain.key}")
    logger.info(f"Connected to {chain.key} (chain_id={chain.chain_id})")

    account = w3.eth.account.from_key(private_key)
    deployer = account.address
    logger.info(f"Deployer address: {deployer}")

    balance_native = w3.from_wei(w3.eth.get_balance(deployer), "ether")
    logger.info(f"Native balance: {balance_native:.6f} {chain.native_symbol}")
    if balance_native < MIN_NATIVE_BALANCE:
        raise DeployError(
            f"Insufficient native balance for gas. Need at least {MIN_NATIVE_BALANCE}, have {balance_native:.6f}"
        )

    abi, bytecode = compile_contract()

    logger.info("=" * 50)
    logger.info("DEPLOYMENT SUMMARY")
    logger.info(f"  Chain:     {chain.key} ({chain.chain_id})")
    logger.info(f"  Contract:  {CONTRACT_NAME}")
    logger.info(f"  Deployer:  {deployer}")
    logger.info(f"  Table:     {deployments_path}")
    logger.info("=" * 50)

    if dry_run:
        logger.info("DRY RUN: skipping actual deployment")
        return None

    contract = w3.eth.contract(abi=abi, bytecode=bytecode)
    tx = contract.constructor().build_transaction({
        "from": deployer,
        "nonce": w3.eth.get_transaction_count(deployer),
        "gasPrice": w3.eth.gas_price,
        "chainId": chain.chain_id,
    })

    gas_estimate = w3.eth.estimate_gas(tx)
    tx["gas"] = int(gas_estimate * 1.2)  # 20% buffer
    logger.info(f"Gas estimate: {gas_estimate} (using {tx['gas']} with buffer)")

    signed = account.sign_transaction(tx)
    tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
    tx_hash_hex = Web3.to_hex(tx_hash)
    logger.info(f"TX sent: {tx_hash_hex}")
    logger.info("Waiting for confirmation...")

    receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=120)
    if receipt["status"] != 1:
        raise DeployError(f"Deployment FAILED! TX: {tx_hash_hex}")

    address = receipt["contractAddress"]
    logger.info(f"{CONTRACT_NAME} contract: {address}")
    if chain.explorer:
        logger.info(f"Explorer: {chain.explorer}/address/{address}")

    record_deployment(
        deployments_path,
        Deployment(address=address, chain_id=chain.chain_id, chain_name=chain.chain_name),
    )
    return address


# ============================================================
# CLI
# ============================================================

def main(argv: Optional[list[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    settings = load_settings(ROOT / ".env")

    parser = argparse.ArgumentParser(description=f"Deploy the {CONTRACT_NAME} contract")
    parser.add_argument("--chain", default=settings.chain, choices=sorted(settings.chains),
                        help=f"Target chain (default: {settings.chain})")
    parser.add_argument("--dry-run", action="store_true",
                        help="Compile and summarize without sending transactions")
    parser.add_argument("--deployments", type=Path, default=settings.deployments_path,
                        help="Deployments table to update")
    args = parser.parse_args(argv)

    try:
        address = deploy(
            settings.chain_config(args.chain),
            settings.private_key,
            args.deployments,
            dry_run=args.dry_run,
        )
    except DeployError as e:
        logger.error(str(e))
        return 1

    if address:
        logger.info("=" * 50)
        logger.info("DEPLOYMENT COMPLETE")
        logger.info(f"{CONTRACT_NAME}: {address}")
        logger.info("=" * 50)
    return 0


if __name__ == "__main__":
    sys.exit(main())
