"""
List accounts with their native balances.

Prints the node-managed accounts (eth_accounts, e.g. a local hardhat
node), the deployer derived from PRIVATE_KEY, and any extra addresses
given on the command line.

Usage:
    python scripts/accounts.py
    python scripts/accounts.py --chain sepolia 0xabc... 0xdef...
"""

import sys
import argparse
import logging
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

load_dotenv(ROOT / ".env")

from core.config import load_settings  # noqa: E402

logger = logging.getLogger("cipherwealth.accounts")


def collect_addresses(w3, private_key: str = "", extra: Optional[list[str]] = None) -> list[str]:
    """Node accounts + PRIVATE_KEY account + extras, checksummed, without duplicates."""
    from web3 import Web3

    candidates: list[str] = []
    try:
        candidates.extend(w3.eth.accounts)
    except Exception as e:
        logger.debug(f"eth_accounts unavailable: {e}")
    if private_key:
        candidates.append(w3.eth.account.from_key(private_key).address)
    candidates.extend(extra or [])

    seen = set()
    addresses = []
    for address in candidates:
        if not Web3.is_address(address):
            logger.warning(f"Skipping invalid address: {address}")
            continue
        checksummed = Web3.to_checksum_address(address)
        if checksummed not in seen:
            seen.add(checksummed)
            addresses.append(checksummed)
    return addresses


def main(argv: Optional[list[str]] = None, w3=None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    settings = load_settings(ROOT / ".env")

    parser = argparse.ArgumentParser(description="Print the list of accounts with balances")
    parser.add_argument("--chain", default=settings.chain, choices=sorted(settings.chains))
    parser.add_argument("addresses", nargs="*", help="Extra addresses to include")
    args = parser.parse_args(argv)

    chain = settings.chain_config(args.chain)
    if w3 is None:
        from web3 import Web3
        w3 = Web3(Web3.HTTPProvider(chain.rpc_url, request_kwargs={"timeout": 30}))
    if not w3.is_connected():
        logger.error(f"Cannot connect to {chain.rpc_url}")
        return 1

    print("\nAvailable accounts:")
    print("==================")
    for address in collect_addresses(w3, settings.private_key, args.addresses):
        balance = w3.from_wei(w3.eth.get_balance(address), "ether")
        print(f"{address} - Balance: {balance} {chain.native_symbol}")
    print("")
    return 0


if __name__ == "__main__":
    sys.exit(main())
