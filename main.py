"""
cipherwealth - main entry point

Loads settings, connects the network context, wires the registry,
FHE gateway, signature cache and balance controller, and serves the
API with uvicorn.

Usage:
    python main.py                          # chain from CIPHERWEALTH_CHAIN (default: localhost)
    CIPHERWEALTH_CHAIN=sepolia python main.py
"""

import re
import logging
from typing import Optional

import uvicorn
from dotenv import load_dotenv

# ============================================================
# BOOTSTRAP
# ============================================================

load_dotenv()

from core.config import Settings, load_settings  # noqa: E402

settings = load_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)


class _SecretMaskingFilter(logging.Filter):
    """Redact 64-char hex strings (private keys) from all log output."""
    _PATTERN = re.compile(r'(?<![0-9a-fA-F])([0-9a-fA-F]{64})(?![0-9a-fA-F])')

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        if isinstance(record.msg, str):
            record.msg = self._PATTERN.sub('[REDACTED]', record.msg)
        if record.args:
            try:
                formatted = record.getMessage()
            except (TypeError, ValueError):
                return True
            if self._PATTERN.search(formatted):
                record.msg = self._PATTERN.sub('[REDACTED]', formatted)
                record.args = None
        return True


_mask_filter = _SecretMaskingFilter()
for _h in logging.root.handlers:
    _h.addFilter(_mask_filter)

logger = logging.getLogger("cipherwealth.main")


# ============================================================
# MODULE IMPORTS
# ============================================================

from api.server import create_app  # noqa: E402
from core.controller import BalanceController  # noqa: E402
from core.fhe import EncryptionGateway, load_instance_factory  # noqa: E402
from core.network import NetworkContext, NetworkSnapshot  # noqa: E402
from core.registry import ContractRegistry  # noqa: E402
from core.signature import DecryptionSignatureCache, FileStorage  # noqa: E402


# ============================================================
# WIRING
# ============================================================

def _setup_fhe(settings: Settings, network: NetworkContext, gateway: EncryptionGateway) -> None:
    """
    Load the FHE SDK factory and (re)create the instance on every chain switch.
    Without a factory the gateway stays idle and every operation gate stays closed.
    """
    if not settings.fhe_factory:
        logger.warning("CIPHERWEALTH_FHE_FACTORY not set: encryption disabled, operations unavailable")
        return

    try:
        factory = load_instance_factory(settings.fhe_factory)
    except (ImportError, AttributeError, ValueError) as e:
        logger.error(f"Cannot load FHE factory '{settings.fhe_factory}': {e}")
        return

    loaded_for: dict[str, Optional[int]] = {"chain_id": None}

    def _reload(snap: NetworkSnapshot) -> None:
        chain = network.chain
        if chain is None:
            gateway.detach()
            loaded_for["chain_id"] = None
            return
        if loaded_for["chain_id"] == chain.chain_id and gateway.ready:
            return
        if gateway.load(factory, chain.chain_id, chain.rpc_url):
            loaded_for["chain_id"] = chain.chain_id

    network.on_change(_reload)
    _reload(network.snapshot())


def create_cipherwealth_app(settings: Settings):
    network = NetworkContext(settings.chains)
    registry = ContractRegistry.from_file(settings.deployments_path)
    gateway = EncryptionGateway()
    signatures = DecryptionSignatureCache(
        FileStorage(settings.signature_store_path),
        duration_days=settings.signature_duration_days,
    )

    _setup_fhe(settings, network, gateway)

    controller = BalanceController(network, registry, gateway, signatures)

    if not settings.private_key:
        logger.warning("PRIVATE_KEY not set: read-only mode, no signer connected")
    if network.connect(settings.chain, settings.private_key):
        network.verify()
    else:
        logger.error(f"Could not connect to chain '{settings.chain}'")

    info = controller.contract_info
    if info.is_deployed:
        logger.info(f"CipherWealth on {settings.chain}: {info.address}")
    else:
        logger.warning(controller.message)

    return create_app(controller, network, cors_origins=settings.cors_origins)


app = create_cipherwealth_app(settings)


if __name__ == "__main__":
    logger.info(f"cipherwealth API on {settings.host}:{settings.port}")
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
