"""
cipherwealth API Server - FastAPI presentation layer

Renders BalanceController state as JSON and dispatches user intents
into it.

Endpoints:
- GET  /health               Liveness + FHE instance status
- GET  /status               Full controller state (handle, clear value, gates, lanes, message)
- GET  /network              Connected chain / account / generation
- POST /network/switch       Switch to another configured chain
- GET  /contract             Contract address, deployment flag, protocolId()
- POST /balance/refresh      Fetch the encrypted balance handle
- POST /balance/decrypt      Decrypt the held handle (signature cached)
- GET  /balance/{address}    Encrypted handle of any account (not decryptable)
- POST /deposit              Encrypted deposit
- POST /withdraw             Encrypted withdrawal
- POST /transfer             Encrypted transfer

Action endpoints take an optional ?generation=N: the network generation
the caller last rendered. If the chain or account changed since, the
gate is closed and the request answers 409 instead of acting on a
network the caller never saw.
"""

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from web3 import Web3

from core.controller import BalanceController
from core.fhe import handle_hex, is_zero_handle
from core.network import NetworkContext

logger = logging.getLogger("cipherwealth.api")

# euint64 upper bound; anything above is rejected by the SDK anyway
_MAX_UINT64 = 2**64 - 1


# ============================================================
# MODELS
# ============================================================

class AmountRequest(BaseModel):
    amount: int = Field(..., gt=0, le=_MAX_UINT64)


class TransferRequest(BaseModel):
    to: str = Field(..., min_length=42, max_length=42)
    amount: int = Field(..., gt=0, le=_MAX_UINT64)


class SwitchChainRequest(BaseModel):
    chain: str = Field(..., max_length=64)


class ActionResponse(BaseModel):
    ok: bool
    message: str
    generation: int
    balance_handle: Optional[str] = None
    clear_value: Optional[int] = None
    is_decrypted: bool = False


class NetworkResponse(BaseModel):
    chain: Optional[str] = None
    chain_id: Optional[int] = None
    account: Optional[str] = None
    accounts: list[str] = []
    generation: int
    is_connected: bool
    available_chains: list[str] = []


class BalanceOfResponse(BaseModel):
    address: str
    handle: Optional[str] = None
    initialized: bool = False


# ============================================================
# SERVER FACTORY
# ============================================================

def create_app(
    controller: BalanceController,
    network: NetworkContext,
    cors_origins: Optional[list[str]] = None,
) -> FastAPI:
    """Create the FastAPI app wired to one controller and its network context."""
    app = FastAPI(
        title="cipherwealth",
        description="Encrypted balances on an FHE-enabled chain.",
        version="0.1.0",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _action_response(ok: bool) -> ActionResponse:
        handle = controller.balance_handle
        return ActionResponse(
            ok=ok,
            message=controller.message,
            generation=network.generation,
            balance_handle=handle_hex(handle) if handle is not None else None,
            clear_value=controller.clear_value,
            is_decrypted=controller.is_decrypted,
        )

    def _closed(action: str) -> HTTPException:
        return HTTPException(409, f"{action} not available in the current state")

    # ============================================================
    # ROUTES: state
    # ============================================================

    @app.get("/health")
    async def health():
        return {
            "alive": True,
            "connected": network.is_connected,
            "fhevm_status": controller.snapshot()["fhevm_status"],
        }

    @app.get("/status")
    async def status():
        return controller.snapshot()

    @app.get("/network", response_model=NetworkResponse)
    async def network_info():
        chain = network.chain
        return NetworkResponse(
            chain=chain.key if chain else None,
            chain_id=network.chain_id,
            account=network.account,
            accounts=network.accounts,
            generation=network.generation,
            is_connected=network.is_connected,
            available_chains=network.available_chains(),
        )

    @app.post("/network/switch", response_model=NetworkResponse)
    async def switch_chain(req: SwitchChainRequest):
        if not network.switch_chain(req.chain):
            raise HTTPException(404, f"Unknown chain '{req.chain}'")
        return await network_info()

    @app.get("/contract")
    async def contract():
        info = controller.contract_info
        return {
            "address": info.address,
            "chain_id": info.chain_id,
            "chain_name": info.chain_name,
            "is_deployed": info.is_deployed,
            "protocol_id": await controller.protocol_id() if info.is_deployed else None,
        }

    # ============================================================
    # ROUTES: balance
    # ============================================================

    @app.post("/balance/refresh", response_model=ActionResponse)
    async def refresh(generation: Optional[int] = Query(None)):
        if not controller.can_fetch_balance(generation):
            raise _closed("refresh")
        return _action_response(await controller.refresh_balance(generation))

    @app.post("/balance/decrypt", response_model=ActionResponse)
    async def decrypt(generation: Optional[int] = Query(None)):
        if not controller.can_decrypt(generation):
            raise _closed("decrypt")
        return _action_response(await controller.decrypt_balance(generation))

    @app.get("/balance/{address}", response_model=BalanceOfResponse)
    async def balance_of(address: str):
        if not Web3.is_address(address):
            raise HTTPException(422, "Invalid address")
        if not controller.is_deployed:
            raise HTTPException(404, controller.message or "Contract not deployed on this chain")
        handle = await controller.balance_of(address)
        if handle is None:
            raise HTTPException(502, "Balance query failed")
        return BalanceOfResponse(
            address=Web3.to_checksum_address(address),
            handle=handle_hex(handle),
            initialized=not is_zero_handle(handle),
        )

    # ============================================================
    # ROUTES: encrypted operations
    # ============================================================

    @app.post("/deposit", response_model=ActionResponse)
    async def deposit(req: AmountRequest, generation: Optional[int] = Query(None)):
        if not controller.can_operate(generation):
            raise _closed("deposit")
        ok = await controller.deposit(req.amount, generation)
        logger.info(f"DEPOSIT {req.amount}: {'ok' if ok else 'failed'}")
        return _action_response(ok)

    @app.post("/withdraw", response_model=ActionResponse)
    async def withdraw(req: AmountRequest, generation: Optional[int] = Query(None)):
        if not controller.can_operate(generation):
            raise _closed("withdraw")
        ok = await controller.withdraw(req.amount, generation)
        logger.info(f"WITHDRAW {req.amount}: {'ok' if ok else 'failed'}")
        return _action_response(ok)

    @app.post("/transfer", response_model=ActionResponse)
    async def transfer(req: TransferRequest, generation: Optional[int] = Query(None)):
        if not Web3.is_address(req.to):
            raise HTTPException(422, "Invalid recipient address")
        if not controller.can_operate(generation):
            raise _closed("transfer")
        ok = await controller.transfer(Web3.to_checksum_address(req.to), req.amount, generation)
        logger.info(f"TRANSFER {req.amount} → {req.to[:10]}...: {'ok' if ok else 'failed'}")
        return _action_response(ok)

    return app
