"""
Oracle — REST API Server
FastAPI app exposing screenshot scanning, the Oracle chat, linked-account
management and game-data backup.

Run: uvicorn outputs.dashboard:app --port 8080
"""
import asyncio
import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config.settings import config
from memory.kv_store import StorageError
from orchestrator.gateway import GatewayError, encode_image
from orchestrator.normalizer import AUTO, ENTITY_KINDS
from orchestrator.prompt_builder import CONTEXTS

logger = logging.getLogger("oracle.dashboard")

# ============================================================
# Authentication
# ============================================================

_ORACLE_API_KEY = config.outputs.api_key


async def verify_api_key(x_oracle_key: str = Header(None, alias="X-Oracle-Key")):
    """Validate API key from X-Oracle-Key header."""
    if not _ORACLE_API_KEY:
        logger.error("ORACLE_API_KEY not configured — API disabled")
        raise HTTPException(
            status_code=503,
            detail="API key not configured — service disabled",
        )
    if x_oracle_key != _ORACLE_API_KEY:
        raise HTTPException(
            status_code=401,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": "X-Oracle-Key"},
        )


# ============================================================
# Logging — must be module-level so uvicorn outputs.dashboard:app picks it up
# ============================================================
logging.basicConfig(
    level=logging.DEBUG if config.debug else logging.INFO,
    format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
)

# ============================================================
# App setup
# ============================================================

app = FastAPI(
    title="Oracle API",
    description="Screenshot extraction, strategy chat and linked accounts for the Oracle companion app",
    version="1.0.0",
)

# CORS — restricted to known origins
_allowed_origins = [
    o.strip()
    for o in config.outputs.allowed_origins.split(",")
    if o.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE"],
    allow_headers=["Content-Type", "X-Oracle-Key"],
)


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    """Any unhandled storage failure, including opening the store, is a 503."""
    logger.error(f"Storage failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=503, content={"detail": f"Storage unavailable: {exc}"})

# ============================================================
# Singletons (initialized lazily)
# ============================================================

_kv = None
_ledger = None
_game_store = None
_assistant = None


def _get_kv():
    """Lazy-initialize the key-value store."""
    global _kv
    if _kv is None:
        from memory.kv_store import get_store
        _kv = get_store()
    return _kv


def _get_ledger():
    global _ledger
    if _ledger is None:
        from account_client import AccountServiceClient
        from memory.account_ledger import AccountLedger
        _ledger = AccountLedger(_get_kv(), AccountServiceClient._get_global_instance())
    return _ledger


def _get_game_store():
    global _game_store
    if _game_store is None:
        from memory.game_store import GameStore
        _game_store = GameStore(_get_kv())
    return _game_store


def _get_assistant():
    global _assistant
    if _assistant is None:
        from orchestrator.assistant import OracleAssistant
        _assistant = OracleAssistant(game_store=_get_game_store(), ledger=_get_ledger())
    return _assistant


# ============================================================
# Request models
# ============================================================

class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=8000)
    context: str = Field("general", pattern=rf"^({'|'.join(CONTEXTS)})$")
    model: Optional[str] = None
    image: Optional[str] = None        # data URL or bare base64
    multi: bool = False                # fan out to the selected models


class AddAccountRequest(BaseModel):
    display_name: Optional[str] = Field(None, max_length=200)
    external_user_id: Optional[str] = None
    auth_token: Optional[str] = None


class ImportRequest(BaseModel):
    data: str = Field(..., min_length=2)


def _storage_failure(e: StorageError):
    logger.error(f"Storage failure: {e}")
    return HTTPException(status_code=503, detail=f"Storage unavailable: {e}")


# ============================================================
# Scan + chat
# ============================================================

@app.post("/api/scan", tags=["scan"], dependencies=[Depends(verify_api_key)])
async def scan_screenshot(
    file: UploadFile = File(...),
    expected_kind: str = Form(AUTO, description="hero, equipment, building, profile, inventory or auto"),
    save: bool = Form(False, description="Store the extracted entity"),
):
    """Extract game data from one screenshot."""
    if expected_kind != AUTO and expected_kind not in ENTITY_KINDS:
        raise HTTPException(400, f"Invalid expected_kind: {expected_kind}")
    if not (file.content_type or "").startswith("image/"):
        raise HTTPException(400, f"Unsupported file type: {file.content_type}")

    raw = await file.read()
    if not raw:
        raise HTTPException(400, "Empty upload")
    if len(raw) > config.outputs.max_upload_bytes:
        raise HTTPException(413, "Image too large")

    assistant = _get_assistant()
    result = await asyncio.to_thread(
        assistant.analyze_screenshot, encode_image(raw, file.content_type), expected_kind,
    )

    saved = None
    if save and result.succeeded:
        try:
            entity = assistant.apply_extraction(result)
        except StorageError as e:
            raise _storage_failure(e)
        saved = entity.to_dict() if entity else None

    return {"result": result.to_dict(), "saved": saved}


@app.post("/api/chat", tags=["chat"], dependencies=[Depends(verify_api_key)])
async def chat(req: ChatRequest):
    assistant = _get_assistant()
    try:
        if req.multi:
            answers = await asyncio.to_thread(assistant.chat_multi, req.message, req.image, req.context)
        else:
            text = await asyncio.to_thread(
                assistant.chat, req.message, req.image, req.context, req.model,
            )
            answers = [{"model": req.model or config.gateway.default_model, "response": text}]
    except GatewayError as e:
        raise HTTPException(status_code=502, detail=f"Gateway error: {e}")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not answers:
        raise HTTPException(status_code=502, detail="No model answered")
    return {"answers": answers}


# ============================================================
# Linked accounts
# ============================================================

@app.get("/api/accounts", tags=["accounts"], dependencies=[Depends(verify_api_key)])
async def list_accounts():
    accounts = _get_ledger().list()
    return {"accounts": [a.public_dict() for a in accounts], "count": len(accounts)}


@app.post("/api/accounts", tags=["accounts"], status_code=201, dependencies=[Depends(verify_api_key)])
async def add_account(req: AddAccountRequest):
    try:
        account = await asyncio.to_thread(
            _get_ledger().add, req.display_name, req.external_user_id, req.auth_token,
        )
    except StorageError as e:
        raise _storage_failure(e)
    return account.public_dict()


@app.post("/api/accounts/{account_id}/activate", tags=["accounts"], dependencies=[Depends(verify_api_key)])
async def activate_account(account_id: str):
    try:
        if not _get_ledger().set_active(account_id):
            raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    except StorageError as e:
        raise _storage_failure(e)
    return {"status": "activated", "id": account_id}


@app.delete("/api/accounts/{account_id}", tags=["accounts"], dependencies=[Depends(verify_api_key)])
async def remove_account(account_id: str):
    try:
        if not _get_ledger().remove(account_id):
            raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    except StorageError as e:
        raise _storage_failure(e)
    return {"status": "removed", "id": account_id}


@app.post("/api/accounts/{account_id}/refresh", tags=["accounts"], dependencies=[Depends(verify_api_key)])
async def refresh_account(account_id: str):
    ledger = _get_ledger()
    if ledger.get(account_id) is None:
        raise HTTPException(status_code=404, detail=f"Account {account_id} not found")
    try:
        account = await asyncio.to_thread(ledger.refresh, account_id)
    except StorageError as e:
        raise _storage_failure(e)
    if account is None:
        # Last-known values are still valid; tell the client they are stale
        return {"refreshed": False, "account": ledger.account_info(account_id)}
    return {"refreshed": True, "account": ledger.account_info(account_id)}


@app.get("/api/account-info", tags=["accounts"], dependencies=[Depends(verify_api_key)])
async def account_info(account_id: Optional[str] = None):
    info = _get_ledger().account_info(account_id)
    if info is None:
        raise HTTPException(status_code=404, detail="No linked account")
    return info


# ============================================================
# Backup
# ============================================================

@app.get("/api/export", tags=["backup"], dependencies=[Depends(verify_api_key)])
async def export_data():
    return {"data": _get_game_store().export_all()}


@app.post("/api/import", tags=["backup"], dependencies=[Depends(verify_api_key)])
async def import_data(req: ImportRequest):
    try:
        ok = _get_game_store().import_all(req.data)
    except StorageError as e:
        raise _storage_failure(e)
    if not ok:
        raise HTTPException(status_code=400, detail="Backup is not valid JSON game data")
    return {"status": "imported"}


@app.get("/api/health", tags=["health"])
async def health():
    return {"status": "ok"}


# ============================================================
# CLI runner
# ============================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "outputs.dashboard:app",
        host="0.0.0.0",
        port=8080,
        reload=config.debug,
        log_level="info",
    )
