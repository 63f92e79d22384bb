"""Gift catalog and persisted gift history."""
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse

from relay.core.errors import LedgerDisabled
from relay.db.schemas import GiftLedgerOut
from relay.services.relay_state import get_ledger
from upstream.gifts import sorted_by_value
from upstream.normalize import normalize_username

router = APIRouter(prefix="/gifts", tags=["gifts"])


@router.get("/catalog")
async def catalog(category: Optional[str] = None):
    gifts = [g.as_dict() for g in sorted_by_value(category)]
    return {"success": True, "gifts": gifts, "count": len(gifts)}


@router.get("/{username}/history")
async def history(username: str, limit: int = Query(100, ge=1, le=1000)):
    name = normalize_username(username)
    if not name:
        return JSONResponse(status_code=400, content={"success": False, "error": "Username required", "username": ""})
    try:
        rows = await get_ledger().history(name, limit=limit)
    except LedgerDisabled as e:
        return JSONResponse(status_code=503, content={"success": False, "error": str(e), "username": name})
    gifts = [GiftLedgerOut.model_validate(r).model_dump(by_alias=True, mode="json") for r in rows]
    return {"success": True, "gifts": gifts, "username": name}
