# account_guard/api/v1/endpoints/ping.py
from fastapi import APIRouter

from account_guard.core.security import utcnow

router = APIRouter()

@router.get("/", summary="Ping service")
async def ping():
    return {"message": "pong", "server_time": utcnow().isoformat()}
