# account_guard/api/v1/endpoints/health.py
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.db.session import get_db

router = APIRouter()

@router.get("/", summary="Health check")
async def health_root():
    return {"status": "ok"}

@router.get("/db", summary="Database connectivity")
async def health_db(db: AsyncSession = Depends(get_db)):
    await db.execute(text("SELECT 1"))
    return {"status": "ok", "database": "reachable"}
