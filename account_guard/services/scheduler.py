# account_guard/services/scheduler.py
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional
from fastapi import FastAPI

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from account_guard.core.config import settings
from account_guard.db.session import get_db
from account_guard.services.maintenance import run_sweep
from account_guard.services.rate_limit import close_redis

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None

@asynccontextmanager
async def lifespan_scheduler(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    FastAPI lifespan：啟動 / 關閉 APScheduler。
    SWEEP_ENABLED=false（測試環境）時不啟動排程。
    """
    global scheduler
    if settings.SWEEP_ENABLED:
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(run_sweep_job, IntervalTrigger(minutes=settings.SWEEP_INTERVAL_MINUTES))
        scheduler.start()
        logger.info("APScheduler started: sweep every %s minutes", settings.SWEEP_INTERVAL_MINUTES)
    try:
        yield
    finally:
        if scheduler:
            scheduler.shutdown(wait=False)
            scheduler = None
            logger.info("APScheduler shutdown")
        await close_redis()

async def run_sweep_job():
    """排程作業：建立一次性 DB session 執行清理與對帳。"""
    agen = get_db()  # async generator
    db = await agen.__anext__()  # 取得 AsyncSession
    try:
        result = await run_sweep(db)
        logger.info("Sweep done: %s", result.as_dict())
    except Exception as e:
        # run_sweep 已 rollback；排程不因單次失敗而中止
        logger.exception("Sweep failed: %s", e)
    finally:
        await agen.aclose()
