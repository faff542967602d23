# account_guard/services/rate_limit.py
from __future__ import annotations

import time
from typing import Optional, Tuple

from redis.asyncio import Redis
from account_guard.core.config import settings as _settings

# ---- 參數（帶防呆預設，避免 CI / 測試漏 env 時爆掉）----
REDIS_URL: str = getattr(_settings, "REDIS_URL", "redis://localhost:6379/0")
WINDOW_SEC: int = int(getattr(_settings, "RATE_LIMIT_WINDOW_SEC", 600))
MAX_PER_IP: int = int(getattr(_settings, "RATE_LIMIT_MAX_PER_IP", 200))
MAX_PER_EMAIL_IP: int = int(getattr(_settings, "RATE_LIMIT_MAX_PER_EMAIL_IP", 50))

APPEAL_WINDOW_SEC: int = 3600

# 單例 Redis（lazy-init）
_redis: Optional[Redis] = None


def _enabled() -> bool:
    """每次呼叫時讀設定；測試環境（ENV=test）在 get_settings 已關閉。"""
    return bool(getattr(_settings, "RATE_LIMIT_ENABLED", False))


def _get_redis() -> Redis:
    """Lazy 初始化 Redis 連線。aioredis>=2 已合併到 redis-py（redis.asyncio）。"""
    if not _enabled():
        # 停用時理論上不應呼叫；若被誤用，明確拋錯幫助定位
        raise RuntimeError("Rate limit is disabled in current environment")
    global _redis
    if _redis is None:
        _redis = Redis.from_url(
            REDIS_URL,
            encoding="utf-8",
            decode_responses=True,  # 用字串便於除錯
        )
    return _redis


def _key_ip(ip: str) -> str:
    return f"rl:login:ip:{ip or 'unknown'}"


def _key_email_ip(email: str, ip: str) -> str:
    return f"rl:login:ei:{(email or '').lower()}|{ip or 'unknown'}"


def _key_appeal(user_id: int) -> str:
    return f"rl:appeal:user:{user_id}"


async def _prune(redis: Redis, key: str, now_s: float, window: int) -> None:
    """移除滑動視窗外的紀錄（score < now - window）。"""
    await redis.zremrangebyscore(key, "-inf", now_s - window)


async def _count(redis: Redis, key: str) -> int:
    return int(await redis.zcard(key))


async def _oldest_ts(redis: Redis, key: str) -> Optional[float]:
    """取得窗口內最舊嘗試的時間戳（若無則 None）。"""
    data = await redis.zrange(key, 0, 0, withscores=True)
    if data:
        # 形式 [(member, score)]，score 為 epoch 秒
        return float(data[0][1])
    return None


async def _hit(redis: Redis, key: str, now_s: float, window: int) -> None:
    """記錄一次嘗試（ZSET，score=now），並讓 key 隨視窗自動過期。"""
    member = f"{now_s:.6f}"
    await redis.zadd(key, {member: now_s})
    await redis.expire(key, window)


async def _over_limit(redis: Redis, key: str, now_s: float, window: int, limit: int) -> Tuple[bool, int]:
    await _prune(redis, key, now_s, window)
    if await _count(redis, key) >= limit:
        oldest = await _oldest_ts(redis, key)
        retry_after = max(1, int(window - (now_s - (oldest or now_s))))
        return True, retry_after
    return False, 0


async def check_limit_and_hit(ip: str, email: Optional[str]) -> Tuple[bool, int]:
    """
    登入限流；若允許，會「順便記一次嘗試」。
    回傳：(allowed, retry_after_seconds)
      先看 IP 維度，再看 email+IP 維度。
    """
    if not _enabled():
        return True, 0

    r = _get_redis()
    now_s = time.time()

    over, retry = await _over_limit(r, _key_ip(ip), now_s, WINDOW_SEC, MAX_PER_IP)
    if over:
        return False, retry

    if email:
        over, retry = await _over_limit(r, _key_email_ip(email, ip), now_s, WINDOW_SEC, MAX_PER_EMAIL_IP)
        if over:
            return False, retry

    await _hit(r, _key_ip(ip), now_s, WINDOW_SEC)
    if email:
        await _hit(r, _key_email_ip(email, ip), now_s, WINDOW_SEC)

    return True, 0


async def reset_success(ip: str, email: Optional[str]) -> None:
    """
    登入成功後清空 email+IP 的桶，降低誤鎖風險。
    IP 維度不清空，保留反掃號的保護力。
    """
    if not email or not _enabled():
        return
    r = _get_redis()
    await r.delete(_key_email_ip(email, ip))


async def check_appeal_limit_and_hit(user_id: int) -> Tuple[bool, int]:
    """申訴送出限流：每位使用者每小時 APPEAL_MAX_PER_HOUR 次。"""
    if not _enabled():
        return True, 0
    r = _get_redis()
    now_s = time.time()
    key = _key_appeal(user_id)
    over, retry = await _over_limit(r, key, now_s, APPEAL_WINDOW_SEC, int(_settings.APPEAL_MAX_PER_HOUR))
    if over:
        return False, retry
    await _hit(r, key, now_s, APPEAL_WINDOW_SEC)
    return True, 0


async def close_redis() -> None:
    global _redis
    if _redis is not None:
        await _redis.aclose()
        _redis = None
