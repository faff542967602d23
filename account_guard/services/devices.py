# account_guard/services/devices.py
"""
裝置 / session 管理：
  - 每次登入記錄一筆 user_devices（即 session，JWT 內的 sid 指向它）
  - 「記住此裝置」的 trusted device token，可略過 2FA
  - 依角色限制同時登入數，超過時踢掉最久沒用的 session
"""
import ipaddress
import logging
import re
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import httpx
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from account_guard.core.config import settings
from account_guard.core.errors import NotFoundError
from account_guard.core.security import (
    device_fingerprint,
    generate_token,
    hash_token,
    tokens_match,
    utcnow,
)
from account_guard.models.devices import TrustedDevice, UserDevice

logger = logging.getLogger(__name__)

# ---- User-Agent 解析（只取裝置識別需要的欄位）----
_BROWSERS = (
    ("Edge", re.compile(r"Edg(?:e|A|iOS)?/([\d.]+)")),
    ("Opera", re.compile(r"(?:OPR|Opera)/([\d.]+)")),
    ("Firefox", re.compile(r"(?:Firefox|FxiOS)/([\d.]+)")),
    ("Chrome", re.compile(r"(?:Chrome|CriOS)/([\d.]+)")),
    ("Safari", re.compile(r"Version/([\d.]+).*Safari/")),
)
_PLATFORMS = (
    ("iOS", re.compile(r"(?:iPhone|iPad|iPod).*? OS ([\d_]+)")),
    ("Android", re.compile(r"Android ([\d.]+)")),
    ("Windows", re.compile(r"Windows NT ([\d.]+)")),
    ("OS X", re.compile(r"Mac OS X ([\d_.]+)")),
    ("Linux", re.compile(r"Linux()")),
)
_BOT_RE = re.compile(r"bot|crawler|spider|curl|wget|python-requests|httpx", re.IGNORECASE)
_TABLET_RE = re.compile(r"iPad|Tablet|Android(?!.*Mobile)", re.IGNORECASE)
_MOBILE_RE = re.compile(r"Mobile|iPhone|iPod|Android", re.IGNORECASE)


def parse_user_agent(user_agent: Optional[str]) -> Dict[str, str]:
    ua = user_agent or ""
    browser, browser_version = "Unknown", ""
    for name, pattern in _BROWSERS:
        m = pattern.search(ua)
        if m:
            browser, browser_version = name, m.group(1)
            break

    platform, platform_version = "Unknown", ""
    for name, pattern in _PLATFORMS:
        m = pattern.search(ua)
        if m:
            platform, platform_version = name, m.group(1).replace("_", ".")
            break

    if _BOT_RE.search(ua):
        device_type = "robot"
    elif _TABLET_RE.search(ua):
        device_type = "tablet"
    elif _MOBILE_RE.search(ua):
        device_type = "mobile"
    else:
        device_type = "desktop"

    return {
        "browser": browser,
        "browser_version": browser_version,
        "platform": platform,
        "platform_version": platform_version,
        "device_type": device_type,
    }


def generate_device_id(user_agent: Optional[str], ip: Optional[str]) -> str:
    """sha256(browser|版本|平台|版本|ip)；同一瀏覽器換 IP 視為新裝置。"""
    info = parse_user_agent(user_agent)
    return hash_token(
        "|".join([
            info["browser"], info["browser_version"],
            info["platform"], info["platform_version"],
            ip or "",
        ])
    )


# ---- 地理位置（選用；失敗一律忽略）----
_location_cache: "OrderedDict[str, Tuple[Optional[str], Optional[str]]]" = OrderedDict()


def _is_local_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return addr.is_loopback or addr.is_private


async def lookup_location(ip: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """回傳 (country, city)。本機 / 內網 IP 回 Local；只快取成功的查詢（LRU，最多 GEOIP_CACHE_SIZE 筆）。"""
    if not ip:
        return None, None
    if _is_local_ip(ip):
        return "Local", "Local"
    if not settings.GEOIP_ENABLED:
        return None, None
    if ip in _location_cache:
        _location_cache.move_to_end(ip)
        return _location_cache[ip]

    try:
        async with httpx.AsyncClient(timeout=settings.GEOIP_TIMEOUT_SEC) as client:
            resp = await client.get(settings.GEOIP_URL.format(ip=ip))
            resp.raise_for_status()
            data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Geolocation lookup failed for %s: %s", ip, e)
        return None, None

    if data.get("status") != "success":
        return None, None
    result = (data.get("country"), data.get("city"))
    _location_cache[ip] = result
    while len(_location_cache) > max(1, settings.GEOIP_CACHE_SIZE):
        _location_cache.popitem(last=False)
    return result


# ---- Sessions ----
async def _find_device(db: AsyncSession, user_id: int, device_id: str) -> Optional[UserDevice]:
    res = await db.execute(
        select(UserDevice).where(UserDevice.user_id == user_id, UserDevice.device_id == device_id)
    )
    return res.scalar_one_or_none()


def _refresh(device: UserDevice, info: Dict[str, str], ip: Optional[str], location, now: datetime) -> None:
    device.device_type = info["device_type"]
    device.browser = info["browser"]
    device.platform = info["platform"]
    device.ip_address = ip
    device.country, device.city = location
    device.last_used_at = now
    # 重新登入讓被撤銷的 session 復活，並換新版本讓撤銷前簽發的 token 維持失效
    if device.revoked_at is not None:
        device.session_version = (device.session_version or 1) + 1
    device.revoked_at = None


async def record_login(
    db: AsyncSession,
    user_id: int,
    *,
    user_agent: Optional[str],
    ip: Optional[str],
    device_fingerprint_hint: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UserDevice:
    """
    依 (user_id, device_id) upsert 裝置紀錄。
    兩個請求同時 INSERT 時，慢的一方撞 unique constraint 後改走 UPDATE。
    """
    now = now or utcnow()
    device_id = device_fingerprint_hint or generate_device_id(user_agent, ip)
    info = parse_user_agent(user_agent)
    location = await lookup_location(ip)

    device = await _find_device(db, user_id, device_id)
    if device is None:
        device = UserDevice(
            user_id=user_id, device_id=device_id, is_trusted=False, session_version=1, created_at=now
        )
        _refresh(device, info, ip, location, now)
        db.add(device)
        try:
            await db.commit()
            return device
        except IntegrityError:
            await db.rollback()
            logger.info("Device insert raced, updating existing: user_id=%s", user_id)
            device = await _find_device(db, user_id, device_id)
            if device is None:
                raise

    _refresh(device, info, ip, location, now)
    try:
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return device


async def get_session(db: AsyncSession, session_id: int) -> Optional[UserDevice]:
    return await db.get(UserDevice, session_id)


async def touch_session(db: AsyncSession, device: UserDevice, now: Optional[datetime] = None) -> None:
    """更新 last_used_at（一分鐘內不重複寫）。"""
    now = now or utcnow()
    if device.last_used_at and now - device.last_used_at < timedelta(minutes=1):
        return
    device.last_used_at = now
    await db.commit()


async def list_devices(db: AsyncSession, user_id: int, include_revoked: bool = False) -> List[UserDevice]:
    q = select(UserDevice).where(UserDevice.user_id == user_id)
    if not include_revoked:
        q = q.where(UserDevice.revoked_at.is_(None))
    res = await db.execute(q.order_by(UserDevice.last_used_at.desc(), UserDevice.id.desc()))
    return list(res.scalars().all())


async def enforce_session_limit(
    db: AsyncSession, user_id: int, role_limit: int, now: Optional[datetime] = None
) -> List[int]:
    """
    保留最近使用的 role_limit 個 session，其餘撤銷，回傳被踢掉的 id。
    先讀再寫，並行登入時可能短暫超過上限，下一次登入會再收斂。
    """
    now = now or utcnow()
    limit = max(0, int(role_limit))
    res = await db.execute(
        select(UserDevice)
        .where(UserDevice.user_id == user_id, UserDevice.revoked_at.is_(None))
        .order_by(
            UserDevice.last_used_at.desc(),
            UserDevice.created_at.desc(),
            UserDevice.id.desc(),
        )
    )
    active = list(res.scalars().all())
    evicted = active[limit:]
    if not evicted:
        return []

    evicted_ids = [d.id for d in evicted]
    try:
        for d in evicted:
            d.revoked_at = now
            d.is_trusted = False
        await db.execute(delete(TrustedDevice).where(TrustedDevice.user_device_id.in_(evicted_ids)))
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info("Session limit enforced: user_id=%s limit=%s evicted=%s", user_id, limit, evicted_ids)
    return evicted_ids


async def revoke_device(
    db: AsyncSession, user_id: int, device_record_id: int, now: Optional[datetime] = None
) -> UserDevice:
    now = now or utcnow()
    device = await db.get(UserDevice, device_record_id)
    if device is None or device.user_id != user_id:
        raise NotFoundError("Device not found")
    try:
        device.revoked_at = device.revoked_at or now
        device.is_trusted = False
        await db.execute(delete(TrustedDevice).where(TrustedDevice.user_device_id == device.id))
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return device


async def revoke_all_except_current(
    db: AsyncSession, user_id: int, current_session_id: Optional[int], now: Optional[datetime] = None
) -> int:
    """登出其他所有裝置；回傳撤銷數量。"""
    now = now or utcnow()
    conds = [UserDevice.user_id == user_id, UserDevice.revoked_at.is_(None)]
    if current_session_id is not None:
        conds.append(UserDevice.id != current_session_id)

    try:
        ids = list((await db.execute(select(UserDevice.id).where(*conds))).scalars().all())
        if ids:
            await db.execute(
                update(UserDevice)
                .where(UserDevice.id.in_(ids))
                .values(revoked_at=now, is_trusted=False)
                .execution_options(synchronize_session="fetch")
            )
            await db.execute(delete(TrustedDevice).where(TrustedDevice.user_device_id.in_(ids)))
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return len(ids)


async def remove_inactive_devices(
    db: AsyncSession,
    user_id: Optional[int] = None,
    days: Optional[int] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> int:
    """刪除超過 days 天未使用、且未被信任的裝置紀錄。"""
    now = now or utcnow()
    cutoff = now - timedelta(days=days or settings.INACTIVE_DEVICE_DAYS)
    q = delete(UserDevice).where(UserDevice.is_trusted.is_(False), UserDevice.last_used_at < cutoff)
    if user_id is not None:
        q = q.where(UserDevice.user_id == user_id)
    res = await db.execute(q.execution_options(synchronize_session=False))
    if commit:
        await db.commit()
    return res.rowcount or 0


# ---- Trusted devices ----
async def mark_trusted(
    db: AsyncSession,
    device_record_id: int,
    *,
    user_agent: Optional[str],
    ip: Optional[str],
    device_name: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Tuple[TrustedDevice, str]:
    """產生 remember token（只存 hash），回傳 (紀錄, 明文 token)。"""
    now = now or utcnow()
    device = await db.get(UserDevice, device_record_id)
    if device is None:
        raise NotFoundError("Device not found")

    raw = generate_token()
    trusted = TrustedDevice(
        user_id=device.user_id,
        user_device_id=device.id,
        token_hash=hash_token(raw),
        fingerprint=device_fingerprint(user_agent, ip),
        device_name=device_name or f"{device.browser or 'Unknown'} on {device.platform or 'Unknown'}",
        ip_address=ip,
        expires_at=now + timedelta(days=settings.TRUSTED_DEVICE_DAYS),
        created_at=now,
    )
    try:
        device.is_trusted = True
        device.verified_at = now
        db.add(trusted)
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return trusted, raw


async def is_device_trusted(
    db: AsyncSession,
    user_id: int,
    raw_token: Optional[str],
    *,
    user_agent: Optional[str],
    ip: Optional[str],
    now: Optional[datetime] = None,
) -> bool:
    """
    token 正確、未過期、且指紋（UA + IP）相符才算信任。
    指紋不符視為 token 外流：刪除該筆信任紀錄並記 warning。
    """
    if not raw_token:
        return False
    now = now or utcnow()
    res = await db.execute(
        select(TrustedDevice).where(
            TrustedDevice.user_id == user_id,
            TrustedDevice.token_hash == hash_token(raw_token),
        )
    )
    trusted = res.scalar_one_or_none()
    if trusted is None or not tokens_match(raw_token, trusted.token_hash):
        return False
    if trusted.expires_at <= now:
        return False

    if trusted.fingerprint and trusted.fingerprint != device_fingerprint(user_agent, ip):
        logger.warning(
            "Trusted device fingerprint mismatch, revoking: user_id=%s trusted_id=%s ip=%s",
            user_id, trusted.id, ip,
        )
        await db.delete(trusted)
        await db.commit()
        return False

    trusted.last_used_at = now
    await db.commit()
    return True


async def list_trusted_devices(
    db: AsyncSession, user_id: int, now: Optional[datetime] = None
) -> List[TrustedDevice]:
    now = now or utcnow()
    res = await db.execute(
        select(TrustedDevice)
        .where(TrustedDevice.user_id == user_id, TrustedDevice.expires_at > now)
        .order_by(TrustedDevice.created_at.desc())
    )
    return list(res.scalars().all())


async def revoke_trusted_device(db: AsyncSession, user_id: int, trusted_id: int) -> None:
    trusted = await db.get(TrustedDevice, trusted_id)
    if trusted is None or trusted.user_id != user_id:
        raise NotFoundError("Trusted device not found")
    await db.delete(trusted)
    await db.commit()


async def revoke_trusted_devices(db: AsyncSession, user_id: int, commit: bool = True) -> int:
    res = await db.execute(
        delete(TrustedDevice)
        .where(TrustedDevice.user_id == user_id)
        .execution_options(synchronize_session=False)
    )
    await db.execute(
        update(UserDevice)
        .where(UserDevice.user_id == user_id)
        .values(is_trusted=False)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await db.commit()
    return res.rowcount or 0


async def purge_expired_trusted_devices(
    db: AsyncSession, now: Optional[datetime] = None, commit: bool = True
) -> int:
    now = now or utcnow()
    res = await db.execute(
        delete(TrustedDevice)
        .where(TrustedDevice.expires_at <= now)
        .execution_options(synchronize_session=False)
    )
    if commit:
        await db.commit()
    return res.rowcount or 0
