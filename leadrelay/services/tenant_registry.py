"""
Tenant registry - resolves a tenant key or an inbound phone number to a TenantConfig.

Reads go through a Redis cache with a short TTL so webhook handlers don't hit
the database on every delivery. Administrative updates invalidate the cache,
so changed config applies to the next lookup without a restart.

Not found is a normal outcome (unknown number, disabled tenant): callers get
None, log it, and acknowledge the provider.
"""
import json
import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from leadrelay.models.tenant import Tenant
from leadrelay.schemas.tenant_config import TenantConfig, VoiceConfig, SmsConfig
from leadrelay.utils.logging import mask_phone

logger = logging.getLogger(__name__)

CACHE_PREFIX = "leadrelay:tenant"
_MISS = ""  # cached sentinel for "no such tenant"


def _key_cache_key(key: str) -> str:
    return f"{CACHE_PREFIX}:key:{key}"


def _number_cache_key(number: str) -> str:
    return f"{CACHE_PREFIX}:number:{number}"


def to_tenant_config(tenant: Tenant) -> TenantConfig:
    return TenantConfig(
        id=tenant.id,
        key=tenant.key,
        display_name=tenant.display_name,
        timezone=tenant.timezone or "Europe/London",
        voice=VoiceConfig(
            assistant_id=tenant.voice_assistant_id,
            phone_number_id=tenant.voice_phone_number_id,
        ),
        sms=SmsConfig(
            from_number=tenant.sms_from_number,
            messaging_service_sid=tenant.sms_messaging_service_sid,
        ),
        calendar_id=tenant.calendar_id,
        booking_link=tenant.booking_link,
        templates=tenant.templates or {},
        feature_flags=tenant.feature_flags or {},
        is_active=tenant.is_active,
    )


async def _cache_get(cache_key: str) -> tuple[bool, Optional[TenantConfig]]:
    """Returns (hit, config). A hit with config None is a cached miss."""
    try:
        from leadrelay.utils.dedup import get_redis
        redis = await get_redis()
        cached = await redis.get(cache_key)
    except Exception as e:
        logger.debug("Tenant cache read failed: %s", str(e))
        return False, None

    if cached is None or not isinstance(cached, (str, bytes)):
        return False, None
    if cached == _MISS:
        return True, None
    try:
        return True, TenantConfig.model_validate(json.loads(cached))
    except (ValueError, TypeError):
        return False, None


async def _cache_set(cache_key: str, config: Optional[TenantConfig]) -> None:
    try:
        from leadrelay.config import get_settings
        from leadrelay.utils.dedup import get_redis
        redis = await get_redis()
        value = config.model_dump_json() if config else _MISS
        await redis.set(cache_key, value, ex=get_settings().tenant_cache_ttl_seconds)
    except Exception as e:
        logger.warning("Failed to cache tenant config: %s", str(e))


async def _resolve(db: AsyncSession, cache_key: str, clause) -> Optional[TenantConfig]:
    hit, config = await _cache_get(cache_key)
    if hit:
        return config

    result = await db.execute(select(Tenant).where(clause).limit(1))
    tenant = result.scalar_one_or_none()
    config = to_tenant_config(tenant) if tenant and tenant.is_active else None

    await _cache_set(cache_key, config)
    return config


async def resolve_tenant(db: AsyncSession, key: str) -> Optional[TenantConfig]:
    """Resolve a tenant by its key. Disabled tenants resolve as None."""
    if not key:
        return None
    config = await _resolve(db, _key_cache_key(key), Tenant.key == key)
    if config is None:
        logger.info("Tenant not found: key=%s", key)
    return config


async def resolve_tenant_by_inbound_number(
    db: AsyncSession,
    number: str,
) -> Optional[TenantConfig]:
    """Resolve the tenant that owns an inbound SMS number (E.164)."""
    if not number:
        return None
    config = await _resolve(db, _number_cache_key(number), Tenant.sms_from_number == number)
    if config is None:
        logger.info("No tenant owns inbound number %s", mask_phone(number))
    return config


async def invalidate_tenant(key: str, sms_from_number: Optional[str] = None) -> None:
    """Drop cached entries for a tenant. Call after any config change."""
    keys = [_key_cache_key(key)]
    if sms_from_number:
        keys.append(_number_cache_key(sms_from_number))
    try:
        from leadrelay.utils.dedup import get_redis
        redis = await get_redis()
        await redis.delete(*keys)
        logger.info("Tenant cache invalidated for %s", key)
    except Exception as e:
        logger.warning("Failed to invalidate tenant cache for %s: %s", key, str(e))


async def update_tenant(db: AsyncSession, key: str, **changes) -> Optional[TenantConfig]:
    """
    Administrative update of a tenant's configuration.
    Unknown attribute names raise ValueError. Returns the fresh config.

    Commits the session, then invalidates the cache, so the next lookup
    reads the committed row rather than re-caching the old one.
    """
    result = await db.execute(select(Tenant).where(Tenant.key == key).limit(1))
    tenant = result.scalar_one_or_none()
    if tenant is None:
        return None

    for attr in changes:
        if attr in ("id", "key") or not hasattr(Tenant, attr):
            raise ValueError(f"Unknown tenant attribute: {attr}")

    old_number = tenant.sms_from_number
    for attr, value in changes.items():
        setattr(tenant, attr, value)
    await db.commit()

    await invalidate_tenant(key, old_number)
    if tenant.sms_from_number and tenant.sms_from_number != old_number:
        await invalidate_tenant(key, tenant.sms_from_number)

    logger.info("Tenant %s updated: %s", key, ", ".join(sorted(changes)))
    return to_tenant_config(tenant)
