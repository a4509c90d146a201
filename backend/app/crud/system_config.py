"""CRUD operations for key/value system configuration."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.system_config import SystemConfig


async def get_config_values(db: AsyncSession, tenant_id: str, prefix: str = "") -> dict[str, str]:
    """
    Load configuration rows as a key -> raw value mapping.

    Args:
        db: Database session
        tenant_id: Tenant identifier
        prefix: Only return keys starting with this prefix

    Returns:
        Mapping of key to stored string value
    """
    query = select(SystemConfig).where(SystemConfig.tenant_id == tenant_id)
    if prefix:
        query = query.where(SystemConfig.key.startswith(prefix))
    result = await db.execute(query)
    return {row.key: row.value for row in result.scalars()}


async def set_config_value(
    db: AsyncSession,
    tenant_id: str,
    key: str,
    value: str,
    updated_by: str,
    description: str | None = None,
) -> SystemConfig:
    """Insert or overwrite one configuration row."""
    result = await db.execute(
        select(SystemConfig).where(SystemConfig.tenant_id == tenant_id, SystemConfig.key == key)
    )
    row = result.scalar_one_or_none()
    if row is None:
        row = SystemConfig(
            tenant_id=tenant_id,
            key=key,
            value=value,
            description=description,
            updated_by=updated_by,
        )
        db.add(row)
    else:
        row.value = value
        row.updated_by = updated_by
        if description is not None:
            row.description = description
    await db.flush()
    return row
