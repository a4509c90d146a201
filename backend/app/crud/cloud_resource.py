"""CRUD operations for the cloud resource inventory."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.cloud_resource import CloudResource
from app.schemas.resource import CloudResourceCreate


async def upsert_resource(
    db: AsyncSession, tenant_id: str, resource_in: CloudResourceCreate
) -> CloudResource:
    """
    Insert a resource snapshot or refresh the existing row for the same resource.

    Args:
        db: Database session
        tenant_id: Tenant owning the resource
        resource_in: Ingested resource snapshot

    Returns:
        Created or updated resource object
    """
    resource = await get_resource(db, tenant_id, resource_in.resource_id)
    if resource is None:
        resource = CloudResource(tenant_id=tenant_id, **resource_in.model_dump())
        db.add(resource)
    else:
        for field, value in resource_in.model_dump().items():
            setattr(resource, field, value)
    await db.flush()
    return resource


async def bulk_upsert_resources(
    db: AsyncSession, tenant_id: str, resources_in: list[CloudResourceCreate]
) -> list[CloudResource]:
    """Upsert a batch of ingested snapshots."""
    return [await upsert_resource(db, tenant_id, r) for r in resources_in]


async def get_resource(db: AsyncSession, tenant_id: str, resource_id: str) -> CloudResource | None:
    """
    Get a resource by its provider identifier.

    Args:
        db: Database session
        tenant_id: Tenant identifier
        resource_id: Provider resource identifier

    Returns:
        Resource object or None if not found
    """
    result = await db.execute(
        select(CloudResource).where(
            CloudResource.tenant_id == tenant_id,
            CloudResource.resource_id == resource_id,
        )
    )
    return result.scalar_one_or_none()


async def list_resources(db: AsyncSession, tenant_id: str) -> list[CloudResource]:
    """List every resource for a tenant, oldest first."""
    result = await db.execute(
        select(CloudResource)
        .where(CloudResource.tenant_id == tenant_id)
        .order_by(CloudResource.created_at, CloudResource.resource_id)
    )
    return list(result.scalars().all())
