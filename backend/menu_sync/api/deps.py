"""Shared endpoint dependencies: connectors and wired sync services."""

from fastapi import Depends
from sqlalchemy.orm import Session

from menu_sync.connectors import create_catalog_source, create_delivery_platform
from menu_sync.database import get_db
from menu_sync.services.sync_orchestrator import SyncServices, build_sync_services


async def get_catalog_source():
    source = create_catalog_source()
    try:
        yield source
    finally:
        await source.close()


async def get_delivery_platform():
    platform = create_delivery_platform()
    try:
        yield platform
    finally:
        await platform.close()


def get_sync_services(
    db: Session = Depends(get_db),
    catalog_source=Depends(get_catalog_source),
    delivery_platform=Depends(get_delivery_platform)
) -> SyncServices:
    return build_sync_services(db, catalog_source=catalog_source, delivery_platform=delivery_platform)
