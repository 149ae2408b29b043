"""Concrete connectors built from application settings."""

from menu_sync.config import settings
from menu_sync.connectors.delivery_connector import DeliveryPlatformConnector
from menu_sync.connectors.pos_catalog_connector import PosCatalogConnector


def create_catalog_source() -> PosCatalogConnector:
    return PosCatalogConnector({
        "base_url": settings.catalog_base_url,
        "api_token": settings.catalog_api_token,
        "page_size": settings.catalog_page_size,
        "timeout": settings.http_timeout_seconds,
    })


def create_delivery_platform() -> DeliveryPlatformConnector:
    return DeliveryPlatformConnector({
        "base_url": settings.delivery_base_url,
        "api_token": settings.delivery_api_token,
        "timeout": settings.http_timeout_seconds,
    })
