from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ScopeKey(BaseModel):
    """Isolates one independent synchronization stream."""
    model_config = ConfigDict(frozen=True)

    account_id: str = Field(..., description="Merchant account identifier at the catalog source")
    branch_id: Optional[str] = Field(None, description="Branch/location identifier, None for all branches")
    menu_group_id: Optional[str] = Field(None, description="Catalog subset identifier, None for the whole catalog")

    def __str__(self):
        return f"{self.account_id}/{self.branch_id or 'all'}/{self.menu_group_id or 'all'}"


class ModifierOption(BaseModel):
    id: str = Field(..., description="Stable option identifier")
    name: str = Field("", description="Option display name")
    price: float = Field(0.0, description="Price delta of the option")


class ModifierGroup(BaseModel):
    id: str = Field(..., description="Stable modifier group identifier")
    name: str = Field("", description="Modifier group display name")
    options: List[ModifierOption] = Field([], description="Selectable options")


class Category(BaseModel):
    id: str = Field(..., description="Stable category identifier")
    name: str = Field("", description="Category display name")


class Product(BaseModel):
    """Catalog product as the core sees it."""
    id: str = Field(..., description="Stable product identifier at the catalog source")
    name: str = Field(..., description="Product display name")
    price: float = Field(..., ge=0, description="Product base price")
    is_active: bool = Field(True, description="Whether the product is currently sellable")
    category_id: Optional[str] = Field(None, description="Reference to the product category")
    description: Optional[str] = Field(None, description="Free-text description")
    modifiers: List[ModifierGroup] = Field([], description="Modifier groups attached to the product")


class Catalog(BaseModel):
    products: List[Product] = Field([], description="All products in scope")
    categories: List[Category] = Field([], description="Categories referenced by the products")


class SubmissionResult(BaseModel):
    success: bool = Field(..., description="Whether the delivery platform accepted the request")
    import_id: Optional[str] = Field(None, description="Opaque downstream id for status correlation")
    error: Optional[str] = Field(None, description="Error reported by the delivery platform")


class CatalogSource(ABC):
    """Read-only catalog provider (point-of-sale side)."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @abstractmethod
    async def fetch_current_catalog(self, scope: ScopeKey) -> Catalog:
        """Fetches the full current catalog for a scope."""
        pass

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Validates the connection to the catalog source."""
        pass


class DeliveryPlatform(ABC):
    """Write-side delivery marketplace."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @abstractmethod
    async def submit_delta(self, payload: Dict[str, Any], vendor_code: str) -> SubmissionResult:
        """Submits a delta payload for a vendor."""
        pass

    @abstractmethod
    async def delete_items(self, entity_ids: List[str], vendor_code: str) -> SubmissionResult:
        """Removes items from the vendor's menu."""
        pass

    @abstractmethod
    async def validate_connection(self) -> bool:
        """Validates the connection to the delivery platform."""
        pass
