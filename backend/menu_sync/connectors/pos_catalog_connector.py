import httpx
import logging
from typing import Dict, Any, List

from menu_sync.connectors.base import (
    CatalogSource, Catalog, Category, ModifierGroup, ModifierOption, Product, ScopeKey
)

log = logging.getLogger(__name__)


class PosCatalogConnector(CatalogSource):
    """
    Reads the product catalog from the point-of-sale REST API.
    Products are paginated; categories are collected from the product payloads.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.base_url = self.config["base_url"].rstrip("/")
        self.api_token = self.config["api_token"]
        self.page_size = int(self.config.get("page_size", 100))
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            follow_redirects=True,
            timeout=self.config.get("timeout", 30.0),
        )
        self.headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Accept": "application/json",
        }
        log.info(f"Catalog connector initialized with base URL: {self.base_url}")

    async def _request(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        try:
            log.trace(f"Catalog API {method} {path} params={kwargs.get('params', 'none')}")
            response = await self.client.request(method, path, headers=self.headers, **kwargs)
            log.trace(f"Catalog API response for {path}: {response.status_code}")
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            log.error(f"Catalog API HTTP {status} for {e.request.url}: {e.response.text}")
            if status in (401, 403):
                raise ValueError(f"Catalog API authentication failed (status {status}). Check the API token.")
            if status == 404:
                raise ValueError(f"Catalog API resource not found: {e.request.url}")
            # 429 and 5xx stay httpx errors so the retry policy treats them as transient
            raise
        except httpx.RequestError as e:
            log.error(f"Catalog API request error for {path}: {e}")
            raise

    async def fetch_current_catalog(self, scope: ScopeKey) -> Catalog:
        products: List[Product] = []
        categories: Dict[str, Category] = {}
        page = 1

        while True:
            params = {"page": page, "per_page": self.page_size, "include": "category,modifiers.options"}
            if scope.branch_id:
                params["filter[branch_id]"] = scope.branch_id
            if scope.menu_group_id:
                params["filter[menu_group_id]"] = scope.menu_group_id

            body = await self._request("GET", f"/accounts/{scope.account_id}/products", params=params)
            items = body.get("data", [])
            for raw in items:
                product = self._to_product(raw)
                products.append(product)
                raw_category = raw.get("category")
                if raw_category and raw_category.get("id"):
                    categories[str(raw_category["id"])] = Category(
                        id=str(raw_category["id"]), name=raw_category.get("name") or ""
                    )

            last_page = body.get("meta", {}).get("last_page", page)
            log.debug(f"Fetched catalog page {page}/{last_page} for {scope}: {len(items)} products")
            if not items or page >= last_page:
                break
            page += 1

        log.info(f"Fetched {len(products)} products and {len(categories)} categories for {scope}")
        return Catalog(products=products, categories=list(categories.values()))

    def _to_product(self, raw: Dict[str, Any]) -> Product:
        category = raw.get("category") or {}
        return Product(
            id=str(raw["id"]),
            name=raw.get("name") or "",
            price=float(raw.get("price") or 0),
            is_active=bool(raw.get("is_active", True)),
            category_id=str(category["id"]) if category.get("id") else raw.get("category_id"),
            description=raw.get("description"),
            modifiers=[
                ModifierGroup(
                    id=str(group["id"]),
                    name=group.get("name") or "",
                    options=[
                        ModifierOption(id=str(opt["id"]), name=opt.get("name") or "", price=float(opt.get("price") or 0))
                        for opt in group.get("options", [])
                    ],
                )
                for group in raw.get("modifiers", [])
            ],
        )

    async def validate_connection(self) -> bool:
        try:
            await self._request("GET", "/whoami")
            return True
        except ValueError:
            raise
        except Exception as e:
            log.warning(f"Catalog connection check failed: {e}")
            return False

    async def close(self):
        await self.client.aclose()
