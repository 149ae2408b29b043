import httpx
import logging
from typing import Dict, Any, List

from menu_sync.connectors.base import DeliveryPlatform, SubmissionResult

log = logging.getLogger(__name__)

# Statuses worth retrying; everything else in 4xx is a rejected payload
RETRYABLE_STATUS_CODES = (408, 429, 500, 502, 503, 504)


class DeliveryPlatformConnector(DeliveryPlatform):
    """
    Writes menu deltas to the delivery marketplace.
    Rejections come back as unsuccessful results; transport errors and
    retryable statuses are raised for the retry policy.
    """

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.base_url = self.config["base_url"].rstrip("/")
        self.api_token = self.config["api_token"]
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            follow_redirects=True,
            timeout=self.config.get("timeout", 300.0),
        )
        self.headers = {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type": "application/json",
        }
        log.info(f"Delivery platform connector initialized with base URL: {self.base_url}")

    async def _post(self, path: str, body: Dict[str, Any]) -> SubmissionResult:
        log.trace(f"Delivery API POST {path}")
        try:
            response = await self.client.post(path, headers=self.headers, json=body)
        except httpx.RequestError as e:
            log.error(f"Delivery API request error for {path}: {e}")
            raise

        log.trace(f"Delivery API response for {path}: {response.status_code}")
        if response.status_code in RETRYABLE_STATUS_CODES:
            log.warning(f"Delivery API returned retryable status {response.status_code} for {path}")
            response.raise_for_status()

        if response.is_error:
            log.error(f"Delivery API rejected request to {path}: {response.status_code} {response.text}")
            return SubmissionResult(success=False, error=f"HTTP {response.status_code}: {response.text}")

        data = response.json() if response.content else {}
        return SubmissionResult(success=True, import_id=data.get("import_id") or data.get("id"))

    async def submit_delta(self, payload: Dict[str, Any], vendor_code: str) -> SubmissionResult:
        result = await self._post(f"/vendors/{vendor_code}/menu/delta", payload)
        if result.success:
            log.info(f"Delta submitted for vendor {vendor_code}, import_id={result.import_id}")
        return result

    async def delete_items(self, entity_ids: List[str], vendor_code: str) -> SubmissionResult:
        result = await self._post(f"/vendors/{vendor_code}/menu/items/delete", {"items": entity_ids})
        if result.success:
            log.info(f"Deleted {len(entity_ids)} items for vendor {vendor_code}")
        return result

    async def validate_connection(self) -> bool:
        try:
            response = await self.client.get("/health", headers=self.headers)
            return response.status_code == 200
        except httpx.RequestError as e:
            log.warning(f"Delivery platform connection check failed: {e}")
            return False

    async def close(self):
        await self.client.aclose()
