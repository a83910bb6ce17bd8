from typing import Any, Dict, List, Optional

from ..utils.errors import BinStoreError, ConflictError, NotFoundError, ValidationError
from ..utils.logger import logger
from .bin_store import BinStore
from .inventory import InventoryService


class ProductService:
    """CRUD for sealed products, accessories and prints kept as a bare list in a product bin."""

    def __init__(self, store: BinStore, default_bin_id: str, inventory: Optional[InventoryService] = None):
        self.store = store
        self.default_bin_id = default_bin_id
        self.inventory = inventory

    def _target(self, bin_id: Optional[str]) -> str:
        target = (bin_id or self.default_bin_id or "").strip()
        if not target:
            raise ValidationError("binId is required")
        return target

    async def list_products(self, bin_id: Optional[str] = None, force_refresh: bool = False) -> List[Dict[str, Any]]:
        target = self._target(bin_id)
        try:
            record = await self.store.fetch_bin(target, force_refresh=force_refresh)
        except BinStoreError as exc:
            if exc.is_not_found:
                logger.warning("Bin %s not found, returning empty array", target)
                return []
            raise
        if not isinstance(record, list):
            return []
        return [item for item in record if isinstance(item, dict)]

    async def add_product(self, product: Any, bin_id: Optional[str] = None) -> Dict[str, Any]:
        if not isinstance(product, dict) or not product.get("id"):
            raise ValidationError("Product data with ID is required")
        target = self._target(bin_id)

        products = await self.list_products(target, force_refresh=True)
        if any(item.get("id") == product["id"] for item in products):
            raise ConflictError("Product with this ID already exists")

        products.append(product)
        await self.store.update_bin(target, products)
        logger.info("Added product %s to bin %s", product["id"], target)

        await self._sync_master(product, target)
        return {"success": True, "product": product}

    async def update_product(self, product: Any, bin_id: Optional[str] = None) -> Dict[str, Any]:
        if not isinstance(product, dict) or not product.get("id"):
            raise ValidationError("Product data with ID is required")
        target = self._target(bin_id)

        products = await self.list_products(target, force_refresh=True)
        index = next((idx for idx, item in enumerate(products) if item.get("id") == product["id"]), -1)
        if index < 0:
            raise NotFoundError("Product not found")

        merged = dict(products[index])
        merged.update(product)
        products[index] = merged
        await self.store.update_bin(target, products)
        logger.info("Updated product %s in bin %s", product["id"], target)

        await self._sync_master(merged, target)
        return {"success": True, "product": merged}

    async def delete_product(self, product_id: Any, bin_id: Optional[str] = None) -> Dict[str, Any]:
        if not product_id:
            raise ValidationError("Product ID is required")
        target = self._target(bin_id)

        products = await self.list_products(target, force_refresh=True)
        index = next((idx for idx, item in enumerate(products) if item.get("id") == product_id), -1)
        if index < 0:
            raise NotFoundError("Product not found")

        deleted = products.pop(index)
        await self.store.update_bin(target, products)
        logger.info("Deleted product %s from bin %s", product_id, target)

        if self.inventory is not None:
            try:
                await self.inventory.delete_row(product_id)
            except BinStoreError as exc:
                logger.error(f"Failed to update master inventory for {product_id}: {exc}")
        return {"success": True, "deleted": deleted}

    async def _sync_master(self, product: Dict[str, Any], bin_id: str) -> None:
        # the product bin is already written; a master failure is reported, not raised
        if self.inventory is None:
            return
        try:
            await self.inventory.upsert_row(product, bin_id)
        except BinStoreError as exc:
            logger.error(f"Failed to update master inventory for {product.get('id')}: {exc}")
