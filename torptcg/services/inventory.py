import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from ..utils.config import DEFAULT_SINGLE_PRICE
from ..utils.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from ..utils.logger import logger
from .bin_store import BinStore
from .catalog import extract_inventory, extract_records, merge_inventory, to_float, to_int

InventoryRows = List[Dict[str, Any]]


class InventoryService:
    """
    Stock and routing rows in the master inventory bin.

    Every mutation reads the master bin fresh, edits the row list and writes the
    whole list back. The remote store has no version token, so mutations made by
    this process are serialised with a lock; writers in other processes can
    still overwrite each other.
    """

    def __init__(self, store: BinStore, master_bin_id: str):
        self.store = store
        self.master_bin_id = master_bin_id
        self._lock = asyncio.Lock()

    async def get_products(self) -> List[Dict[str, Any]]:
        return await merge_inventory(self.store, self.master_bin_id)

    async def get_master_inventory(self, force_refresh: bool = False) -> InventoryRows:
        master_data = await self.store.fetch_bin(self.master_bin_id, force_refresh=force_refresh)
        return extract_inventory(master_data)

    async def adjust_stock(self, product_id: str, delta: Any) -> Dict[str, Any]:
        change = to_int(delta, default=None)
        if change is None:
            raise ValidationError("delta must be an integer")

        def apply(inventory: InventoryRows) -> Tuple[Dict[str, Any], bool]:
            index = self._find_index(inventory, product_id)
            if index < 0:
                logger.warning("Product %s not found for adjustment", product_id)
                raise NotFoundError("Product not found", details={"productId": product_id})

            row = inventory[index]
            old_stock = max(0, to_int(row.get("stock"), default=0))
            if change < 0 and old_stock == 0:
                raise InsufficientStockError("insufficient_stock", details={"productId": product_id, "stock": 0})

            row["stock"] = max(0, old_stock + change)
            logger.info(f"Adjusted {product_id}: {old_stock} + ({change}) = {row['stock']}")
            return dict(row), True

        return await self._mutate(apply)

    async def set_stock(
        self,
        product_id: str,
        stock: Any,
        price: Any = None,
        bin_id: str = "",
        category: str = "",
        pre_order: bool = False,
    ) -> Optional[Dict[str, Any]]:
        """Set an absolute stock level. Returns the row, or None when the row was removed or never created."""
        new_stock = to_int(stock, default=None)
        if new_stock is None:
            raise ValidationError("stock must be an integer")

        def apply(inventory: InventoryRows) -> Tuple[Optional[Dict[str, Any]], bool]:
            index = self._find_index(inventory, product_id)
            if index >= 0:
                row = inventory[index]
                old_stock = row.get("stock")
                row["stock"] = new_stock

                if price is not None:
                    old_price = row.get("price")
                    row["price"] = to_float(price, default=0.0)
                    if old_price != row["price"]:
                        logger.info(f"Updated {product_id} price: {old_price} -> {row['price']}")

                if bin_id:
                    old_bin_id = row.get("binId")
                    row["binId"] = bin_id
                    if old_bin_id != bin_id:
                        logger.info(f"Updated {product_id} binId: {old_bin_id} -> {bin_id}")

                if new_stock <= 0:
                    inventory.pop(index)
                    logger.info("Removed %s (stock depleted)", product_id)
                    return None, True

                logger.info(f"Updated {product_id}: {old_stock} -> {new_stock}")
                return dict(row), True

            if new_stock <= 0:
                return None, False

            if not bin_id or not category:
                raise ValidationError("binId and category required for new items")

            row = {
                "productId": product_id,
                "binId": bin_id,
                "category": category,
                "stock": new_stock,
                "price": to_float(price, default=DEFAULT_SINGLE_PRICE) if price is not None else DEFAULT_SINGLE_PRICE,
                "preOrder": bool(pre_order),
            }
            inventory.append(row)
            logger.info(f"Added {product_id} with stock {new_stock} and price {row['price']}")
            return dict(row), True

        return await self._mutate(apply)

    async def delete_row(self, product_id: str) -> bool:
        def apply(inventory: InventoryRows) -> Tuple[bool, bool]:
            index = self._find_index(inventory, product_id)
            if index < 0:
                return False, False
            inventory.pop(index)
            logger.info("Deleted %s from master inventory", product_id)
            return True, True

        return await self._mutate(apply)

    async def reassign_bin(self, product_ids: Iterable[Any], bin_id: str) -> Tuple[int, int]:
        """Point the rows of ``product_ids`` at ``bin_id``. Returns (rows updated, inventory size)."""
        wanted = set(product_ids)

        def apply(inventory: InventoryRows) -> Tuple[Tuple[int, int], bool]:
            updated = 0
            for row in inventory:
                if row.get("productId") in wanted and row.get("binId") != bin_id:
                    logger.info(f"Updated {row.get('productId')} binId: {row.get('binId')} -> {bin_id}")
                    row["binId"] = bin_id
                    updated += 1
            return (updated, len(inventory)), updated > 0

        return await self._mutate(apply)

    async def upsert_row(self, product: Dict[str, Any], bin_id: str) -> Dict[str, Any]:
        product_id = product.get("id")
        row = {
            "productId": product_id,
            "binId": bin_id,
            "category": product.get("category"),
            "stock": max(0, to_int(product.get("stock") or 0, default=0)),
            "preOrder": bool(product.get("madeToOrder") or product.get("preOrder") or False),
        }

        def apply(inventory: InventoryRows) -> Tuple[Dict[str, Any], bool]:
            index = self._find_index(inventory, product_id)
            if index >= 0:
                existing_price = inventory[index].get("price")
                if existing_price is not None:
                    row["price"] = existing_price
                inventory[index] = row
            else:
                inventory.append(row)
            logger.info("Upserted %s into master inventory (bin %s)", product_id, bin_id)
            return dict(row), True

        return await self._mutate(apply)

    async def create_product(self, product: Dict[str, Any], bin_id: str) -> Dict[str, Any]:
        """Write a new record to its product bin, then add its master row."""
        if not isinstance(product, dict) or not product.get("id"):
            raise ValidationError("Product data with ID is required")
        if not bin_id:
            raise ValidationError("binId is required")

        bin_data = await self.store.fetch_bin(bin_id, force_refresh=True)
        wrapped = isinstance(bin_data, dict) and isinstance(bin_data.get("products"), list)
        records = extract_records(bin_data) if wrapped or isinstance(bin_data, list) else []
        if any(record.get("id") == product["id"] for record in records):
            raise ConflictError("Product with this ID already exists", details={"productId": product["id"]})

        records.append(product)
        await self.store.update_bin(bin_id, {"products": records} if wrapped else records)
        logger.info("Created product %s in bin %s", product["id"], bin_id)

        return await self.upsert_row(product, bin_id)

    async def _mutate(self, apply: Callable[[InventoryRows], Tuple[Any, bool]]) -> Any:
        async with self._lock:
            inventory = await self.get_master_inventory(force_refresh=True)
            result, changed = apply(inventory)
            if changed:
                await self.store.update_bin(self.master_bin_id, {"inventory": inventory})
                self.store.clear_cache(self.master_bin_id)
            return result

    @staticmethod
    def _find_index(inventory: InventoryRows, product_id: Any) -> int:
        for index, row in enumerate(inventory):
            if row.get("productId") == product_id:
                return index
        return -1
