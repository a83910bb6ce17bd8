"""
Inventory merge: joins master inventory rows with the detail records held in
product and card bins.

Master rows carry stock, optional price and the ``binId`` of the bin holding
the descriptive record. Detail bins come in several shapes (bare lists,
``{"products": [...]}``, ``{"cards": [...]}``, ``{"items": [...]}`` and the
card gallery's ``{"page": {"cards": {"items": [...]}}}``).
"""
import asyncio
import math
from typing import Any, Dict, List, Optional

from ..utils.config import DEFAULT_SINGLE_PRICE, SINGLES_CATEGORY
from ..utils.errors import BinStoreError
from ..utils.logger import logger
from .bin_store import BinStore

LOW_STOCK_THRESHOLD = 5


def extract_records(bin_data: Any) -> List[Dict[str, Any]]:
    """Return the list of detail records inside a bin, whatever its shape."""
    records: Any = []
    if isinstance(bin_data, list):
        records = bin_data
    elif isinstance(bin_data, dict):
        page = bin_data.get("page")
        page_cards = page.get("cards") if isinstance(page, dict) else None
        if isinstance(bin_data.get("products"), list):
            records = bin_data["products"]
        elif isinstance(bin_data.get("cards"), list):
            records = bin_data["cards"]
        elif isinstance(page_cards, dict) and isinstance(page_cards.get("items"), list):
            records = page_cards["items"]
        elif isinstance(page_cards, list):
            records = page_cards
        elif isinstance(bin_data.get("items"), list):
            records = bin_data["items"]
    return [record for record in records if isinstance(record, dict)]


def extract_inventory(master_data: Any) -> List[Dict[str, Any]]:
    if isinstance(master_data, dict):
        rows = master_data.get("inventory", [])
    else:
        rows = []
    if not isinstance(rows, list):
        return []
    return [row for row in rows if isinstance(row, dict)]


def record_key(record: Dict[str, Any]) -> str:
    return str(record.get("id") or record.get("publicCode") or "").strip()


def find_record(records: List[Dict[str, Any]], product_id: Any) -> Optional[Dict[str, Any]]:
    if product_id is None or product_id == "":
        return None
    for record in records:
        if record.get("id") == product_id or record.get("publicCode") == product_id:
            return record
    return None


def resolve_price(row: Dict[str, Any], record: Dict[str, Any]) -> float:
    # inventory row price, then detail price, then category default
    if row.get("price") is not None:
        return to_float(row.get("price"), default=0.0)
    if record.get("price") is not None:
        return to_float(record.get("price"), default=0.0)
    if row.get("category") == SINGLES_CATEGORY:
        return DEFAULT_SINGLE_PRICE
    return 0.0


def enrich(row: Dict[str, Any], record: Dict[str, Any]) -> Dict[str, Any]:
    card_image = record.get("cardImage")
    image = record.get("image") or (card_image.get("url", "") if isinstance(card_image, dict) else "")
    stock = max(0, to_int(row.get("stock"), default=0))

    product = dict(record)
    product.update(
        {
            "title": record.get("title") or record.get("name"),
            "image": image,
            "price": resolve_price(row, record),
            "stock": stock,
            "category": row.get("category"),
            "available": stock > 0,
            "preOrder": bool(row.get("preOrder", False)),
        }
    )
    return product


def group_by_bin(rows: List[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    groups: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        bin_id = str(row.get("binId") or "").strip()
        if not bin_id:
            logger.warning("Inventory row %s has no binId, skipping", row.get("productId"))
            continue
        groups.setdefault(bin_id, []).append(row)
    return groups


async def merge_bin_group(store: BinStore, bin_id: str, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    try:
        bin_data = await store.fetch_bin(bin_id)
    except BinStoreError as exc:
        logger.error(f"Error fetching bin {bin_id} for {len(rows)} items: {exc}")
        return []

    records = extract_records(bin_data)
    merged: List[Dict[str, Any]] = []
    for row in rows:
        product_id = row.get("productId")
        record = find_record(records, product_id)
        if record is None:
            logger.warning("Product %s not found in bin %s", product_id, bin_id)
            continue
        merged.append(enrich(row, record))
    return merged


async def merge_inventory(store: BinStore, master_bin_id: str) -> List[Dict[str, Any]]:
    """Fetch the master inventory and every referenced bin, returning enriched products.

    A bin that cannot be fetched contributes nothing; the master bin itself must load.
    """
    master_data = await store.fetch_bin(master_bin_id)
    rows = extract_inventory(master_data)
    logger.info("Found %d items in master inventory", len(rows))
    if not rows:
        return []

    groups = group_by_bin(rows)
    results = await asyncio.gather(
        *(merge_bin_group(store, bin_id, group_rows) for bin_id, group_rows in groups.items())
    )
    products = [product for group in results for product in group]
    logger.info("Merged %d products from %d bins", len(products), len(groups))
    return products


def can_purchase(product: Dict[str, Any]) -> bool:
    stock = to_int(product.get("stock"), default=0)
    return product.get("available") is not False and (stock > 0 or product.get("preOrder") is True)


def stock_status(product: Dict[str, Any]) -> str:
    stock = to_int(product.get("stock"), default=0)
    if stock <= 0:
        if product.get("preOrder") or product.get("available"):
            return "Made to Order"
        return "Out of Stock"
    if stock <= LOW_STOCK_THRESHOLD:
        return f"Only {stock} left!"
    return "In Stock"


def filter_products(
    products: List[Dict[str, Any]],
    category: str = "all",
    show_out_of_stock: bool = False,
    search: str = "",
) -> List[Dict[str, Any]]:
    needle = search.strip().lower()
    rows: List[Dict[str, Any]] = []
    for product in products:
        if category and category != "all" and product.get("category") != category:
            continue
        if not show_out_of_stock:
            if to_int(product.get("stock"), default=0) <= 0 and product.get("preOrder") is not True:
                continue
        if needle:
            title = str(product.get("title") or product.get("name") or "").lower()
            product_id = str(product.get("id") or "").lower()
            if needle not in title and needle not in product_id:
                continue
        rows.append(product)
    return rows


def to_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        try:
            return int(float(value))
        except (TypeError, ValueError, OverflowError):
            return default


def to_float(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return default
    return number if math.isfinite(number) else default
