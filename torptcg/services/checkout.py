import hashlib
import hmac
import json
import time
from collections import OrderedDict
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import ClientSession

from ..utils.config import Settings
from ..utils.errors import ConfigurationError, PaymentError, StoreError, ValidationError
from ..utils.logger import logger
from .basket import Basket
from .catalog import to_int
from .inventory import InventoryService

METADATA_LIMIT = 500
PROCESSED_SESSION_LIMIT = 1000
SIGNATURE_TOLERANCE_SECONDS = 300


def verify_stripe_signature(
    payload: bytes,
    header: str,
    secret: str,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: Optional[float] = None,
) -> None:
    """Check a ``Stripe-Signature`` header (``t=<ts>,v1=<hex>[,v1=...]``) against the raw body."""
    timestamp = ""
    signatures: List[str] = []
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)

    if not timestamp or not signatures:
        raise ValidationError("Invalid Stripe-Signature header")

    signed_payload = timestamp.encode("utf-8") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected, signature) for signature in signatures):
        raise ValidationError("Webhook signature verification failed")

    ts = to_int(timestamp, default=0)
    current = time.time() if now is None else now
    if tolerance and abs(current - ts) > tolerance:
        raise ValidationError("Webhook timestamp outside the tolerance zone")


def build_cart_metadata(items: List[Dict[str, Any]]) -> str:
    compact = json.dumps([{"id": item["id"], "q": item["q"]} for item in items], separators=(",", ":"))
    return compact[:METADATA_LIMIT]


class CheckoutService:
    def __init__(self, settings: Settings, inventory: InventoryService):
        self.settings = settings
        self.inventory = inventory
        self._processed_sessions: "OrderedDict[str, None]" = OrderedDict()

    async def create_session(self, cart: Any) -> Dict[str, Any]:
        if not self.settings.stripe_secret_key:
            logger.error("Stripe initialization failed: STRIPE_SECRET_KEY environment variable is missing.")
            raise ConfigurationError(
                "Payment system configuration error",
                details={"details": "STRIPE_SECRET_KEY environment variable is missing."},
            )

        basket = Basket(cart if isinstance(cart, list) else [])
        if not len(basket):
            raise ValidationError("Cart is empty")

        products = await self.inventory.get_products()
        products_by_id = {str(product.get("id")): product for product in products if product.get("id") is not None}

        form_data: List[tuple] = [
            ("mode", "payment"),
            ("success_url", f"{self.settings.site_url}/success.html"),
            ("cancel_url", f"{self.settings.site_url}/cancel.html"),
            ("payment_method_types[]", "card"),
        ]
        metadata_items: List[Dict[str, Any]] = []

        for idx, entry in enumerate(basket):
            product = products_by_id.get(entry["id"])
            if product is None:
                raise ValidationError(f"Product {entry['title'] or entry['id']} not found")

            title = str(product.get("title") or entry["title"] or entry["id"])
            if to_int(product.get("stock"), default=0) < entry["quantity"]:
                raise ValidationError(f"Insufficient stock for {title}")

            # always charge the server-side price
            unit_amount = int(round(float(product.get("price") or 0) * 100))
            prefix = f"line_items[{idx}]"
            form_data.extend(
                [
                    (f"{prefix}[quantity]", str(entry["quantity"])),
                    (f"{prefix}[price_data][currency]", self.settings.stripe_currency),
                    (f"{prefix}[price_data][unit_amount]", str(unit_amount)),
                    (f"{prefix}[price_data][product_data][name]", title[:120]),
                    (f"{prefix}[price_data][product_data][metadata][id]", entry["id"]),
                ]
            )
            if product.get("image"):
                form_data.append((f"{prefix}[price_data][product_data][images][0]", str(product["image"])))
            metadata_items.append({"id": entry["id"], "q": entry["quantity"]})

        form_data.append(("metadata[cart_items]", build_cart_metadata(metadata_items)))

        try:
            async with ClientSession() as session:
                async with session.post(
                    f"{self.settings.stripe_api_url}/checkout/sessions",
                    data=form_data,
                    headers={"Authorization": f"Bearer {self.settings.stripe_secret_key}"},
                ) as stripe_response:
                    stripe_payload = await stripe_response.json(content_type=None)
                    if stripe_response.status >= 300:
                        logger.error(f"Stripe checkout session creation failed: {stripe_payload}")
                        raise PaymentError("failed to create payment session")
        except (aiohttp.ClientError, json.JSONDecodeError) as exc:
            logger.error(f"Stripe checkout session request failed: {exc}")
            raise PaymentError("failed to create payment session") from exc

        checkout_url = str(stripe_payload.get("url") or "").strip() if isinstance(stripe_payload, dict) else ""
        if not checkout_url:
            raise PaymentError("invalid payment session response")

        logger.info("Created checkout session %s for %d items", stripe_payload.get("id"), len(metadata_items))
        return {"url": checkout_url, "id": stripe_payload.get("id")}

    async def handle_webhook(self, payload: bytes, signature_header: str = "") -> Dict[str, Any]:
        if self.settings.stripe_webhook_secret:
            verify_stripe_signature(payload, signature_header, self.settings.stripe_webhook_secret)

        try:
            event = json.loads(payload.decode("utf-8") or "{}")
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError("invalid json body") from exc
        if not isinstance(event, dict):
            raise ValidationError("invalid event payload")

        event_type = str(event.get("type") or "")
        data = event.get("data") if isinstance(event.get("data"), dict) else {}
        obj = data.get("object") if isinstance(data.get("object"), dict) else {}
        logger.info("Stripe webhook event type: %s", event_type)

        if event_type == "checkout.session.completed":
            return await self._handle_checkout_completed(obj)
        if event_type == "payment_intent.succeeded":
            logger.info("Payment succeeded: %s", obj.get("id"))
        else:
            logger.info("Unhandled Stripe event type: %s", event_type)
        return {"received": True}

    def _order_lines(self, session: Dict[str, Any]) -> List[Dict[str, Any]]:
        metadata = session.get("metadata") if isinstance(session.get("metadata"), dict) else {}

        raw_items = metadata.get("cart_items")
        if raw_items:
            try:
                items = json.loads(raw_items)
            except json.JSONDecodeError as exc:
                logger.error(f"Error parsing cart_items metadata: {exc}")
                items = None
            if isinstance(items, list):
                lines = []
                for item in items:
                    if isinstance(item, dict) and item.get("id"):
                        lines.append({"id": str(item["id"]), "q": max(0, to_int(item.get("q"), default=0))})
                return lines

        product_id = str(metadata.get("productId") or "").strip()
        if product_id:
            return [{"id": product_id, "q": max(0, to_int(metadata.get("quantity") or 1, default=1))}]
        return []

    async def _handle_checkout_completed(self, session: Dict[str, Any]) -> Dict[str, Any]:
        session_id = str(session.get("id") or "")
        logger.info("Checkout completed: %s", session_id)

        # Stripe may deliver the same event more than once
        if session_id and session_id in self._processed_sessions:
            logger.info("Checkout session %s already processed, skipping", session_id)
            return {"received": True, "duplicate": True}

        # claimed before the first await so a concurrent redelivery sees it
        if session_id:
            self._remember_session(session_id)

        lines = self._order_lines(session)
        if not lines:
            logger.warning("No product ID or cart_items in checkout session metadata")
            return {"received": True, "updated": [], "failed": []}

        updated: List[str] = []
        failed: List[Dict[str, Any]] = []
        for line in lines:
            if line["q"] <= 0:
                continue
            logger.info("Decreasing stock for %s by %d", line["id"], line["q"])
            try:
                await self.inventory.adjust_stock(line["id"], -line["q"])
                updated.append(line["id"])
            except StoreError as exc:
                logger.error(f"Failed to update stock for {line['id']}: {exc.message}")
                failed.append({"id": line["id"], "error": exc.message})

        return {"received": True, "updated": updated, "failed": failed}

    def _remember_session(self, session_id: str) -> None:
        self._processed_sessions[session_id] = None
        while len(self._processed_sessions) > PROCESSED_SESSION_LIMIT:
            self._processed_sessions.popitem(last=False)
