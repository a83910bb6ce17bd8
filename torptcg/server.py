import fnmatch
import hmac
import json
from typing import Any, Dict, Optional

from aiohttp import web

from .services.bin_store import BinStore, create_bin_store
from .services.cards import CardService, parse_card_filters, route_bin
from .services.catalog import filter_products, stock_status
from .services.checkout import CheckoutService
from .services.inventory import InventoryService
from .services.products import ProductService
from .utils.config import Settings
from .utils.errors import BinStoreError, ConfigurationError, StoreError, ValidationError
from .utils.logger import logger

NO_CACHE = "no-cache, no-store, must-revalidate"


class StorefrontServer:
    def __init__(self, settings: Optional[Settings] = None, store: Optional[BinStore] = None):
        self.settings = settings or Settings()
        self.store = store or create_bin_store(self.settings)
        self.inventory = InventoryService(self.store, self.settings.master_inventory_bin_id)
        self.products = ProductService(self.store, self.settings.products_bin_id, inventory=self.inventory)
        self.cards = CardService(
            self.store,
            self.settings.card_bins,
            inventory=self.inventory,
            cache_seconds=self.settings.cards_cache_seconds,
        )
        self.checkout = CheckoutService(self.settings, self.inventory)

        self.app = web.Application(
            middlewares=[
                self._error_middleware,
                self._cors_middleware,
                self._auth_middleware,
            ]
        )
        self.app.router.add_route("OPTIONS", "/{tail:.*}", self._handle_options)
        self.app.router.add_get("/health", self.health)
        self.app.router.add_get("/inventory", self.get_inventory)
        self.app.router.add_post("/inventory", self.update_inventory)
        self.app.router.add_get("/products", self.get_products)
        self.app.router.add_post("/products", self.update_products)
        self.app.router.add_get("/cards", self.get_cards)
        self.app.router.add_post("/create-checkout-session", self.create_checkout_session)
        self.app.router.add_post("/stripe-webhook", self.stripe_webhook)
        self.app.router.add_get("/check-master-inventory", self.check_master_inventory)
        self.app.router.add_post("/fix-dual-cards", self.fix_dual_cards)
        self.app.on_cleanup.append(self._close_store)

        self.runner: Optional[web.AppRunner] = None

    @web.middleware
    async def _error_middleware(self, request: web.Request, handler):
        try:
            return await handler(request)
        except web.HTTPException:
            raise
        except BinStoreError as exc:
            if exc.is_unauthorized:
                return web.json_response(
                    {"error": "Authentication failed. Please check your API Key and Bin ownership."},
                    status=401,
                )
            logger.error(f"Document store error on {request.path}: {exc}")
            return web.json_response({"error": exc.message}, status=exc.status)
        except StoreError as exc:
            if exc.status >= 500:
                logger.error(f"Request to {request.path} failed: {exc.message}")
            return web.json_response(exc.to_payload(), status=exc.status)
        except Exception as exc:
            logger.exception(f"Unhandled error on {request.path}: {exc}")
            return web.json_response({"error": "Internal server error", "message": str(exc)}, status=500)

    @web.middleware
    async def _cors_middleware(self, request: web.Request, handler):
        response = await handler(request)
        self._apply_cors_headers(request, response)
        return response

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        if request.method == "OPTIONS" or not self.settings.admin_api_key:
            return await handler(request)

        protected = (request.method == "POST" and request.path in {"/inventory", "/products", "/fix-dual-cards"}) or (
            request.path == "/check-master-inventory"
        )
        if not protected:
            return await handler(request)

        received_key = request.headers.get("x-api-key", "").strip()
        auth_header = request.headers.get("authorization", "").strip()
        if not received_key and auth_header.lower().startswith("bearer "):
            received_key = auth_header[7:].strip()

        if not received_key or not hmac.compare_digest(received_key, self.settings.admin_api_key):
            return web.json_response({"error": "unauthorized"}, status=401)

        return await handler(request)

    async def _handle_options(self, request: web.Request):
        return web.Response(status=200)

    def _apply_cors_headers(self, request: web.Request, response: web.StreamResponse) -> None:
        origin = request.headers.get("Origin")
        allowed = self.settings.allowed_origins

        if "*" in allowed:
            response.headers["Access-Control-Allow-Origin"] = "*"
        elif origin and any(origin == item or fnmatch.fnmatch(origin, item) for item in allowed):
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
        else:
            response.headers["Access-Control-Allow-Origin"] = allowed[0]

        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization, x-api-key, Stripe-Signature"

    async def _close_store(self, app: web.Application) -> None:
        await self.store.close()

    async def start(self) -> None:
        if self.runner is not None:
            return

        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, self.settings.host, self.settings.port)
        await site.start()
        logger.info(
            f"Storefront listening on {self.settings.host}:{self.settings.port} "
            f"(store backend: {self.settings.store_backend})"
        )

    async def stop(self) -> None:
        if self.runner is None:
            return

        await self.runner.cleanup()
        self.runner = None
        logger.info("Storefront stopped.")

    def _require_inventory_config(self) -> None:
        for name in self.settings.missing():
            raise ConfigurationError(f"{name} not configured")

    async def _safe_json(self, request: web.Request) -> Dict[str, Any]:
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ValidationError("invalid json body") from exc
        if not isinstance(payload, dict):
            raise ValidationError("invalid json body")
        return payload

    async def health(self, request: web.Request):
        return web.json_response(
            {
                "ok": True,
                "storeBackend": self.settings.store_backend,
                "missingConfig": self.settings.missing(),
                "cardBins": sorted(self.settings.card_bins),
                "stripeEnabled": bool(self.settings.stripe_secret_key),
                "webhookVerification": bool(self.settings.stripe_webhook_secret),
            }
        )

    async def get_inventory(self, request: web.Request):
        self._require_inventory_config()
        products = await self.inventory.get_products()

        in_stock_only = request.query.get("inStock", "").strip().lower() in {"1", "true", "yes"}
        products = filter_products(
            products,
            category=request.query.get("category", "all").strip() or "all",
            show_out_of_stock=not in_stock_only,
            search=request.query.get("search", ""),
        )
        for product in products:
            product["stockStatus"] = stock_status(product)

        logger.info("Returning %d enriched products", len(products))
        return web.json_response(products, headers={"Cache-Control": NO_CACHE})

    async def update_inventory(self, request: web.Request):
        self._require_inventory_config()
        body = await self._safe_json(request)

        action = str(body.get("action") or "").strip().lower()
        product_id = str(body.get("productId") or "").strip()
        delta = body.get("delta")
        logger.info("Inventory update request: %s for %s", action or ("adjust" if delta is not None else "unknown"), product_id)

        if action in {"adjust", ""} and delta is not None:
            if not product_id:
                raise ValidationError("productId is required")
            row = await self.inventory.adjust_stock(product_id, delta)
            return web.json_response({"success": True, "message": "Stock updated", "stock": row["stock"]})

        if action == "create":
            product = body.get("product")
            bin_id = str(body.get("binId") or "").strip()
            if not isinstance(product, dict) or not bin_id:
                raise ValidationError("product and binId are required")
            row = await self.inventory.create_product(product, bin_id)
            return web.json_response({"success": True, "message": "Product created", "item": row})

        if action == "set" and body.get("stock") is not None:
            if not product_id:
                raise ValidationError("productId is required")
            bin_id = str(body.get("binId") or "").strip()
            card = body.get("card")
            if isinstance(card, dict):
                bin_id = route_bin(card, self.settings.card_bins) or bin_id
            row = await self.inventory.set_stock(
                product_id,
                body.get("stock"),
                price=body.get("price"),
                bin_id=bin_id,
                category=str(body.get("category") or "").strip(),
                pre_order=bool(body.get("preOrder", False)),
            )
            return web.json_response({"success": True, "message": "Stock updated", "item": row})

        if action == "delete":
            if not product_id:
                raise ValidationError("productId is required")
            removed = await self.inventory.delete_row(product_id)
            return web.json_response({"success": True, "message": "Stock updated", "removed": removed})

        raise ValidationError("Invalid action")

    async def get_products(self, request: web.Request):
        if self.settings.store_backend == "jsonbin" and not self.settings.jsonbin_api_key:
            raise ConfigurationError("JSONBIN_API_KEY is not configured on the server.")
        bin_id = request.query.get("binId", "").strip() or None
        products = await self.products.list_products(bin_id)
        return web.json_response(products)

    async def update_products(self, request: web.Request):
        if self.settings.store_backend == "jsonbin" and not self.settings.jsonbin_api_key:
            raise ConfigurationError("JSONBIN_API_KEY is not configured on the server.")
        body = await self._safe_json(request)

        action = str(body.get("action") or "").strip().lower()
        bin_id = str(body.get("binId") or "").strip() or None
        if not action:
            raise ValidationError("Action is required")

        if action == "add":
            result = await self.products.add_product(body.get("product"), bin_id)
        elif action == "update":
            result = await self.products.update_product(body.get("product"), bin_id)
        elif action == "delete":
            result = await self.products.delete_product(body.get("productId"), bin_id)
        else:
            raise ValidationError("Invalid action")
        return web.json_response(result)

    async def get_cards(self, request: web.Request):
        cards = await self.cards.load_cards()
        if not cards:
            return web.json_response(
                {"error": "No card data available", "message": "Card bins returned empty data"},
                status=503,
            )
        gallery = await self.cards.gallery(parse_card_filters(request.query))
        return web.json_response(gallery, headers={"Cache-Control": "public, max-age=3600"})

    async def create_checkout_session(self, request: web.Request):
        body = await self._safe_json(request)
        result = await self.checkout.create_session(body.get("cart"))
        return web.json_response({"url": result["url"]})

    async def stripe_webhook(self, request: web.Request):
        payload = await request.read()
        result = await self.checkout.handle_webhook(payload, request.headers.get("Stripe-Signature", ""))
        return web.json_response(result)

    async def check_master_inventory(self, request: web.Request):
        self._require_inventory_config()
        return web.json_response(await self.cards.dual_entries())

    async def fix_dual_cards(self, request: web.Request):
        self._require_inventory_config()
        report = await self.cards.fix_dual_cards()
        return web.json_response(report)
