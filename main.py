import os
import time
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from config import configure_logging, settings
from dependencies import (
    Services,
    current_services,
    get_current_user,
    get_services,
    oauth2_scheme,
    rate_limit,
    require_admin,
)
from errors import api_response, register_error_handlers
from schemas import (
    CartItemRequest,
    LoginRequest,
    MfaChallengeRequest,
    MfaTokenRequest,
    OrderCreate,
    OrderStatus,
    OrderStatusUpdate,
    ProductCreate,
    ProductInfoRequest,
    ProductUpdate,
    RefreshRequest,
    RegisterRequest,
    SortOrder,
)

configure_logging(settings)
logger = logging.getLogger("shop")

SECURITY_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains; preload",
    "Content-Security-Policy": "default-src 'self'; script-src 'self'; style-src 'self' 'unsafe-inline'; "
                               "img-src 'self' data: https:; connect-src 'self'",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "no-referrer",
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    services = current_services()
    if services is not None:
        # flush write-back carts so pending edits reach MongoDB
        services.carts.shutdown()


app = FastAPI(
    title="E‑Commerce API",
    lifespan=lifespan,
    dependencies=[Depends(rate_limit("global", lambda s: s.rate_limit_max, production_only=True))],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
)

register_error_handlers(app, settings.is_production)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed = (time.perf_counter() - started) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed)
    if settings.is_production:
        response.headers.update(SECURITY_HEADERS)
    return response


@app.get("/")
def read_root():
    return api_response({"service": "E‑commerce backend"}, "E‑commerce backend is running")


@app.get("/health")
def health():
    return api_response({"ok": True})


# Auth
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
login_limit = rate_limit(
    "login", lambda s: s.login_rate_limit_max,
    message="Too many attempts from this IP, please try again after 15 minutes",
)


@auth_router.post("/register")
def register(payload: RegisterRequest, services: Services = Depends(get_services)):
    data = services.auth.register(payload.email, payload.password, payload.first_name, payload.last_name)
    return api_response(data, "Registration successful", 201)


@auth_router.post("/login", dependencies=[Depends(login_limit)])
def login(payload: LoginRequest, services: Services = Depends(get_services)):
    return api_response(services.auth.login(payload.email, payload.password), "Login successful")


@auth_router.post("/refresh-token")
def refresh_token(payload: RefreshRequest, services: Services = Depends(get_services)):
    return api_response(services.auth.refresh(payload.refresh_token), "Token refreshed")


@auth_router.post("/logout")
def logout(
    token: str = Depends(oauth2_scheme),
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    services.auth.logout(user["id"], token)
    return api_response(None, "Logged out successfully")


# Catalog
products_router = APIRouter(prefix="/api/products", tags=["products"])


@products_router.get("")
def list_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=settings.pagination_max_limit),
    search: Optional[str] = None,
    category: Optional[str] = None,
    sort_by: str = Query("created_at", alias="sortBy"),
    order: SortOrder = "desc",
    services: Services = Depends(get_services),
):
    return api_response(services.catalog.list_products(page, limit, search, category, sort_by, order))


@products_router.get("/categories")
def product_categories(services: Services = Depends(get_services)):
    return api_response(services.catalog.categories())


@products_router.get("/featured")
def featured_products(services: Services = Depends(get_services)):
    return api_response(services.catalog.featured())


@products_router.post("/info")
def products_info(payload: ProductInfoRequest, services: Services = Depends(get_services)):
    return api_response(services.catalog.products_info(payload.ids))


@products_router.post("/bulk")
def create_products_bulk(
    payload: List[ProductCreate],
    admin: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    summary = services.catalog.bulk_create(admin, [p.model_dump() for p in payload])
    return api_response(summary, "Products uploaded successfully")


@products_router.get("/{product_id}")
def get_product(product_id: str, services: Services = Depends(get_services)):
    return api_response(services.catalog.get_product(product_id))


@products_router.post("")
def create_product(
    payload: ProductCreate,
    admin: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    product = services.catalog.create_product(admin, payload.model_dump())
    return api_response(product, "Product created successfully", 201)


@products_router.put("/{product_id}")
def update_product(
    product_id: str,
    payload: ProductUpdate,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    product = services.catalog.update_product(user, product_id, payload.model_dump(exclude_none=True))
    return api_response(product, "Product updated successfully")


@products_router.delete("/{product_id}")
def delete_product(
    product_id: str,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    services.catalog.delete_product(user, product_id)
    return api_response(None, "Product deleted successfully")


# Cart
cart_router = APIRouter(prefix="/api/cart", tags=["cart"])


@cart_router.get("")
def get_cart(user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    return api_response(services.carts.get(user["id"]))


@cart_router.post("/add")
def add_to_cart(
    payload: CartItemRequest,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    cart = services.carts.add_item(user["id"], payload.product_id, payload.quantity)
    return api_response(cart, "Item added to cart successfully")


@cart_router.put("/update")
def update_cart_item(
    payload: CartItemRequest,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    cart = services.carts.update_item(user["id"], payload.product_id, payload.quantity)
    return api_response(cart, "Cart updated successfully")


@cart_router.delete("/remove/{product_id}")
def remove_from_cart(
    product_id: str,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    cart = services.carts.remove_item(user["id"], product_id)
    return api_response(cart, "Item removed from cart successfully")


@cart_router.delete("/clear")
def clear_cart(user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    return api_response(services.carts.clear(user["id"]), "Cart cleared successfully")


# Orders
orders_router = APIRouter(prefix="/api/orders", tags=["orders"])


@orders_router.post("")
def create_order(
    payload: OrderCreate,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    order = services.orders.create_order(user["id"], payload.shipping_address.model_dump())
    return api_response(order, "Order created successfully", 201)


@orders_router.get("")
def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=settings.pagination_max_limit),
    status: Optional[OrderStatus] = None,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    return api_response(services.orders.list_orders(user["id"], page, limit, status))


@orders_router.get("/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    return api_response(services.orders.get_order(user, order_id))


@orders_router.post("/{order_id}/cancel")
def cancel_order(order_id: str, user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    return api_response(services.orders.cancel_order(user, order_id), "Order cancelled successfully")


@orders_router.put("/{order_id}/status")
def update_order_status(
    order_id: str,
    payload: OrderStatusUpdate,
    admin: dict = Depends(require_admin),
    services: Services = Depends(get_services),
):
    order = services.orders.update_status(admin, order_id, payload.status)
    return api_response(order, "Order status updated successfully")


# MFA
mfa_router = APIRouter(prefix="/api/mfa", tags=["mfa"])


@mfa_router.post("/enable")
def enable_mfa(user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    return api_response(services.mfa.enable(user["id"]))


@mfa_router.post("/verify-and-enable")
def verify_and_enable_mfa(
    payload: MfaTokenRequest,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    services.mfa.verify_and_enable(user["id"], payload.token)
    return api_response({"message": "MFA enabled successfully"}, "MFA enabled successfully")


@mfa_router.post("/disable")
def disable_mfa(
    payload: MfaChallengeRequest,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    services.mfa.disable(user["id"], payload.token, payload.backup_code)
    return api_response({"message": "MFA disabled successfully"}, "MFA disabled successfully")


@mfa_router.post("/verify")
def verify_mfa(
    payload: MfaChallengeRequest,
    user: dict = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    services.mfa.verify(user["id"], payload.token, payload.backup_code)
    return api_response({"message": "MFA verification successful"}, "MFA verification successful")


for router in (auth_router, products_router, cart_router, orders_router, mfa_router):
    app.include_router(router)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.port))
    uvicorn.run(app, host="0.0.0.0", port=port)
