import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Literal, Optional, Union

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field
from starlette.concurrency import run_in_threadpool

import admin
import auth
import catalog
import database
import favorites
import notices
import settings
import uploads
from admin import ConfirmationRequired, ProductInvalid, ProductPayload
from auth import AuthError, Identity
from cart import InsufficientStock, LineNotFound
from checkout import CheckoutError, CheckoutResult, OrderForm, OrderFormInvalid, validate_order_form
from database import StoreError
from schemas import OrderStatus, ReviewStatus
from state import AppState
from uploads import UploadError

logging.basicConfig(level=settings.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("capriccio")

TimeRange = Literal["all", "1week", "15days", "1month"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    warning = settings.NO_BACKEND_WARNING if database.db is None else None
    store = AppState(startup_warning=warning)
    store.start()
    try:
        auth.seed_admin()
    except StoreError as exc:
        logger.error("Admin account could not be prepared: %s", exc.message)
    app.state.store = store
    yield
    store.stop()


app = FastAPI(title="Capriccio Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

auth_scheme = HTTPBearer(auto_error=False)


# ---------- Error handling ----------

STORE_STATUS = {
    StoreError.PERMISSION_DENIED: 403,
    StoreError.UNAVAILABLE: 503,
    StoreError.RESOURCE_EXHAUSTED: 429,
}
STORE_MESSAGES = {
    StoreError.PERMISSION_DENIED: "Permission denied by the database access rules.",
    StoreError.UNAVAILABLE: "Database connection error. Check your connection and try again.",
    StoreError.RESOURCE_EXHAUSTED: "Quota exceeded. Please try again later.",
}
AUTH_STATUS = {"too-many-requests": 429, "not-admin": 403}


def error_response(status_code: int, notice: notices.Notice, **extra) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": notice.message, "notice": notice.model_dump(), **extra},
    )


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    message = STORE_MESSAGES.get(exc.code, f"Unexpected database error: {exc.message}")
    return error_response(STORE_STATUS.get(exc.code, 500), notices.error(message, 7000), code=exc.code)


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError):
    return error_response(AUTH_STATUS.get(exc.code, 401), notices.error(exc.message), code=exc.code)


@app.exception_handler(InsufficientStock)
async def insufficient_stock_handler(request: Request, exc: InsufficientStock):
    return error_response(409, exc.notice, available=exc.available)


@app.exception_handler(LineNotFound)
async def line_not_found_handler(request: Request, exc: LineNotFound):
    return error_response(404, notices.error("Product is not in the cart"))


@app.exception_handler(CheckoutError)
async def checkout_error_handler(request: Request, exc: CheckoutError):
    return error_response(400, notices.error(str(exc)))


@app.exception_handler(OrderFormInvalid)
async def order_form_handler(request: Request, exc: OrderFormInvalid):
    return error_response(422, notices.error("Please correct the highlighted fields."), errors=exc.errors)


@app.exception_handler(ConfirmationRequired)
async def confirmation_handler(request: Request, exc: ConfirmationRequired):
    return error_response(409, notices.warning(str(exc)), confirm_required=True)


@app.exception_handler(ProductInvalid)
async def product_invalid_handler(request: Request, exc: ProductInvalid):
    return error_response(400, notices.error(str(exc)))


@app.exception_handler(UploadError)
async def upload_error_handler(request: Request, exc: UploadError):
    return error_response(502, notices.error(str(exc), 7000))


# ---------- Dependencies ----------

def get_state(request: Request) -> AppState:
    return request.app.state.store


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
                           state: AppState = Depends(get_state)) -> Identity:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return state.auth.verify(credentials.credentials)


def require_admin(user: Identity = Depends(get_current_user)) -> Identity:
    if auth.profile_role(user.uid) != "admin":
        raise HTTPException(status_code=403, detail="Admin only")
    return user


# ---------- Health ----------

@app.get("/")
def root():
    return {"message": "Capriccio storefront API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Available"
            response["database_name"] = database.db.name
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()
        else:
            response["database"] = "⚠️ Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:100]}"
    return response


@app.get("/api/config")
def get_config(state: AppState = Depends(get_state)):
    return {
        "backend": database.db is not None,
        "warning": state.startup_warning,
        "uploads": settings.upload_configured(),
        "store_name": settings.STORE_NAME,
        "pickup_address": settings.PICKUP_ADDRESS,
    }


# ---------- Auth ----------

class LoginPayload(BaseModel):
    email: str
    password: str


class CustomTokenPayload(BaseModel):
    token: str


def session_response(token: str, identity: Identity, extra_notices: Optional[List[notices.Notice]] = None):
    profile, profile_notices = auth.ensure_profile(identity.uid)
    return {
        "token": token,
        "user": {"id": identity.uid, "anonymous": identity.anonymous, "email": identity.email,
                 "role": profile.get("role", "user")},
        "notices": [*(extra_notices or []), *profile_notices],
    }


@app.post("/api/auth/anonymous")
def sign_in_anonymously(state: AppState = Depends(get_state)):
    token, identity = state.auth.sign_in_anonymously()
    return session_response(token, identity)


@app.post("/api/auth/custom-token")
def sign_in_with_custom_token(payload: CustomTokenPayload, state: AppState = Depends(get_state)):
    try:
        token, identity = state.auth.sign_in_with_custom_token(payload.token)
    except AuthError as exc:
        logger.warning("Custom token rejected, continuing anonymously")
        token, identity = state.auth.sign_in_anonymously()
        return session_response(token, identity, [notices.error(exc.message)])
    return session_response(token, identity)


@app.post("/api/auth/login")
def login(payload: LoginPayload, request: Request, state: AppState = Depends(get_state)):
    ip = request.client.host if request.client else "unknown"
    token, identity = state.auth.sign_in_with_email_and_password(payload.email, payload.password, ip)
    response = session_response(token, identity)
    if response["user"]["role"] != "admin":
        state.auth.sign_out(token)
        raise AuthError("not-admin")
    response["notices"].append(notices.success("Welcome, administrator!"))
    return response


@app.post("/api/auth/logout")
def logout(credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
           state: AppState = Depends(get_state)):
    if credentials is None:
        raise HTTPException(status_code=401, detail="Not authenticated")
    state.auth.sign_out(credentials.credentials)
    return {"signed_out": True, "notice": notices.info("Signed out.")}


@app.get("/api/me")
def me(user: Identity = Depends(get_current_user)):
    profile, profile_notices = auth.ensure_profile(user.uid)
    return {
        "id": user.uid,
        "anonymous": user.anonymous,
        "email": user.email,
        "role": profile.get("role", "user"),
        "created_at": profile.get("created_at"),
        "notices": profile_notices,
    }


# ---------- Catalog ----------

@app.get("/api/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None,
                  state: AppState = Depends(get_state)):
    products = catalog.search(state.catalog.products(), q)
    if category:
        products = [p for p in products if (p.get("category") or catalog.UNCATEGORIZED) == category]
    return products


@app.get("/api/catalog")
def storefront(q: Optional[str] = None, state: AppState = Depends(get_state)):
    products = state.catalog.products()
    found = catalog.search(products, q)
    return {
        "loading": state.catalog.loading,
        "error": state.catalog.error,
        "featured": catalog.featured(products),
        "categories": [{"name": name, "products": items} for name, items in catalog.group_by_category(found)],
    }


@app.get("/api/products/{product_id}")
def get_product(product_id: str, state: AppState = Depends(get_state)):
    product = state.catalog.get(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {**product, "reviews": catalog.approved_reviews(product_id)}


class ReviewPayload(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


@app.get("/api/products/{product_id}/reviews")
def product_reviews(product_id: str):
    return catalog.approved_reviews(product_id)


@app.post("/api/products/{product_id}/reviews")
def add_review(product_id: str, payload: ReviewPayload, user: Identity = Depends(get_current_user),
               state: AppState = Depends(get_state)):
    if state.catalog.get(product_id) is None:
        raise HTTPException(status_code=404, detail="Not found")
    review_id = catalog.submit_review(product_id, user.uid, payload.rating, payload.comment)
    return {
        "id": review_id,
        "notice": notices.success("Review submitted! It will be visible once an administrator approves it.", 5000),
    }


# ---------- Favorites ----------

@app.get("/api/favorites")
def get_favorites(user: Identity = Depends(get_current_user), state: AppState = Depends(get_state)):
    ids = favorites.favorite_ids(user.uid)
    return {"product_ids": ids, "products": catalog.favorites(state.catalog.products(), ids)}


@app.post("/api/favorites/{product_id}")
def toggle_favorite(product_id: str, user: Identity = Depends(get_current_user)):
    ids, notice = favorites.toggle_favorite(user.uid, product_id)
    return {"product_ids": ids, "notice": notice}


# ---------- Cart ----------

class CartItemPayload(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


@app.get("/api/cart")
def get_cart(user: Identity = Depends(get_current_user), state: AppState = Depends(get_state)):
    return state.session(user.uid).cart.view()


@app.post("/api/cart/items")
def add_to_cart(payload: CartItemPayload, user: Identity = Depends(get_current_user),
                state: AppState = Depends(get_state)):
    product = state.catalog.get(payload.product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    session = state.session(user.uid)
    with session.lock:
        notice = session.cart.add_item(product, payload.quantity)
        return {"cart": session.cart.view(), "notice": notice}


@app.post("/api/cart/items/{product_id}/increase")
def increase_quantity(product_id: str, user: Identity = Depends(get_current_user),
                      state: AppState = Depends(get_state)):
    session = state.session(user.uid)
    with session.lock:
        notice = session.cart.increase(product_id)
        return {"cart": session.cart.view(), "notice": notice}


@app.post("/api/cart/items/{product_id}/decrease")
def decrease_quantity(product_id: str, user: Identity = Depends(get_current_user),
                      state: AppState = Depends(get_state)):
    session = state.session(user.uid)
    with session.lock:
        notice = session.cart.decrease(product_id)
        return {"cart": session.cart.view(), "notice": notice}


@app.delete("/api/cart/items/{product_id}")
def remove_from_cart(product_id: str, user: Identity = Depends(get_current_user),
                     state: AppState = Depends(get_state)):
    session = state.session(user.uid)
    with session.lock:
        notice = session.cart.remove_item(product_id)
        return {"cart": session.cart.view(), "notice": notice}


@app.delete("/api/cart")
def clear_cart(user: Identity = Depends(get_current_user), state: AppState = Depends(get_state)):
    session = state.session(user.uid)
    with session.lock:
        notice = session.cart.clear()
        return {"cart": session.cart.view(), "notice": notice}


# ---------- Checkout ----------

def checkout_view(session) -> dict:
    return {"step": session.checkout.step.value, "cart": session.cart.view()}


@app.get("/api/checkout")
def get_checkout(user: Identity = Depends(get_current_user), state: AppState = Depends(get_state)):
    return checkout_view(state.session(user.uid))


@app.post("/api/checkout/summary")
def checkout_summary(user: Identity = Depends(get_current_user), state: AppState = Depends(get_state)):
    session = state.session(user.uid)
    with session.lock:
        session.checkout.to_summary(session.cart)
        return checkout_view(session)


@app.post("/api/checkout/form")
def checkout_form(user: Identity = Depends(get_current_user), state: AppState = Depends(get_state)):
    session = state.session(user.uid)
    with session.lock:
        session.checkout.to_form()
        return checkout_view(session)


@app.post("/api/checkout/back")
def checkout_back(user: Identity = Depends(get_current_user), state: AppState = Depends(get_state)):
    session = state.session(user.uid)
    with session.lock:
        session.checkout.back()
        return checkout_view(session)


@app.post("/api/checkout/validate")
def checkout_validate(form: OrderForm, user: Identity = Depends(get_current_user),
                      state: AppState = Depends(get_state)):
    cart = state.session(user.uid).cart
    total = cart.total()
    try:
        details = validate_order_form(form, total)
    except OrderFormInvalid as exc:
        return {"valid": False, "errors": exc.errors, "total": total, "change": None}
    return {"valid": True, "errors": {}, "total": total, "change": details.change}


@app.post("/api/checkout/submit", response_model=CheckoutResult)
def checkout_submit(form: OrderForm, user: Identity = Depends(get_current_user),
                    state: AppState = Depends(get_state)):
    session = state.session(user.uid)
    with session.lock:
        return session.checkout.submit(session.cart, form, user.uid)


# ---------- Admin: products ----------

class StockPayload(BaseModel):
    stock: Union[str, int, float]


@app.get("/api/admin/products", dependencies=[Depends(require_admin)])
def admin_products(category: Optional[str] = None, q: Optional[str] = None,
                   state: AppState = Depends(get_state)):
    products = state.catalog.products()
    return {
        "products": catalog.filter_products(products, category, q),
        "categories": catalog.categories(products),
    }


@app.post("/api/admin/products", dependencies=[Depends(require_admin)])
def create_product(payload: ProductPayload):
    product_id = admin.create_product(payload)
    return {"id": product_id, "notice": notices.success("Product added successfully!")}


@app.put("/api/admin/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: ProductPayload):
    if not admin.update_product(product_id, payload):
        raise HTTPException(status_code=404, detail="Not found")
    return {"updated": True, "notice": notices.success("Product updated successfully!")}


@app.delete("/api/admin/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str, confirm: bool = False):
    deleted = admin.delete_product(product_id, confirmed=confirm)
    return {"deleted": deleted, "notice": notices.success("Product deleted.")}


@app.put("/api/admin/products/{product_id}/stock", dependencies=[Depends(require_admin)])
def update_stock(product_id: str, payload: StockPayload):
    stock = admin.set_stock(product_id, payload.stock)
    if stock is None:
        raise HTTPException(status_code=404, detail="Not found")
    return {"stock": stock, "notice": notices.success("Stock updated.", 1500)}


class UploadResponse(BaseModel):
    url: str


@app.post("/api/admin/uploads", dependencies=[Depends(require_admin)], response_model=UploadResponse)
def upload_image(file: UploadFile = File(...)):
    content = file.file.read()
    return {"url": uploads.upload_image(file.filename or "upload", content, file.content_type)}


# ---------- Admin: orders & metrics ----------

class OrderStatusPayload(BaseModel):
    status: OrderStatus


class ClearOrdersPayload(BaseModel):
    confirm: bool = False
    time_range: TimeRange = "all"


@app.get("/api/admin/orders", dependencies=[Depends(require_admin)])
def admin_orders(time_range: TimeRange = Query("all", alias="range")):
    return admin.list_orders(time_range)


@app.put("/api/admin/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, payload: OrderStatusPayload):
    if not admin.update_order_status(order_id, payload.status):
        raise HTTPException(status_code=404, detail="Not found")
    return {"updated": True, "notice": notices.success(f'Order status updated to "{payload.status}"')}


@app.post("/api/admin/orders/clear", dependencies=[Depends(require_admin)])
def clear_orders(payload: ClearOrdersPayload):
    deleted = admin.bulk_clear_orders(confirmed=payload.confirm, time_range=payload.time_range)
    return {
        "deleted": deleted,
        "metrics": admin.compute_metrics([]),
        "most_ordered": [],
        "top_revenue": [],
        "notice": notices.success(f"{deleted} orders deleted."),
    }


@app.get("/api/admin/metrics", dependencies=[Depends(require_admin)])
def admin_metrics(time_range: TimeRange = Query("all", alias="range"),
                  top: int = Query(admin.TOP_PRODUCTS, ge=1)):
    orders = admin.list_orders(time_range)
    ranking = admin.rank_products(orders, top)
    return {
        "range": time_range,
        "metrics": admin.compute_metrics(orders),
        "most_ordered": ranking.by_quantity,
        "top_revenue": ranking.by_revenue,
    }


async def order_events(request: Request, time_range: str = "all", top: int = admin.TOP_PRODUCTS,
                       keep_alive: float = 15):
    """
    Server-sent events: the order list and its metrics on every change.

    The order subscription lives exactly as long as the generator; it is
    released when the client disconnects or the response is closed.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def on_data(docs):
        loop.call_soon_threadsafe(queue.put_nowait, ("orders", docs))

    def on_error(exc: StoreError):
        loop.call_soon_threadsafe(queue.put_nowait, ("error", exc))

    unsubscribe = await run_in_threadpool(
        database.subscribe, "order", admin.range_query(time_range), on_data, on_error
    )
    try:
        while not await request.is_disconnected():
            try:
                kind, payload = await asyncio.wait_for(queue.get(), timeout=keep_alive)
            except asyncio.TimeoutError:
                yield ": keep-alive\n\n"
                continue
            if kind == "error":
                data = {"notice": notices.error("Orders could not be loaded.").model_dump()}
            else:
                orders = admin.newest_first(payload)
                ranking = admin.rank_products(orders, top)
                data = {
                    "orders": orders,
                    "metrics": admin.compute_metrics(orders).model_dump(),
                    "most_ordered": [p.model_dump() for p in ranking.by_quantity],
                    "top_revenue": [p.model_dump() for p in ranking.by_revenue],
                }
            yield f"event: {kind}\ndata: {json.dumps(data, default=str)}\n\n"
    finally:
        unsubscribe()


@app.get("/api/admin/orders/stream", dependencies=[Depends(require_admin)])
async def stream_orders(request: Request, time_range: TimeRange = Query("all", alias="range"),
                        top: int = Query(admin.TOP_PRODUCTS, ge=1)):
    return StreamingResponse(order_events(request, time_range, top), media_type="text/event-stream")


# ---------- Admin: reviews ----------

class ReviewStatusPayload(BaseModel):
    status: ReviewStatus


@app.get("/api/admin/reviews", dependencies=[Depends(require_admin)])
def admin_reviews(time_range: TimeRange = Query("all", alias="range")):
    return admin.list_reviews(time_range)


@app.put("/api/admin/reviews/{review_id}/status", dependencies=[Depends(require_admin)])
def update_review_status(review_id: str, payload: ReviewStatusPayload):
    if not admin.update_review_status(review_id, payload.status):
        raise HTTPException(status_code=404, detail="Not found")
    return {"updated": True, "notice": notices.success(f'Review status updated to "{payload.status}"')}


@app.delete("/api/admin/reviews/{review_id}", dependencies=[Depends(require_admin)])
def delete_review(review_id: str, confirm: bool = False):
    deleted = admin.delete_review(review_id, confirmed=confirm)
    return {"deleted": deleted, "notice": notices.success("Review deleted.")}


# ---------- Admin: demo data ----------

class SeedPayload(BaseModel):
    orders: int = Field(0, ge=0, le=500)


@app.post("/api/admin/seed", dependencies=[Depends(require_admin)])
def seed(payload: SeedPayload):
    return {"created": admin.seed_demo(payload.orders)}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
