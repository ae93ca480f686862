import logging
import os
from decimal import Decimal
from typing import Annotated, List, Literal, Optional

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, EmailStr, Field
from sqlalchemy.exc import SQLAlchemyError

from auth import (
    Authenticator,
    Identity,
    current_identity,
    get_authenticator,
    optional_identity,
    require,
    require_any,
)
from config import Settings
from database import create_db_engine, create_session_factory, init_db
from errors import Forbidden, NotFound, ShopError, StoreUnavailable
from models import MAX_QUANTITY
from orders import OrderService
from schemas import (
    Address,
    AuthResponse,
    CartOut,
    CategoryOut,
    OrderOut,
    ProductOut,
    ProductPage,
    UserOut,
    VariantOut,
)
from store import Store

logger = logging.getLogger(__name__)

router = APIRouter()


def get_store(request: Request) -> Store:
    return request.app.state.store


def get_order_service(request: Request) -> OrderService:
    return request.app.state.orders


# Schemas (request)
ImageUrl = Annotated[str, Field(min_length=1, max_length=500)]


class RegisterRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class UserAdminUpdate(ProfileUpdate):
    role: Optional[Literal["customer", "vendor", "admin"]] = None
    is_active: Optional[bool] = None


class CategoryIn(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None


class VariantIn(BaseModel):
    size: str
    stock_quantity: int = Field(0, ge=0, le=MAX_QUANTITY)
    price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)


class VariantUpdate(BaseModel):
    size: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)


class StockAdjustment(BaseModel):
    amount: int = Field(..., gt=0, le=MAX_QUANTITY)


class ProductIn(BaseModel):
    name: str
    description: Optional[str] = None
    base_price: Decimal = Field(..., ge=0, max_digits=10, decimal_places=2)
    sku: Optional[str] = None
    brand: Optional[str] = None
    category_id: Optional[int] = None
    is_active: bool = True
    images: List[ImageUrl] = []
    variants: List[VariantIn] = []


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    base_price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)
    sku: Optional[str] = None
    brand: Optional[str] = None
    category_id: Optional[int] = None
    is_active: Optional[bool] = None
    images: Optional[List[ImageUrl]] = None


class CartItemIn(BaseModel):
    variant_id: int
    quantity: int = Field(1, gt=0, le=MAX_QUANTITY)


class OrderLineIn(BaseModel):
    variant_id: int = Field(..., validation_alias=AliasChoices("variant_id", "variantId"))
    quantity: int = Field(..., gt=0, le=MAX_QUANTITY)


class PlaceOrderRequest(BaseModel):
    items: List[OrderLineIn]
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_method: Optional[str] = None


class CheckoutRequest(BaseModel):
    shipping_address: Optional[Address] = None
    billing_address: Optional[Address] = None
    payment_method: str = "card"


class OrderStatusUpdate(BaseModel):
    status: Optional[str] = None
    payment_status: Optional[str] = None


def _address(address: Optional[Address]):
    return address.model_dump() if address is not None else None


def _window(limit: int, offset: int):
    return min(max(limit, 1), 100), max(offset, 0)


# Health and helpers
@router.get("/")
def root():
    return {"message": "Storefront API running"}


@router.get("/test")
def test_database(store: Store = Depends(get_store)):
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "connection_status": "Not Connected",
        "tables": [],
    }
    try:
        response["tables"] = store.ping()[:10]
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
    except SQLAlchemyError as e:
        logger.warning("Database check failed: %s", e)
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
@router.post("/auth/register", response_model=AuthResponse, status_code=201)
def register(payload: RegisterRequest, authenticator: Authenticator = Depends(get_authenticator)):
    user, token = authenticator.register(
        payload.email, payload.password, first_name=payload.first_name, last_name=payload.last_name
    )
    return AuthResponse(token=token, user=UserOut.model_validate(user))


@router.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginRequest, authenticator: Authenticator = Depends(get_authenticator)):
    user, token = authenticator.login(payload.email, payload.password)
    return AuthResponse(token=token, user=UserOut.model_validate(user))


@router.get("/me", response_model=UserOut)
def me(identity: Identity = Depends(current_identity), store: Store = Depends(get_store)):
    return UserOut.model_validate(store.find_user_by_id(identity.user_id))


@router.put("/me", response_model=UserOut)
def update_profile(update: ProfileUpdate, identity: Identity = Depends(current_identity),
                   store: Store = Depends(get_store)):
    user = store.update_user(identity.user_id, update.model_dump(exclude_unset=True))
    return UserOut.model_validate(user)


# Users
@router.get("/users", response_model=List[UserOut])
def list_users(limit: int = 50, offset: int = 0, identity: Identity = Depends(require("users:admin")),
               store: Store = Depends(get_store)):
    limit, offset = _window(limit, offset)
    return [UserOut.model_validate(u) for u in store.list_users(limit=limit, offset=offset)]


@router.get("/users/{user_id}", response_model=UserOut)
def get_user(user_id: int, identity: Identity = Depends(require("users:admin")),
             store: Store = Depends(get_store)):
    return UserOut.model_validate(store.find_user_by_id(user_id))


@router.put("/users/{user_id}", response_model=UserOut)
def update_user(user_id: int, update: UserAdminUpdate, identity: Identity = Depends(require("users:admin")),
                store: Store = Depends(get_store)):
    fields = update.model_dump(exclude_unset=True, exclude_none=True)
    user = store.update_user(user_id, fields)
    logger.info("User %s updated by admin %s: %s", user_id, identity.user_id, sorted(fields))
    return UserOut.model_validate(user)


# Categories
@router.get("/categories", response_model=List[CategoryOut])
def list_categories(store: Store = Depends(get_store)):
    return [CategoryOut.model_validate(c) for c in store.list_categories()]


@router.post("/categories", response_model=CategoryOut, status_code=201)
def create_category(payload: CategoryIn, identity: Identity = Depends(require("catalog:admin")),
                    store: Store = Depends(get_store)):
    category = store.create_category(payload.name, payload.slug, payload.description)
    return CategoryOut.model_validate(category)


# Products
@router.get("/products", response_model=ProductPage)
def list_products(q: Optional[str] = None, category: Optional[str] = None, size: Optional[str] = None,
                  sort: Optional[str] = None, page: int = 1, page_size: int = 12,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  store: Store = Depends(get_store)):
    page = max(page, 1)
    page_size = min(max(page_size, 1), 100)
    items, total = store.list_products(
        q=q, category=category, size=size, min_price=min_price, max_price=max_price,
        sort=sort, page=page, page_size=page_size,
    )
    return ProductPage(
        items=[ProductOut.model_validate(p) for p in items], page=page, page_size=page_size, total=total
    )


@router.get("/products/{product_id}", response_model=ProductOut)
def get_product(product_id: int, identity: Optional[Identity] = Depends(optional_identity),
                store: Store = Depends(get_store)):
    product = store.get_product(product_id)
    # Deactivated products stay visible to catalog editors
    if not product.is_active and not (identity and identity.can("catalog:write")):
        raise NotFound("Product not found")
    return ProductOut.model_validate(product)


@router.post("/products", response_model=ProductOut, status_code=201)
def create_product(payload: ProductIn, identity: Identity = Depends(require("catalog:admin")),
                   store: Store = Depends(get_store)):
    fields = payload.model_dump(exclude={"variants", "images"})
    product = store.create_product(fields, [v.model_dump() for v in payload.variants], payload.images)
    logger.info("Product %s created by %s", product.id, identity.user_id)
    return ProductOut.model_validate(product)


@router.put("/products/{product_id}", response_model=ProductOut)
def update_product(product_id: int, payload: ProductUpdate, identity: Identity = Depends(require("catalog:write")),
                   store: Store = Depends(get_store)):
    product = store.update_product(product_id, payload.model_dump(exclude_unset=True, exclude_none=True))
    return ProductOut.model_validate(product)


@router.delete("/products/{product_id}")
def delete_product(product_id: int, identity: Identity = Depends(require("catalog:write")),
                   store: Store = Depends(get_store)):
    store.deactivate_product(product_id)
    return {"id": product_id, "deactivated": True}


# Variants
@router.post("/products/{product_id}/variants", response_model=VariantOut, status_code=201)
def create_variant(product_id: int, payload: VariantIn, identity: Identity = Depends(require("catalog:write")),
                   store: Store = Depends(get_store)):
    variant = store.create_variant(product_id, payload.size, payload.stock_quantity, payload.price)
    return VariantOut.model_validate(variant)


@router.put("/variants/{variant_id}", response_model=VariantOut)
def update_variant(variant_id: int, payload: VariantUpdate, identity: Identity = Depends(require("catalog:write")),
                   store: Store = Depends(get_store)):
    variant = store.update_variant(variant_id, payload.model_dump(exclude_unset=True, exclude_none=True))
    return VariantOut.model_validate(variant)


@router.post("/variants/{variant_id}/restock", response_model=VariantOut)
def restock_variant(variant_id: int, payload: StockAdjustment, identity: Identity = Depends(require("stock:write")),
                    store: Store = Depends(get_store)):
    return VariantOut.model_validate(store.restock(variant_id, payload.amount))


@router.post("/variants/{variant_id}/writeoff", response_model=VariantOut)
def write_off_variant(variant_id: int, payload: StockAdjustment, identity: Identity = Depends(require("stock:write")),
                      store: Store = Depends(get_store)):
    return VariantOut.model_validate(store.decrement_stock(variant_id, payload.amount))


@router.delete("/variants/{variant_id}")
def delete_variant(variant_id: int, identity: Identity = Depends(require("catalog:admin")),
                   store: Store = Depends(get_store)):
    store.delete_variant(variant_id)
    return {"id": variant_id, "deleted": True}


# Cart
@router.get("/cart", response_model=CartOut)
def get_cart(identity: Identity = Depends(require("cart:use")), store: Store = Depends(get_store)):
    return CartOut.from_entries(store.list_cart(identity.user_id))


@router.post("/cart/add", response_model=CartOut)
def cart_add(item: CartItemIn, identity: Identity = Depends(require("cart:use")),
             store: Store = Depends(get_store)):
    store.add_to_cart(identity.user_id, item.variant_id, item.quantity)
    return CartOut.from_entries(store.list_cart(identity.user_id))


@router.post("/cart/update", response_model=CartOut)
def cart_update(item: CartItemIn, identity: Identity = Depends(require("cart:use")),
                store: Store = Depends(get_store)):
    store.set_cart_quantity(identity.user_id, item.variant_id, item.quantity)
    return CartOut.from_entries(store.list_cart(identity.user_id))


@router.post("/cart/remove", response_model=CartOut)
def cart_remove(item: CartItemIn, identity: Identity = Depends(require("cart:use")),
                store: Store = Depends(get_store)):
    store.remove_from_cart(identity.user_id, item.variant_id)
    return CartOut.from_entries(store.list_cart(identity.user_id))


# Checkout & Orders
@router.post("/checkout", response_model=OrderOut, status_code=201)
def checkout(payload: CheckoutRequest, identity: Identity = Depends(require("orders:create")),
             orders: OrderService = Depends(get_order_service)):
    order = orders.checkout(
        identity.user_id,
        shipping_address=_address(payload.shipping_address),
        billing_address=_address(payload.billing_address),
        payment_method=payload.payment_method,
    )
    return OrderOut.model_validate(order)


@router.post("/orders", response_model=OrderOut, status_code=201)
def place_order(payload: PlaceOrderRequest, identity: Identity = Depends(require("orders:create")),
                orders: OrderService = Depends(get_order_service)):
    order = orders.place_order(
        identity.user_id,
        [(item.variant_id, item.quantity) for item in payload.items],
        shipping_address=_address(payload.shipping_address),
        billing_address=_address(payload.billing_address),
        payment_method=payload.payment_method,
    )
    return OrderOut.model_validate(order)


@router.get("/orders", response_model=List[OrderOut])
def list_orders(status: Optional[str] = None, user_id: Optional[int] = None, limit: int = 50, offset: int = 0,
                identity: Identity = Depends(require_any("orders:read_own", "orders:read_any")),
                store: Store = Depends(get_store)):
    if not identity.can("orders:read_any"):
        user_id = identity.user_id
    limit, offset = _window(limit, offset)
    orders = store.list_orders(user_id=user_id, status=status, limit=limit, offset=offset)
    return [OrderOut.model_validate(o) for o in orders]


@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, identity: Identity = Depends(require_any("orders:read_own", "orders:read_any")),
              store: Store = Depends(get_store)):
    order = store.get_order(order_id)
    if order.user_id != identity.user_id and not identity.can("orders:read_any"):
        raise Forbidden()
    return OrderOut.model_validate(order)


@router.put("/orders/{order_id}", response_model=OrderOut)
def update_order(order_id: int, payload: OrderStatusUpdate, identity: Identity = Depends(require("orders:update")),
                 orders: OrderService = Depends(get_order_service)):
    order = orders.update_status(order_id, status=payload.status, payment_status=payload.payment_status)
    return OrderOut.model_validate(order)


# Optional: seed sample products for demo
SAMPLE_PRODUCTS = [
    {
        "name": "Classic Crew Tee",
        "description": "Heavyweight cotton t-shirt.",
        "base_price": Decimal("19.99"),
        "sku": "TEE-CREW",
        "brand": "Basics Co",
        "images": ["https://cdn.example.com/catalog/tee-crew.jpg"],
        "variants": [
            {"size": "S", "stock_quantity": 40, "price": Decimal("19.99")},
            {"size": "M", "stock_quantity": 60, "price": Decimal("19.99")},
            {"size": "L", "stock_quantity": 40, "price": Decimal("21.99")},
        ],
    },
    {
        "name": "Everyday Hoodie",
        "description": "Brushed fleece pullover hoodie.",
        "base_price": Decimal("49.00"),
        "sku": "HOOD-EVD",
        "brand": "Basics Co",
        "images": ["https://cdn.example.com/catalog/hoodie-everyday.jpg"],
        "variants": [
            {"size": "M", "stock_quantity": 25, "price": Decimal("49.00")},
            {"size": "L", "stock_quantity": 25, "price": Decimal("49.00")},
            {"size": "XL", "stock_quantity": 10, "price": Decimal("54.00")},
        ],
    },
    {
        "name": "Canvas Sneaker",
        "description": "Low-top canvas sneaker with rubber sole.",
        "base_price": Decimal("65.00"),
        "sku": "SNK-CNV",
        "brand": "Stride",
        "images": ["https://cdn.example.com/catalog/sneaker-canvas.jpg"],
        "variants": [
            {"size": "42", "stock_quantity": 12, "price": Decimal("65.00")},
            {"size": "43", "stock_quantity": 12, "price": Decimal("65.00")},
        ],
    },
]


@router.post("/admin/seed")
def seed_products(identity: Identity = Depends(require("catalog:admin")), store: Store = Depends(get_store)):
    count = store.seed_catalog(SAMPLE_PRODUCTS)
    if not count:
        return {"seeded": False, "message": "Products already exist"}
    return {"seeded": True, "count": count}


# App setup
def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    engine = create_db_engine(settings.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)
    store = Store(session_factory)
    authenticator = Authenticator(
        store, settings.jwt_secret, expires_min=settings.jwt_expires_min, bcrypt_rounds=settings.bcrypt_rounds
    )

    app = FastAPI(title="Storefront API", version="0.1.0")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.store = store
    app.state.authenticator = authenticator
    app.state.orders = OrderService(store, track_stock=settings.track_stock)

    @app.exception_handler(ShopError)
    async def shop_error_handler(request: Request, exc: ShopError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        body = {"detail": "Invalid request", "code": "invalid_request", "errors": jsonable_encoder(exc.errors())}
        return JSONResponse(status_code=400, content=body)

    @app.exception_handler(SQLAlchemyError)
    async def store_error_handler(request: Request, exc: SQLAlchemyError):
        logger.error("Store error on %s %s", request.method, request.url.path, exc_info=exc)
        error = StoreUnavailable()
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    app.include_router(router)

    if settings.admin_email and settings.admin_password:
        if store.find_user_by_email(settings.admin_email) is None:
            authenticator.register(settings.admin_email, settings.admin_password, role="admin")
            logger.info("Created bootstrap admin %s", settings.admin_email)

    return app


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)
