import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, EmailStr, Field, field_validator

import addresses
import carts
import catalog
import database
import orders
from exceptions import (
    ERROR_STATUS_CODES,
    InvalidIdError,
    InvalidInputError,
    NotAuthenticatedError,
    ProductNotFoundError,
    RateLimitExceededError,
    StorefrontError,
)
from inventory import derive_product_status
from rate_limit import FixedWindowRateLimiter, rate_limited
from repository import is_valid_id
from schemas import Payment, Product as ProductSchema, ShippingAddress, User as UserSchema
from security import (
    create_access_token,
    get_current_user,
    hash_password,
    is_admin,
    require_admin,
    verify_password,
)
from settings import (
    ACCESS_TOKEN_EXPIRE_MINUTES,
    AUTH_COOKIE_NAME,
    LOG_LEVEL,
    LOGIN_RATE_LIMIT,
    LOGIN_RATE_WINDOW_SECONDS,
    MAX_CART_ITEM_QUANTITY,
)

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        database.ensure_indexes(database.db)
    yield


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.login_limiter = FixedWindowRateLimiter(LOGIN_RATE_LIMIT, LOGIN_RATE_WINDOW_SECONDS)

get_repository = database.get_repository


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError) -> JSONResponse:
    """Map StorefrontError subclasses to HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    headers = None
    if isinstance(exc, RateLimitExceededError):
        headers = {"Retry-After": str(exc.retry_after)}
    elif isinstance(exc, NotAuthenticatedError):
        headers = {"WWW-Authenticate": "Bearer"}
    return JSONResponse(
        status_code=status_code,
        content={"detail": exc.message, "error_type": type(exc).__name__, **exc.extra},
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = {}
    for err in exc.errors():
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        errors[".".join(loc) or "body"] = err.get("msg", "Invalid value")
    return JSONResponse(status_code=400, content={"detail": "Validation failed", "errors": errors})


def _validate_id(kind: str, value: str) -> None:
    if not is_valid_id(value):
        raise InvalidIdError(kind, value)


# Routes
@app.get("/")
def read_root():
    return {"message": "Storefront API"}


@app.get("/test")
def test_database():
    db = database.db
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            response["database_name"] = db.name
            response["collections"] = db.list_collection_names()[:10]
            response["database"] = "✅ Connected & Working"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


# Auth
class RegisterInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=8)


class LoginInput(BaseModel):
    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


def _public_user(user: dict) -> dict:
    user = dict(user)
    user.pop("password_hash", None)
    return user


def _set_auth_cookie(response: Response, token: str) -> None:
    response.set_cookie(
        AUTH_COOKIE_NAME,
        token,
        httponly=True,
        samesite="lax",
        secure=os.getenv("ENVIRONMENT") == "production",
        max_age=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    )


@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterInput, response: Response, repo=Depends(get_repository)):
    email = payload.email.lower()
    if repo.get_user_by_email(email):
        raise InvalidInputError("email", "Email already registered")
    user_model = UserSchema(
        name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
        role="customer",
    )
    user = repo.insert_user(user_model.model_dump())
    token = create_access_token({"sub": user["id"]})
    _set_auth_cookie(response, token)
    return TokenResponse(access_token=token, user=_public_user(user))


@app.post("/api/auth/login", response_model=TokenResponse,
          dependencies=[Depends(rate_limited("login_limiter"))])
def login(payload: LoginInput, response: Response, repo=Depends(get_repository)):
    user = repo.get_user_by_email(payload.email.lower())
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise NotAuthenticatedError("Invalid email or password")
    token = create_access_token({"sub": user["id"], "role": user.get("role")})
    _set_auth_cookie(response, token)
    return TokenResponse(access_token=token, user=_public_user(user))


@app.post("/api/auth/logout")
def logout(response: Response):
    response.delete_cookie(AUTH_COOKIE_NAME)
    return {"ok": True}


@app.get("/api/auth/me")
def me(current_user: dict = Depends(get_current_user)):
    return current_user


# Products
class ProductIn(BaseModel):
    name: str = Field(..., max_length=100)
    slug: Optional[str] = None
    description: str = Field("", max_length=2000)
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    quantity: int = Field(..., ge=0)
    active: bool = True
    category: Optional[str] = None
    image: Optional[str] = None
    images: List[str] = []
    color: List[str] = []
    size: List[str] = []
    featured: bool = False


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    slug: Optional[str] = None
    description: Optional[str] = Field(None, max_length=2000)
    price: Optional[float] = Field(None, ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    quantity: Optional[int] = Field(None, ge=0)
    active: Optional[bool] = None
    category: Optional[str] = None
    image: Optional[str] = None
    images: Optional[List[str]] = None
    color: Optional[List[str]] = None
    size: Optional[List[str]] = None
    featured: Optional[bool] = None


@app.get("/api/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None,
                  page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100),
                  repo=Depends(get_repository)):
    filters: Dict[str, Any] = {"active": True}
    if category:
        filters["category"] = category
    items, total = repo.list_products(filters, search=q, skip=(page - 1) * limit, limit=limit)
    return {"items": items, "total": total, "page": page, "limit": limit}


@app.get("/api/products/{product_id}")
def get_product(product_id: str, repo=Depends(get_repository)):
    _validate_id("product", product_id)
    product = repo.get_product(product_id)
    if not product:
        raise ProductNotFoundError(product_id)
    return product


@app.post("/api/products", status_code=201)
def create_product(data: ProductIn, admin: dict = Depends(require_admin), repo=Depends(get_repository)):
    catalog.validate_product_category(repo, data.category)
    product = ProductSchema(**data.model_dump())
    product.status = derive_product_status(product.quantity, product.active)
    created = repo.insert_product(product.model_dump())
    logger.info("Admin %s created product %s", admin["id"], created["id"])
    return created


@app.put("/api/products/{product_id}")
def update_product(product_id: str, data: ProductUpdate, admin: dict = Depends(require_admin),
                   repo=Depends(get_repository)):
    _validate_id("product", product_id)
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise InvalidInputError("body", "No fields to update")
    current = repo.get_product(product_id)
    if not current:
        raise ProductNotFoundError(product_id)
    if "category" in update_dict:
        catalog.validate_product_category(repo, update_dict["category"])
    if "quantity" in update_dict or "active" in update_dict:
        update_dict["status"] = derive_product_status(
            update_dict.get("quantity", current.get("quantity", 0)),
            update_dict.get("active", current.get("active", False)),
        )
    update_dict["updated_at"] = datetime.now(timezone.utc)
    product = repo.update_product(product_id, update_dict)
    if not product:
        raise ProductNotFoundError(product_id)
    return product


@app.delete("/api/products/{product_id}")
def delete_product(product_id: str, admin: dict = Depends(require_admin), repo=Depends(get_repository)):
    _validate_id("product", product_id)
    if not repo.delete_product(product_id):
        raise ProductNotFoundError(product_id)
    return {"ok": True}


# Categories
class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=32)
    slug: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    active: bool = True


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=32)
    slug: Optional[str] = None
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    active: Optional[bool] = None


@app.get("/api/categories")
def list_categories(active: bool = False, repo=Depends(get_repository)):
    return catalog.list_categories(repo, active_only=active)


@app.get("/api/categories/{id_or_slug}")
def get_category(id_or_slug: str, repo=Depends(get_repository)):
    return catalog.get_category(repo, id_or_slug)


@app.post("/api/categories", status_code=201)
def create_category(data: CategoryIn, admin: dict = Depends(require_admin), repo=Depends(get_repository)):
    return catalog.create_category(repo, data.model_dump())


@app.put("/api/categories/{category_id}")
def update_category(category_id: str, data: CategoryUpdate, admin: dict = Depends(require_admin),
                    repo=Depends(get_repository)):
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise InvalidInputError("body", "No fields to update")
    return catalog.update_category(repo, category_id, changes)


@app.delete("/api/categories/{category_id}")
def delete_category(category_id: str, admin: dict = Depends(require_admin), repo=Depends(get_repository)):
    catalog.delete_category(repo, category_id)
    return {"message": "Category deleted successfully"}


# Addresses
class AddressIn(BaseModel):
    full_name: str = Field(..., min_length=1, validation_alias=AliasChoices("full_name", "fullName"))
    address_line1: str = Field(..., min_length=1, validation_alias=AliasChoices("address_line1", "addressLine1"))
    address_line2: Optional[str] = Field(None, validation_alias=AliasChoices("address_line2", "addressLine2"))
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    postal_code: str = Field(..., min_length=1, validation_alias=AliasChoices("postal_code", "postalCode"))
    country: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    is_default: bool = Field(False, validation_alias=AliasChoices("is_default", "isDefault"))
    type: Literal["shipping", "billing", "both"] = "both"


class AddressUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=1, validation_alias=AliasChoices("full_name", "fullName"))
    address_line1: Optional[str] = Field(None, min_length=1,
                                         validation_alias=AliasChoices("address_line1", "addressLine1"))
    address_line2: Optional[str] = Field(None, validation_alias=AliasChoices("address_line2", "addressLine2"))
    city: Optional[str] = Field(None, min_length=1)
    state: Optional[str] = Field(None, min_length=1)
    postal_code: Optional[str] = Field(None, min_length=1,
                                       validation_alias=AliasChoices("postal_code", "postalCode"))
    country: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = Field(None, min_length=1)
    is_default: Optional[bool] = Field(None, validation_alias=AliasChoices("is_default", "isDefault"))
    type: Optional[Literal["shipping", "billing", "both"]] = None


@app.get("/api/addresses")
def list_addresses(current_user: dict = Depends(get_current_user), repo=Depends(get_repository)):
    return addresses.list_addresses(repo, current_user["id"])


@app.post("/api/addresses", status_code=201)
def create_address(data: AddressIn, current_user: dict = Depends(get_current_user),
                   repo=Depends(get_repository)):
    return addresses.create_address(repo, current_user["id"], data.model_dump())


@app.get("/api/addresses/{address_id}")
def get_address(address_id: str, current_user: dict = Depends(get_current_user), repo=Depends(get_repository)):
    return addresses.get_address(repo, current_user["id"], address_id)


@app.put("/api/addresses/{address_id}")
def update_address(address_id: str, data: AddressUpdate, current_user: dict = Depends(get_current_user),
                   repo=Depends(get_repository)):
    changes = data.model_dump(exclude_unset=True)
    if not changes:
        raise InvalidInputError("body", "No fields to update")
    return addresses.update_address(repo, current_user["id"], address_id, changes)


@app.delete("/api/addresses/{address_id}")
def delete_address(address_id: str, current_user: dict = Depends(get_current_user),
                   repo=Depends(get_repository)):
    addresses.delete_address(repo, current_user["id"], address_id)
    return {"message": "Address deleted successfully"}


# Cart
class VariantFields(BaseModel):
    color: Optional[str] = Field(None, max_length=50)
    size: Optional[str] = Field(None, max_length=20)

    @field_validator("color", "size")
    @classmethod
    def no_key_separator(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and "|" in value:
            raise ValueError("must not contain '|'")
        return value


class CartItemIn(VariantFields):
    product_id: str = Field(..., validation_alias=AliasChoices("product_id", "productId"))
    quantity: int = Field(..., ge=1, le=MAX_CART_ITEM_QUANTITY)


class CartQuantityIn(VariantFields):
    quantity: int = Field(..., ge=1, le=MAX_CART_ITEM_QUANTITY)


@app.get("/api/cart")
def get_cart(current_user: dict = Depends(get_current_user), repo=Depends(get_repository)):
    return carts.load_cart(repo, current_user["id"])


@app.post("/api/cart")
def add_to_cart(item: CartItemIn, current_user: dict = Depends(get_current_user),
                repo=Depends(get_repository)):
    cart = carts.add_item(repo, current_user["id"], item.product_id, item.quantity,
                          color=item.color, size=item.size)
    return carts.cart_view(repo, cart)


@app.put("/api/cart/{product_id}")
def update_cart_item(product_id: str, item: CartQuantityIn, current_user: dict = Depends(get_current_user),
                     repo=Depends(get_repository)):
    cart = carts.set_item_quantity(repo, current_user["id"], product_id, item.quantity,
                                   color=item.color, size=item.size)
    return carts.cart_view(repo, cart)


@app.delete("/api/cart/{product_id}")
def remove_cart_item(product_id: str, color: Optional[str] = None, size: Optional[str] = None,
                     current_user: dict = Depends(get_current_user), repo=Depends(get_repository)):
    cart = carts.remove_item(repo, current_user["id"], product_id, color=color, size=size)
    return carts.cart_view(repo, cart)


@app.delete("/api/cart")
def clear_cart(current_user: dict = Depends(get_current_user), repo=Depends(get_repository)):
    cart = carts.clear_cart(repo, current_user["id"])
    return carts.build_cart_view(cart, {})


# Orders
class OrderItemIn(VariantFields):
    product_id: str = Field(..., validation_alias=AliasChoices("product_id", "productId", "product"))
    quantity: int = Field(..., ge=1, le=MAX_CART_ITEM_QUANTITY)


class OrderCreate(BaseModel):
    items: Optional[List[OrderItemIn]] = None
    shipping: Optional[ShippingAddress] = None
    address_id: Optional[str] = Field(None, validation_alias=AliasChoices("address_id", "addressId"))
    payment: Optional[Payment] = None
    shipping_price: Optional[float] = Field(None, ge=0, validation_alias=AliasChoices("shipping_price", "shippingPrice"))
    tax_price: Optional[float] = Field(None, ge=0, validation_alias=AliasChoices("tax_price", "taxPrice"))
    notes: Optional[str] = Field(None, max_length=1000)
    keep_cart: bool = Field(False, validation_alias=AliasChoices("keep_cart", "keepCart"))


class OrderUpdate(BaseModel):
    status: Optional[Literal["pending", "processing", "shipped", "delivered", "cancelled", "refunded", "failed"]] = None
    is_paid: Optional[bool] = None
    payment_status: Optional[Literal["pending", "paid", "failed"]] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)


@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreate, current_user: dict = Depends(get_current_user),
                 repo=Depends(get_repository)):
    shipping = payload.shipping.model_dump() if payload.shipping else None
    if shipping is None and payload.address_id:
        shipping = addresses.shipping_from_address(repo, current_user["id"], payload.address_id)
    return orders.create_order(
        repo,
        current_user["id"],
        items=[i.model_dump() for i in payload.items] if payload.items else None,
        shipping=shipping,
        payment=payload.payment.model_dump() if payload.payment else None,
        shipping_price=payload.shipping_price,
        tax_price=payload.tax_price,
        notes=payload.notes,
        keep_cart=payload.keep_cart,
    )


@app.get("/api/orders")
def list_orders(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                status: Optional[str] = None,
                is_paid: Optional[bool] = Query(None, alias="isPaid"),
                is_delivered: Optional[bool] = Query(None, alias="isDelivered"),
                current_user: dict = Depends(get_current_user), repo=Depends(get_repository)):
    return orders.list_orders(
        repo,
        current_user["id"],
        admin=is_admin(current_user),
        page=page,
        limit=limit,
        status=status,
        is_paid=is_paid,
        is_delivered=is_delivered,
    )


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, current_user: dict = Depends(get_current_user), repo=Depends(get_repository)):
    return orders.get_order(repo, order_id, current_user["id"], admin=is_admin(current_user))


@app.put("/api/orders/{order_id}")
def update_order(order_id: str, data: OrderUpdate, admin: dict = Depends(require_admin),
                 repo=Depends(get_repository)):
    return orders.update_order(repo, order_id, data.model_dump(exclude_unset=True))


@app.delete("/api/orders/{order_id}")
def delete_order(order_id: str, admin: dict = Depends(require_admin), repo=Depends(get_repository)):
    orders.delete_order(repo, order_id)
    return {"message": "Order deleted successfully"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
