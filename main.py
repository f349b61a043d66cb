import logging
import os
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field, ValidationError, field_validator

from database import NOT_FOUND, MemStorage, seed_store
from schemas import OrderStatus, ProductCategory, ShippingAddress, User

# Settings
SECRET_KEY = os.getenv("JWT_SECRET", "dev-secret-change")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL", "admin@elev8.com")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "admin123")
SEED_CATALOG = os.getenv("SEED_CATALOG", "1") not in ("0", "false", "no")

FREE_SHIPPING_THRESHOLD = float(os.getenv("FREE_SHIPPING_THRESHOLD", 100))
SHIPPING_FEE = float(os.getenv("SHIPPING_FEE", 10))

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

app = FastAPI(title="Elev8 Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


@lru_cache(maxsize=None)
def admin_password_hash() -> str:
    return hash_password(ADMIN_PASSWORD)


def create_access_token(user: User, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {"sub": str(user.id), "id": user.id, "email": user.email, "role": user.role, "exp": expire}
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.warning("Rejected token: %s", e)
        raise HTTPException(
            status_code=401, detail="Invalid or expired token", headers={"WWW-Authenticate": "Bearer"}
        )


def public_user(user: User) -> Dict[str, Any]:
    # Never send password hash
    return user.model_dump(mode="json", exclude={"password_hash"})


def shipping_cost(subtotal: float) -> float:
    return 0.0 if subtotal > FREE_SHIPPING_THRESHOLD else SHIPPING_FEE


def build_storage(with_catalog: bool = SEED_CATALOG) -> MemStorage:
    storage = MemStorage()
    seed_store(storage, ADMIN_USERNAME, ADMIN_EMAIL, admin_password_hash(), with_catalog=with_catalog)
    return storage


app.state.storage = build_storage()


# Errors

class FieldValidationError(Exception):
    """Input rejected after parsing, reported per field."""

    def __init__(self, errors: Dict[str, List[str]]):
        super().__init__(errors)
        self.errors = errors

    @classmethod
    def single(cls, field: str, message: str) -> "FieldValidationError":
        return cls({field: [message]})


def _error_map(errors) -> Dict[str, List[str]]:
    out: Dict[str, List[str]] = {}
    for err in errors:
        loc = [str(p) for p in err.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:] or loc
        out.setdefault(".".join(loc) or "__root__", []).append(err.get("msg", "Invalid value"))
    return out


def _validation_response(errors: Dict[str, List[str]]) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": "Validation error", "errors": errors})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return _validation_response(_error_map(exc.errors()))


@app.exception_handler(ValidationError)
async def model_validation_handler(request: Request, exc: ValidationError):
    return _validation_response(_error_map(exc.errors()))


@app.exception_handler(FieldValidationError)
async def field_validation_handler(request: Request, exc: FieldValidationError):
    return _validation_response(exc.errors)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


# Dependencies

def get_storage(request: Request) -> MemStorage:
    return request.app.state.storage


def get_current_user(
    authorization: Optional[str] = Header(default=None),
    storage: MemStorage = Depends(get_storage),
) -> User:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Not authenticated", headers={"WWW-Authenticate": "Bearer"})
    token = authorization.split(" ", 1)[1]
    payload = decode_token(token)
    user_id = payload.get("id")
    if not isinstance(user_id, int):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = storage.get_user(user_id)
    if user is NOT_FOUND:
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if current_user.role != "admin":
        raise HTTPException(status_code=403, detail="Admins only")
    return current_user


# Routes
@app.get("/")
def read_root():
    return {"message": "Elev8 Storefront API"}


@app.get("/test")
def test_storage(storage: MemStorage = Depends(get_storage)):
    return {
        "backend": "✅ Running",
        "storage": "✅ In-memory",
        "collections": {table.name: len(table) for table in storage.tables()},
    }


# Auth
class RegisterInput(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password: str = Field(..., min_length=6)
    first_name: Optional[str] = None
    last_name: Optional[str] = None


class LoginInput(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6)


class TokenResponse(BaseModel):
    token: str
    token_type: str = "bearer"
    user: Dict[str, Any]


class ProfileUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


@app.post("/api/auth/register", response_model=TokenResponse, status_code=201)
def register(payload: RegisterInput, storage: MemStorage = Depends(get_storage)):
    email = payload.email.lower()
    password_hash = hash_password(payload.password)
    with storage.transaction():
        if storage.get_user_by_email(email) is not NOT_FOUND:
            raise FieldValidationError.single("email", "Email already in use")
        if storage.get_user_by_username(payload.username) is not NOT_FOUND:
            raise FieldValidationError.single("username", "Username already in use")
        user = storage.create_user(
            username=payload.username,
            email=email,
            password_hash=password_hash,
            role="user",
            first_name=payload.first_name,
            last_name=payload.last_name,
        )
    logger.info("Registered user %s (%s)", user.id, user.username)
    return TokenResponse(token=create_access_token(user), user=public_user(user))


@app.post("/api/auth/login", response_model=TokenResponse)
def login(payload: LoginInput, storage: MemStorage = Depends(get_storage)):
    user = storage.get_user_by_email(payload.email)
    if user is NOT_FOUND or not verify_password(payload.password, user.password_hash):
        logger.warning("Failed login for %s", payload.email)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    return TokenResponse(token=create_access_token(user), user=public_user(user))


@app.get("/api/auth/me")
def me(current_user: User = Depends(get_current_user)):
    return public_user(current_user)


@app.put("/api/auth/me")
def update_me(
    data: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    storage: MemStorage = Depends(get_storage),
):
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise FieldValidationError.single("body", "No fields to update")
    user = storage.update_user(current_user.id, update_dict)
    if user is NOT_FOUND:
        raise HTTPException(status_code=404, detail="User not found")
    return public_user(user)


@app.get("/api/users", dependencies=[Depends(require_admin)])
def list_users(storage: MemStorage = Depends(get_storage)):
    return [public_user(u) for u in storage.list_users()]


# Products
class ProductIn(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    price: float = Field(..., ge=0)
    discount_price: Optional[float] = Field(default=None, ge=0)
    category: ProductCategory
    image_urls: List[str] = Field(..., min_length=1)
    sizes: List[str] = []
    colors: List[str] = []
    featured: bool = False
    in_stock: bool = True
    sku: str = Field(..., min_length=1)
    material: Optional[str] = None
    tags: List[str] = []


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = None
    discount_price: Optional[float] = None
    category: Optional[ProductCategory] = None
    image_urls: Optional[List[str]] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    featured: Optional[bool] = None
    in_stock: Optional[bool] = None
    sku: Optional[str] = None
    material: Optional[str] = None
    tags: Optional[List[str]] = None


def check_discount(price: float, discount_price: Optional[float]) -> None:
    if discount_price is not None and discount_price >= price:
        raise FieldValidationError.single("discount_price", "Discount price must be lower than price")


@app.post("/api/products", status_code=201)
def create_product(
    data: ProductIn,
    current_user: User = Depends(require_admin),
    storage: MemStorage = Depends(get_storage),
):
    check_discount(data.price, data.discount_price)
    with storage.transaction():
        if storage.get_product_by_sku(data.sku) is not NOT_FOUND:
            raise FieldValidationError.single("sku", "SKU already in use")
        product = storage.create_product(**data.model_dump())
    logger.info("Product %s (%s) created by %s", product.id, product.sku, current_user.username)
    return product


@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    featured: Optional[bool] = None,
    search: Optional[str] = None,
    limit: Optional[int] = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    storage: MemStorage = Depends(get_storage),
):
    items, total = storage.list_products(
        category=category, featured=featured, search=search, limit=limit, offset=offset
    )
    return {"items": items, "total": total, "limit": limit, "offset": offset}


@app.get("/api/products/{product_id}")
def get_product(product_id: int, storage: MemStorage = Depends(get_storage)):
    product = storage.get_product(product_id)
    if product is NOT_FOUND:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.put("/api/products/{product_id}")
def update_product(
    product_id: int,
    data: ProductUpdate,
    current_user: User = Depends(require_admin),
    storage: MemStorage = Depends(get_storage),
):
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise FieldValidationError.single("body", "No fields to update")
    with storage.transaction():
        product = storage.get_product(product_id)
        if product is NOT_FOUND:
            raise HTTPException(status_code=404, detail="Product not found")
        merged = {**product.model_dump(), **update_dict}
        if merged["price"] is not None:
            check_discount(merged["price"], merged["discount_price"])
        if "sku" in update_dict and update_dict["sku"] != product.sku:
            if storage.get_product_by_sku(update_dict["sku"]) is not NOT_FOUND:
                raise FieldValidationError.single("sku", "SKU already in use")
        product = storage.update_product(product_id, update_dict)
    logger.info("Product %s updated by %s: %s", product_id, current_user.username, sorted(update_dict))
    return product


@app.delete("/api/products/{product_id}", status_code=204)
def delete_product(
    product_id: int,
    current_user: User = Depends(require_admin),
    storage: MemStorage = Depends(get_storage),
):
    if not storage.delete_product(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    logger.info("Product %s deleted by %s", product_id, current_user.username)
    return Response(status_code=204)


# Cart
class CartItemIn(BaseModel):
    product_id: int
    quantity: int = Field(1, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


class CartItemUpdate(BaseModel):
    quantity: Optional[int] = Field(default=None, ge=1)
    size: Optional[str] = None
    color: Optional[str] = None


def get_owned_cart_item(item_id: int, user: User, storage: MemStorage):
    item = storage.get_cart_item(item_id)
    if item is NOT_FOUND:
        raise HTTPException(status_code=404, detail="Cart item not found")
    if item.user_id != user.id:
        raise HTTPException(status_code=403, detail="Not authorized to access this cart item")
    return item


@app.get("/api/cart")
def get_cart(current_user: User = Depends(get_current_user), storage: MemStorage = Depends(get_storage)):
    # attach product details
    items = []
    for it in storage.get_cart_items(current_user.id):
        prod = storage.get_product(it.product_id)
        items.append({**it.model_dump(), "product": prod.model_dump() if prod is not NOT_FOUND else None})
    return items


@app.post("/api/cart", status_code=201)
def add_to_cart(
    item: CartItemIn,
    response: Response,
    current_user: User = Depends(get_current_user),
    storage: MemStorage = Depends(get_storage),
):
    result = storage.add_to_cart(current_user.id, item.product_id, item.quantity, item.size, item.color)
    if result is NOT_FOUND:
        raise HTTPException(status_code=404, detail="Product not found")
    cart_item, created = result
    if not created:
        response.status_code = 200
    return cart_item


@app.put("/api/cart/{item_id}")
def update_cart_item(
    item_id: int,
    data: CartItemUpdate,
    current_user: User = Depends(get_current_user),
    storage: MemStorage = Depends(get_storage),
):
    get_owned_cart_item(item_id, current_user, storage)
    update_dict = data.model_dump(exclude_unset=True)
    if not update_dict:
        raise FieldValidationError.single("body", "No fields to update")
    item = storage.update_cart_item(item_id, update_dict)
    if item is NOT_FOUND:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return item


@app.delete("/api/cart/{item_id}", status_code=204)
def remove_from_cart(
    item_id: int,
    current_user: User = Depends(get_current_user),
    storage: MemStorage = Depends(get_storage),
):
    get_owned_cart_item(item_id, current_user, storage)
    storage.delete_cart_item(item_id)
    return Response(status_code=204)


@app.delete("/api/cart", status_code=204)
def clear_cart(current_user: User = Depends(get_current_user), storage: MemStorage = Depends(get_storage)):
    storage.clear_cart(current_user.id)
    return Response(status_code=204)


# Orders
class PaymentIn(BaseModel):
    card_name: str = Field(..., min_length=1)
    card_number: Optional[str] = Field(default=None, pattern=r"^\d{12,19}$")
    card_number_last4: Optional[str] = Field(default=None, pattern=r"^\d{4}$")
    expiry_month: Optional[str] = None
    expiry_year: Optional[str] = None
    cvv: Optional[str] = Field(default=None, pattern=r"^\d{3,4}$")

    @field_validator("card_number", mode="before")
    @classmethod
    def strip_separators(cls, v):
        if isinstance(v, str):
            return v.replace(" ", "").replace("-", "")
        return v

    def snapshot(self) -> Dict[str, Any]:
        """Card data that may be kept with the order."""
        if self.card_number and self.card_number_last4 and self.card_number[-4:] != self.card_number_last4:
            raise FieldValidationError.single(
                "payment_details.card_number_last4", "Does not match the last 4 digits of card_number"
            )
        last4 = self.card_number[-4:] if self.card_number else self.card_number_last4
        if last4 is None:
            raise FieldValidationError.single("payment_details.card_number", "Card number is required")
        return {
            "card_name": self.card_name,
            "card_number_last4": last4,
            "expiry_month": self.expiry_month,
            "expiry_year": self.expiry_year,
        }


class OrderItemIn(BaseModel):
    product_id: int
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    size: Optional[str] = None
    color: Optional[str] = None


class OrderIn(BaseModel):
    total: float = Field(..., ge=0)
    shipping_address: ShippingAddress
    payment_details: PaymentIn
    items: List[OrderItemIn] = Field(..., min_length=1)


class StatusUpdate(BaseModel):
    status: OrderStatus


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


def price_order_lines(payload: OrderIn, storage: MemStorage) -> List[Dict[str, Any]]:
    """Price every line from the live catalog and check the client's figures against it.

    Line prices and the total must match to the cent. Returns the lines with
    the live unit price as the snapshot price.
    """
    errors: Dict[str, List[str]] = {}
    lines = []
    subtotal_cents = 0
    for index, line in enumerate(payload.items):
        product = storage.get_product(line.product_id)
        if product is NOT_FOUND:
            raise HTTPException(status_code=404, detail=f"Product not found: {line.product_id}")
        if not product.in_stock:
            errors.setdefault(f"items.{index}.product_id", []).append(f"{product.name} is out of stock")
        unit_cents = to_cents(product.effective_price)
        if to_cents(line.price) != unit_cents:
            errors.setdefault(f"items.{index}.price", []).append(
                f"Price does not match current price {product.effective_price:.2f}"
            )
        subtotal_cents += unit_cents * line.quantity
        lines.append({**line.model_dump(), "price": unit_cents / 100})
    subtotal = subtotal_cents / 100
    expected_cents = subtotal_cents + to_cents(shipping_cost(subtotal))
    if to_cents(payload.total) != expected_cents:
        errors.setdefault("total", []).append(f"Total does not match expected {expected_cents / 100:.2f}")
    if errors:
        raise FieldValidationError(errors)
    return lines


def order_with_items(order, items) -> Dict[str, Any]:
    return {**order.model_dump(mode="json"), "items": [i.model_dump(mode="json") for i in items]}


@app.get("/api/orders")
def list_orders(current_user: User = Depends(get_current_user), storage: MemStorage = Depends(get_storage)):
    if current_user.role == "admin":
        orders = storage.get_orders()
    else:
        orders = storage.get_orders(current_user.id)
    return sorted(orders, key=lambda o: (o.created_at, o.id), reverse=True)


@app.get("/api/orders/{order_id}")
def get_order(
    order_id: int,
    current_user: User = Depends(get_current_user),
    storage: MemStorage = Depends(get_storage),
):
    order = storage.get_order(order_id)
    if order is NOT_FOUND:
        raise HTTPException(status_code=404, detail="Order not found")
    if current_user.role != "admin" and order.user_id != current_user.id:
        raise HTTPException(status_code=403, detail="Not authorized to view this order")
    return order_with_items(order, storage.get_order_items(order_id))


@app.post("/api/orders", status_code=201)
def create_order(
    payload: OrderIn,
    current_user: User = Depends(get_current_user),
    storage: MemStorage = Depends(get_storage),
):
    with storage.transaction():
        lines = price_order_lines(payload, storage)
        order, items = storage.create_order(
            user_id=current_user.id,
            total=to_cents(payload.total) / 100,
            shipping_address=payload.shipping_address.model_dump(),
            payment_details=payload.payment_details.snapshot(),
            items=lines,
        )
    logger.info("Order %s placed by user %s: %d items, total %.2f", order.id, current_user.id, len(items), order.total)
    return order_with_items(order, items)


@app.put("/api/orders/{order_id}/status")
def update_order_status(
    order_id: int,
    data: StatusUpdate,
    current_user: User = Depends(require_admin),
    storage: MemStorage = Depends(get_storage),
):
    order = storage.update_order_status(order_id, data.status)
    if order is NOT_FOUND:
        raise HTTPException(status_code=404, detail="Order not found")
    logger.info("Order %s set to %s by %s", order_id, order.status, current_user.username)
    return order


# Reviews
class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


@app.get("/api/products/{product_id}/reviews")
def list_reviews(product_id: int, storage: MemStorage = Depends(get_storage)):
    if storage.get_product(product_id) is NOT_FOUND:
        raise HTTPException(status_code=404, detail="Product not found")
    return storage.get_reviews(product_id)


@app.post("/api/products/{product_id}/reviews", status_code=201)
def create_review(
    product_id: int,
    data: ReviewIn,
    current_user: User = Depends(get_current_user),
    storage: MemStorage = Depends(get_storage),
):
    if storage.get_product(product_id) is NOT_FOUND:
        raise HTTPException(status_code=404, detail="Product not found")
    return storage.create_review(current_user.id, product_id, data.rating, data.comment)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
