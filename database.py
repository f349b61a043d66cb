"""
In-memory storage for the storefront.

Every collection is a ``Table`` keyed by its own auto-incrementing integer id.
``MemStorage`` groups the six tables and adds the cart and order rules on top.
Lookups return either the record or ``NOT_FOUND``; they never raise for a
missing id.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, Type, TypeVar, Union

from schemas import CartItem, Order, OrderItem, Product, Record, Review, User

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Record)


class NotFound:
    """Result of a lookup whose id is not stored."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return "NOT_FOUND"


NOT_FOUND = NotFound()


class Table(Generic[T]):
    def __init__(self, model: Type[T]):
        self.model = model
        self._rows: Dict[int, T] = {}
        self._next_id = 1

    @property
    def name(self) -> str:
        return self.model.__name__.lower()

    def __len__(self):
        return len(self._rows)

    def create(self, **fields: Any) -> T:
        # Validation happens before the id is consumed.
        record = self.model(id=self._next_id, **fields)
        self._rows[record.id] = record
        self._next_id += 1
        return record

    def get(self, record_id: int) -> Union[T, NotFound]:
        return self._rows.get(record_id, NOT_FOUND)

    def update(self, record_id: int, fields: Dict[str, Any]) -> Union[T, NotFound]:
        current = self._rows.get(record_id)
        if current is None:
            return NOT_FOUND
        merged = {**current.model_dump(), **fields, "id": record_id}
        record = self.model.model_validate(merged)
        self._rows[record_id] = record
        return record

    def delete(self, record_id: int) -> bool:
        return self._rows.pop(record_id, None) is not None

    def list(self, predicate: Optional[Callable[[T], bool]] = None) -> List[T]:
        if predicate is None:
            return list(self._rows.values())
        return [r for r in self._rows.values() if predicate(r)]

    def find(self, predicate: Callable[[T], bool]) -> Union[T, NotFound]:
        for record in self._rows.values():
            if predicate(record):
                return record
        return NOT_FOUND


def _product_matches(
    product: Product,
    category: Optional[str],
    featured: Optional[bool],
    search: Optional[str],
) -> bool:
    if category and product.category != category:
        return False
    if featured is not None and product.featured != featured:
        return False
    if search:
        needle = search.lower()
        haystack = [product.name, product.description, *product.tags]
        if not any(needle in text.lower() for text in haystack):
            return False
    return True


class MemStorage:
    """The process-wide repository. Build one per app (or per test)."""

    def __init__(self):
        self.users: Table[User] = Table(User)
        self.products: Table[Product] = Table(Product)
        self.cart_items: Table[CartItem] = Table(CartItem)
        self.orders: Table[Order] = Table(Order)
        self.order_items: Table[OrderItem] = Table(OrderItem)
        self.reviews: Table[Review] = Table(Review)
        # Handlers run in a thread pool; every operation holds this lock.
        self._lock = threading.RLock()

    def transaction(self) -> threading.RLock:
        """Hold the store lock across several calls, e.g. a uniqueness check and the create."""
        return self._lock

    def tables(self) -> List[Table]:
        return [self.users, self.products, self.cart_items, self.orders, self.order_items, self.reviews]

    # Users
    def get_user(self, user_id: int) -> Union[User, NotFound]:
        with self._lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Union[User, NotFound]:
        email = email.lower()
        with self._lock:
            return self.users.find(lambda u: u.email.lower() == email)

    def get_user_by_username(self, username: str) -> Union[User, NotFound]:
        with self._lock:
            return self.users.find(lambda u: u.username == username)

    def list_users(self) -> List[User]:
        with self._lock:
            return self.users.list()

    def create_user(self, **fields: Any) -> User:
        with self._lock:
            return self.users.create(**fields)

    def update_user(self, user_id: int, fields: Dict[str, Any]) -> Union[User, NotFound]:
        with self._lock:
            return self.users.update(user_id, fields)

    # Products
    def get_product(self, product_id: int) -> Union[Product, NotFound]:
        with self._lock:
            return self.products.get(product_id)

    def get_product_by_sku(self, sku: str) -> Union[Product, NotFound]:
        with self._lock:
            return self.products.find(lambda p: p.sku == sku)

    def list_products(
        self,
        category: Optional[str] = None,
        featured: Optional[bool] = None,
        search: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> Tuple[List[Product], int]:
        """Filter, then slice. Returns the page and the size of the filtered set."""
        with self._lock:
            matched = self.products.list(lambda p: _product_matches(p, category, featured, search))
        end = None if limit is None else offset + limit
        return matched[offset:end], len(matched)

    def create_product(self, **fields: Any) -> Product:
        with self._lock:
            return self.products.create(**fields)

    def update_product(self, product_id: int, fields: Dict[str, Any]) -> Union[Product, NotFound]:
        with self._lock:
            return self.products.update(product_id, fields)

    def delete_product(self, product_id: int) -> bool:
        with self._lock:
            if not self.products.delete(product_id):
                return False
            for item in self.cart_items.list(lambda c: c.product_id == product_id):
                self.cart_items.delete(item.id)
            return True

    # Cart
    def get_cart_items(self, user_id: int) -> List[CartItem]:
        with self._lock:
            return self.cart_items.list(lambda c: c.user_id == user_id)

    def get_cart_item(self, item_id: int) -> Union[CartItem, NotFound]:
        with self._lock:
            return self.cart_items.get(item_id)

    def get_cart_item_by_user_and_product(self, user_id: int, product_id: int) -> Union[CartItem, NotFound]:
        with self._lock:
            return self.cart_items.find(lambda c: c.user_id == user_id and c.product_id == product_id)

    def add_to_cart(
        self,
        user_id: int,
        product_id: int,
        quantity: int = 1,
        size: Optional[str] = None,
        color: Optional[str] = None,
    ) -> Union[Tuple[CartItem, bool], NotFound]:
        """Add a product to a user's cart, merging with an existing row.

        The variant (size/color) chosen on the first add is kept when merging.
        Returns ``(item, created)`` or ``NOT_FOUND`` for an unknown product.
        """
        with self._lock:
            if self.products.get(product_id) is NOT_FOUND:
                return NOT_FOUND
            existing = self.get_cart_item_by_user_and_product(user_id, product_id)
            if existing is not NOT_FOUND:
                merged = self.cart_items.update(existing.id, {"quantity": existing.quantity + quantity})
                return merged, False
            item = self.cart_items.create(
                user_id=user_id, product_id=product_id, quantity=quantity, size=size, color=color
            )
            return item, True

    def update_cart_item(self, item_id: int, fields: Dict[str, Any]) -> Union[CartItem, NotFound]:
        with self._lock:
            return self.cart_items.update(item_id, fields)

    def delete_cart_item(self, item_id: int) -> bool:
        with self._lock:
            return self.cart_items.delete(item_id)

    def clear_cart(self, user_id: int) -> int:
        with self._lock:
            items = self.cart_items.list(lambda c: c.user_id == user_id)
            for item in items:
                self.cart_items.delete(item.id)
            return len(items)

    # Orders
    def get_order(self, order_id: int) -> Union[Order, NotFound]:
        with self._lock:
            return self.orders.get(order_id)

    def get_orders(self, user_id: Optional[int] = None) -> List[Order]:
        with self._lock:
            if user_id is None:
                return self.orders.list()
            return self.orders.list(lambda o: o.user_id == user_id)

    def get_order_items(self, order_id: int) -> List[OrderItem]:
        with self._lock:
            return self.order_items.list(lambda i: i.order_id == order_id)

    def create_order(
        self,
        user_id: int,
        total: float,
        shipping_address: Dict[str, Any],
        payment_details: Dict[str, Any],
        items: List[Dict[str, Any]],
    ) -> Tuple[Order, List[OrderItem]]:
        """Create an order with its items and empty the user's cart.

        Item prices are stored as given. Either the order and all of its
        items are stored or nothing is.
        """
        with self._lock:
            order = self.orders.create(
                user_id=user_id,
                total=total,
                status="pending",
                shipping_address=shipping_address,
                payment_details=payment_details,
                created_at=datetime.now(timezone.utc),
            )
            created: List[OrderItem] = []
            try:
                for line in items:
                    created.append(self.order_items.create(order_id=order.id, **line))
            except Exception:
                for item in created:
                    self.order_items.delete(item.id)
                self.orders.delete(order.id)
                logger.warning("Rolled back order %s after a failed item insert", order.id)
                raise
            self.clear_cart(user_id)
            return order, created

    def update_order_status(self, order_id: int, status: str) -> Union[Order, NotFound]:
        with self._lock:
            return self.orders.update(order_id, {"status": status})

    # Reviews
    def get_reviews(self, product_id: int) -> List[Review]:
        with self._lock:
            return self.reviews.list(lambda r: r.product_id == product_id)

    def create_review(self, user_id: int, product_id: int, rating: int, comment: Optional[str] = None) -> Review:
        with self._lock:
            return self.reviews.create(
                user_id=user_id,
                product_id=product_id,
                rating=rating,
                comment=comment,
                created_at=datetime.now(timezone.utc),
            )


_UNSPLASH = "https://images.unsplash.com/{}?ixlib=rb-4.0.3&auto=format&fit=crop&w=600&h=800&q=80"

DEMO_PRODUCTS: List[Dict[str, Any]] = [
    {
        "name": "Chiffon Flare Sleeve Dress",
        "description": "Elegant dress with a flattering silhouette and delicate chiffon flare sleeves.",
        "price": 89.99,
        "category": "women",
        "image_urls": [_UNSPLASH.format("photo-1580651315530-69c8e0026377")],
        "sizes": ["XS", "S", "M", "L"],
        "colors": ["Black", "White", "Beige"],
        "featured": True,
        "sku": "WD-F2023-001",
        "material": "100% Polyester",
        "tags": ["dress", "elegant", "chiffon"],
    },
    {
        "name": "Retro Washed Printed T-Shirt",
        "description": "Vintage-inspired printed t-shirt with a comfortable fit and distressed details.",
        "price": 45.99,
        "category": "men",
        "image_urls": [_UNSPLASH.format("photo-1525507119028-ed4c629a60a3")],
        "sizes": ["S", "M", "L", "XL"],
        "colors": ["Gray", "Black", "White"],
        "featured": True,
        "sku": "MT-F2023-002",
        "material": "100% Cotton",
        "tags": ["t-shirt", "vintage", "casual"],
    },
    {
        "name": "Off Shoulder Long Sleeve Top",
        "description": "Off-shoulder top with long sleeves for casual outings or date nights.",
        "price": 59.99,
        "category": "women",
        "image_urls": [_UNSPLASH.format("photo-1509631179647-0177331693ae")],
        "sizes": ["XS", "S", "M", "L"],
        "colors": ["Brown", "Black", "White"],
        "featured": True,
        "sku": "WT-F2023-003",
        "material": "95% Cotton, 5% Elastane",
        "tags": ["top", "casual", "trendy"],
    },
    {
        "name": "Layered Silver Necklace",
        "description": "Layered silver necklace that adds sophistication to any outfit.",
        "price": 35.99,
        "category": "accessories",
        "image_urls": [_UNSPLASH.format("photo-1611085583191-a3b181a88401")],
        "sizes": [],
        "colors": ["Silver"],
        "featured": True,
        "sku": "AC-F2023-004",
        "material": "Sterling Silver",
        "tags": ["necklace", "silver", "jewelry"],
    },
    {
        "name": "Frilled Mini White Dress",
        "description": "Frilled mini dress with delicate ruffles in a premium lightweight fabric.",
        "price": 129.99,
        "discount_price": 109.99,
        "category": "women",
        "image_urls": [
            _UNSPLASH.format("photo-1595950653106-6c9ebd614d3a"),
            _UNSPLASH.format("photo-1581044777550-4cfa60707c03"),
        ],
        "sizes": ["XS", "S", "M", "L", "XL"],
        "colors": ["White", "Black", "Beige"],
        "featured": True,
        "sku": "WD-F2023-005",
        "material": "95% Cotton, 5% Elastane",
        "tags": ["dress", "mini", "elegant"],
    },
]


def seed_store(
    storage: MemStorage,
    admin_username: str,
    admin_email: str,
    admin_password_hash: str,
    with_catalog: bool = True,
) -> None:
    """Create the administrator and, optionally, the demo catalog. Skips existing rows."""
    if storage.get_user_by_email(admin_email) is NOT_FOUND:
        storage.create_user(
            username=admin_username,
            email=admin_email.lower(),
            password_hash=admin_password_hash,
            role="admin",
            first_name="Admin",
            last_name="User",
        )
    if not with_catalog:
        return
    for product in DEMO_PRODUCTS:
        if storage.get_product_by_sku(product["sku"]) is NOT_FOUND:
            storage.create_product(**product)
    logger.info("Seeded store: %d users, %d products", len(storage.users), len(storage.products))
