"""
Store adapter over the relational database.

One Store is built per application and handed to every request. Each public
method runs in its own session: reads use a plain session, writes run inside
session_factory.begin() so they commit or roll back as a single unit.
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, inspect, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import joinedload, selectinload, sessionmaker

from errors import Conflict, InsufficientStock, InvalidRequest, NotFound, VariantNotFound
from models import (
    MAX_QUANTITY,
    ORDER_TRANSITIONS,
    CartEntry,
    Category,
    Order,
    OrderItem,
    Product,
    ProductImage,
    ProductVariant,
    User,
    utcnow,
)

logger = logging.getLogger(__name__)

PRODUCT_LOAD = [selectinload(Product.images), selectinload(Product.variants)]


def _images(urls: Iterable[str]) -> List[ProductImage]:
    return [ProductImage(url=url, position=i) for i, url in enumerate(urls)]


class Store:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # Health

    def ping(self) -> List[str]:
        with self._session_factory() as session:
            session.execute(text("SELECT 1"))
            return inspect(session.get_bind()).get_table_names()

    # Users

    def find_user_by_id(self, user_id: int) -> User:
        with self._session_factory() as session:
            user = session.get(User, user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def find_user_by_email(self, email: str) -> Optional[User]:
        with self._session_factory() as session:
            return session.scalar(select(User).where(User.email == email.lower()))

    def create_user(self, email: str, password_hash: str, first_name: Optional[str] = None,
                    last_name: Optional[str] = None, role: str = "customer") -> User:
        user = User(
            email=email.lower(),
            password_hash=password_hash,
            first_name=first_name,
            last_name=last_name,
            role=role,
            is_active=True,
        )
        try:
            with self._session_factory.begin() as session:
                session.add(user)
        except IntegrityError:
            raise InvalidRequest("Email already registered")
        return user

    def update_user(self, user_id: int, fields: Dict[str, Any]) -> User:
        with self._session_factory.begin() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFound("User not found")
            for key, value in fields.items():
                setattr(user, key, value)
        return user

    def list_users(self, limit: int = 50, offset: int = 0) -> List[User]:
        with self._session_factory() as session:
            stmt = select(User).order_by(User.id).offset(offset).limit(limit)
            return list(session.scalars(stmt))

    # Categories

    def list_categories(self) -> List[Category]:
        with self._session_factory() as session:
            return list(session.scalars(select(Category).order_by(Category.name)))

    def create_category(self, name: str, slug: str, description: Optional[str] = None) -> Category:
        category = Category(name=name, slug=slug, description=description)
        try:
            with self._session_factory.begin() as session:
                session.add(category)
        except IntegrityError:
            raise Conflict("Category slug already exists", slug=slug)
        return category

    # Products

    def list_products(self, q: Optional[str] = None, category: Optional[str] = None,
                      size: Optional[str] = None, min_price: Optional[float] = None,
                      max_price: Optional[float] = None, sort: Optional[str] = None,
                      page: int = 1, page_size: int = 12) -> Tuple[List[Product], int]:
        stmt = select(Product).where(Product.is_active.is_(True))
        if q:
            stmt = stmt.where(Product.name.icontains(q, autoescape=True))
        if category:
            if category.isdigit():
                stmt = stmt.where(Product.category_id == int(category))
            else:
                stmt = stmt.join(Category).where(Category.slug == category)
        if size:
            stmt = stmt.where(Product.variants.any(ProductVariant.size == size))
        if min_price is not None:
            stmt = stmt.where(Product.base_price >= min_price)
        if max_price is not None:
            stmt = stmt.where(Product.base_price <= max_price)

        if sort == "price_asc":
            stmt = stmt.order_by(Product.base_price.asc(), Product.id)
        elif sort == "price_desc":
            stmt = stmt.order_by(Product.base_price.desc(), Product.id)
        elif sort == "newest":
            stmt = stmt.order_by(Product.created_at.desc(), Product.id.desc())
        else:
            stmt = stmt.order_by(Product.id)

        with self._session_factory() as session:
            total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery()))
            page_stmt = (
                stmt.options(selectinload(Product.images), selectinload(Product.variants))
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            return list(session.scalars(page_stmt)), total

    def get_product(self, product_id: int) -> Product:
        with self._session_factory() as session:
            product = session.get(Product, product_id, options=PRODUCT_LOAD)
        if product is None:
            raise NotFound("Product not found")
        return product

    def create_product(self, fields: Dict[str, Any], variants: Sequence[Dict[str, Any]] = (),
                       images: Sequence[str] = ()) -> Product:
        try:
            with self._session_factory.begin() as session:
                category_id = fields.get("category_id")
                if category_id is not None and session.get(Category, category_id) is None:
                    raise NotFound("Category not found")
                product = Product(**fields)
                product.variants = [ProductVariant(**v) for v in variants]
                product.images = _images(images)
                session.add(product)
        except IntegrityError:
            raise Conflict("Duplicate variant size for product")
        return product

    def update_product(self, product_id: int, fields: Dict[str, Any]) -> Product:
        fields = dict(fields)
        with self._session_factory.begin() as session:
            product = session.get(Product, product_id, options=PRODUCT_LOAD)
            if product is None:
                raise NotFound("Product not found")
            category_id = fields.get("category_id")
            if category_id is not None and session.get(Category, category_id) is None:
                raise NotFound("Category not found")
            images = fields.pop("images", None)
            if images is not None:
                product.images = _images(images)
            for key, value in fields.items():
                setattr(product, key, value)
        return product

    def deactivate_product(self, product_id: int) -> Product:
        return self.update_product(product_id, {"is_active": False})

    def seed_catalog(self, samples: Iterable[Dict[str, Any]]) -> int:
        with self._session_factory.begin() as session:
            if session.scalar(select(func.count()).select_from(Product)) > 0:
                return 0
            count = 0
            for sample in samples:
                sample = dict(sample)
                variants = sample.pop("variants", [])
                images = sample.pop("images", [])
                product = Product(**sample)
                product.images = _images(images)
                product.variants = [ProductVariant(**v) for v in variants]
                session.add(product)
                count += 1
        return count

    # Variants

    def find_variant(self, variant_id: int) -> ProductVariant:
        with self._session_factory() as session:
            variant = session.get(ProductVariant, variant_id, options=[joinedload(ProductVariant.product)])
        if variant is None:
            raise VariantNotFound(variant_id)
        return variant

    def create_variant(self, product_id: int, size: str, stock_quantity: int, price: Decimal) -> ProductVariant:
        variant = ProductVariant(product_id=product_id, size=size, stock_quantity=stock_quantity, price=price)
        try:
            with self._session_factory.begin() as session:
                if session.get(Product, product_id) is None:
                    raise NotFound("Product not found")
                session.add(variant)
        except IntegrityError:
            raise Conflict("Variant size already exists for product", size=size)
        return variant

    def update_variant(self, variant_id: int, fields: Dict[str, Any]) -> ProductVariant:
        try:
            with self._session_factory.begin() as session:
                variant = session.get(ProductVariant, variant_id)
                if variant is None:
                    raise VariantNotFound(variant_id)
                for key, value in fields.items():
                    setattr(variant, key, value)
        except IntegrityError:
            raise Conflict("Variant size already exists for product", size=fields.get("size"))
        return variant

    def restock(self, variant_id: int, amount: int) -> ProductVariant:
        if amount <= 0:
            raise InvalidRequest("Restock amount must be positive")
        with self._session_factory.begin() as session:
            result = session.execute(
                update(ProductVariant)
                .where(ProductVariant.id == variant_id)
                .values(stock_quantity=ProductVariant.stock_quantity + amount)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise VariantNotFound(variant_id)
        logger.info("Restocked variant %s by %s", variant_id, amount)
        return self.find_variant(variant_id)

    def decrement_stock(self, variant_id: int, amount: int) -> ProductVariant:
        if amount <= 0:
            raise InvalidRequest("Amount must be positive")
        with self._session_factory.begin() as session:
            self._decrement(session, variant_id, amount)
        logger.info("Wrote off %s units of variant %s", amount, variant_id)
        return self.find_variant(variant_id)

    def delete_variant(self, variant_id: int) -> None:
        with self._session_factory.begin() as session:
            if session.get(ProductVariant, variant_id) is None:
                raise VariantNotFound(variant_id)
            ordered = session.scalar(
                select(func.count()).select_from(OrderItem).where(OrderItem.variant_id == variant_id)
            )
            if ordered:
                raise Conflict("Variant is referenced by orders", variant_id=variant_id)
            session.execute(delete(CartEntry).where(CartEntry.variant_id == variant_id))
            session.execute(delete(ProductVariant).where(ProductVariant.id == variant_id))

    def _decrement(self, session, variant_id: int, amount: int) -> None:
        # Single conditional statement; a read-then-write here would allow overselling
        result = session.execute(
            update(ProductVariant)
            .where(ProductVariant.id == variant_id, ProductVariant.stock_quantity >= amount)
            .values(stock_quantity=ProductVariant.stock_quantity - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return
        available = session.scalar(
            select(ProductVariant.stock_quantity).where(ProductVariant.id == variant_id)
        )
        if available is None:
            raise VariantNotFound(variant_id)
        raise InsufficientStock(variant_id, amount, available)

    # Orders

    def create_order_atomic(self, user_id: int, lines: Sequence[Any], total_amount: Decimal,
                            shipping_address: Optional[Dict[str, Any]] = None,
                            billing_address: Optional[Dict[str, Any]] = None,
                            payment_method: Optional[str] = None,
                            decrement_stock: bool = True, clear_cart: bool = False) -> Order:
        """Insert the order header and its lines in one transaction.

        lines are objects with variant_id, quantity and unit_price. Stock for every
        line is decremented in the same transaction when decrement_stock is set, and
        the matching cart rows are deleted when clear_cart is set.
        """
        with self._session_factory.begin() as session:
            if decrement_stock:
                # Fixed lock order across concurrent orders
                for line in sorted(lines, key=lambda l: l.variant_id):
                    self._decrement(session, line.variant_id, line.quantity)

            order = Order(
                user_id=user_id,
                status="pending",
                payment_status="pending",
                total_amount=total_amount,
                shipping_address=shipping_address,
                billing_address=billing_address,
                payment_method=payment_method,
            )
            order.items = [
                OrderItem(variant_id=line.variant_id, quantity=line.quantity, unit_price=line.unit_price)
                for line in lines
            ]
            session.add(order)

            if clear_cart:
                session.execute(
                    delete(CartEntry).where(
                        CartEntry.user_id == user_id,
                        CartEntry.variant_id.in_([line.variant_id for line in lines]),
                    )
                )
        return order

    def get_order(self, order_id: int) -> Order:
        with self._session_factory() as session:
            order = session.get(Order, order_id, options=[selectinload(Order.items)])
        if order is None:
            raise NotFound("Order not found")
        return order

    def list_orders(self, user_id: Optional[int] = None, status: Optional[str] = None,
                    limit: int = 50, offset: int = 0) -> List[Order]:
        stmt = select(Order).options(selectinload(Order.items))
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)
        if status is not None:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit)
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def update_order_status(self, order_id: int, status: Optional[str] = None,
                            payment_status: Optional[str] = None, restock_on_cancel: bool = True) -> Order:
        with self._session_factory.begin() as session:
            order = session.scalar(
                select(Order)
                .where(Order.id == order_id)
                .options(selectinload(Order.items))
                .with_for_update()
            )
            if order is None:
                raise NotFound("Order not found")

            if status is not None and status != order.status:
                if status not in ORDER_TRANSITIONS.get(order.status, ()):
                    raise Conflict(
                        f"Cannot change order status from {order.status} to {status}",
                        current_status=order.status,
                    )
                if status == "cancelled" and restock_on_cancel:
                    for item in sorted(order.items, key=lambda i: i.variant_id):
                        session.execute(
                            update(ProductVariant)
                            .where(ProductVariant.id == item.variant_id)
                            .values(stock_quantity=ProductVariant.stock_quantity + item.quantity)
                            .execution_options(synchronize_session=False)
                        )
                order.status = status

            if payment_status is not None:
                order.payment_status = payment_status
        return order

    # Cart

    def list_cart(self, user_id: int) -> List[CartEntry]:
        stmt = (
            select(CartEntry)
            .where(CartEntry.user_id == user_id)
            .options(
                selectinload(CartEntry.variant)
                .selectinload(ProductVariant.product)
                .selectinload(Product.images)
            )
            .order_by(CartEntry.id)
        )
        with self._session_factory() as session:
            return list(session.scalars(stmt))

    def add_to_cart(self, user_id: int, variant_id: int, quantity: int) -> None:
        # A concurrent first add for the same (user, variant) loses the insert race; retry as an update
        for attempt in range(2):
            try:
                with self._session_factory.begin() as session:
                    variant = session.get(ProductVariant, variant_id, options=[joinedload(ProductVariant.product)])
                    if variant is None or not variant.product.is_active:
                        raise VariantNotFound(variant_id)
                    result = session.execute(
                        update(CartEntry)
                        .where(
                            CartEntry.user_id == user_id,
                            CartEntry.variant_id == variant_id,
                            CartEntry.quantity + quantity <= MAX_QUANTITY,
                        )
                        .values(quantity=CartEntry.quantity + quantity, updated_at=utcnow())
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount == 0:
                        existing = session.scalar(
                            select(CartEntry.id).where(
                                CartEntry.user_id == user_id, CartEntry.variant_id == variant_id
                            )
                        )
                        if existing is not None:
                            raise InvalidRequest(
                                f"Cart quantity must not exceed {MAX_QUANTITY}", variant_id=variant_id
                            )
                        session.add(CartEntry(user_id=user_id, variant_id=variant_id, quantity=quantity))
                return
            except IntegrityError:
                if attempt:
                    raise

    def set_cart_quantity(self, user_id: int, variant_id: int, quantity: int) -> None:
        with self._session_factory.begin() as session:
            result = session.execute(
                update(CartEntry)
                .where(CartEntry.user_id == user_id, CartEntry.variant_id == variant_id)
                .values(quantity=quantity, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFound("Item not in cart", variant_id=variant_id)

    def remove_from_cart(self, user_id: int, variant_id: int) -> None:
        with self._session_factory.begin() as session:
            session.execute(
                delete(CartEntry).where(CartEntry.user_id == user_id, CartEntry.variant_id == variant_id)
            )
