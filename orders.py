"""
Order placement.

An order is built from requested (variant_id, quantity) pairs. Prices always come
from the catalog at the time of placement; the header, its lines, the final total
and the stock decrements are committed together by Store.create_order_atomic, so
a failure anywhere leaves nothing behind.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from errors import InsufficientStock, InvalidRequest, ShopError, VariantNotFound
from models import CENTS, MAX_AMOUNT, MAX_QUANTITY, ORDER_STATUSES, PAYMENT_STATUSES, Order
from store import Store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderLine:
    variant_id: int
    quantity: int
    unit_price: Decimal

    @property
    def subtotal(self) -> Decimal:
        return (self.unit_price * self.quantity).quantize(CENTS)


def merge_lines(requested: Iterable[Tuple[int, int]]) -> List[Tuple[int, int]]:
    """Validate requested lines and fold repeated variants into one line.

    Keeps the order in which variants first appear.
    """
    merged: Dict[int, int] = {}
    for variant_id, quantity in requested:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidRequest("Quantity must be a positive integer", variant_id=variant_id)
        merged[variant_id] = merged.get(variant_id, 0) + quantity
        if merged[variant_id] > MAX_QUANTITY:
            raise InvalidRequest(f"Quantity must not exceed {MAX_QUANTITY}", variant_id=variant_id)
    if not merged:
        raise InvalidRequest("Order must contain at least one item")
    return list(merged.items())


def order_total(lines: Iterable[OrderLine]) -> Decimal:
    return sum((line.subtotal for line in lines), Decimal("0.00"))


class OrderService:
    def __init__(self, store: Store, track_stock: bool = True):
        self.store = store
        self.track_stock = track_stock

    def price_lines(self, requested: Iterable[Tuple[int, int]]) -> List[OrderLine]:
        lines = []
        for variant_id, quantity in requested:
            variant = self.store.find_variant(variant_id)
            if not variant.product.is_active:
                raise VariantNotFound(variant_id)
            if self.track_stock and variant.stock_quantity < quantity:
                raise InsufficientStock(variant_id, quantity, variant.stock_quantity)
            lines.append(OrderLine(variant.id, quantity, Decimal(variant.price).quantize(CENTS)))
        return lines

    def place_order(self, user_id: int, requested_lines: Iterable[Tuple[int, int]],
                    shipping_address: Optional[Dict[str, Any]] = None,
                    billing_address: Optional[Dict[str, Any]] = None,
                    payment_method: Optional[str] = None,
                    clear_cart: bool = False) -> Order:
        try:
            lines = self.price_lines(merge_lines(requested_lines))
            total = order_total(lines)
            if total > MAX_AMOUNT:
                raise InvalidRequest("Order total is too large", total_amount=str(total))
            order = self.store.create_order_atomic(
                user_id,
                lines,
                total,
                shipping_address=shipping_address,
                billing_address=billing_address,
                payment_method=payment_method,
                decrement_stock=self.track_stock,
                clear_cart=clear_cart,
            )
        except ShopError as exc:
            logger.warning("Order rejected for user %s: %s (%s)", user_id, exc.message, exc.code)
            raise

        logger.info("Placed order %s for user %s: %d lines, total %s", order.id, user_id, len(lines), total)
        return order

    def checkout(self, user_id: int, shipping_address: Optional[Dict[str, Any]] = None,
                 billing_address: Optional[Dict[str, Any]] = None,
                 payment_method: Optional[str] = None) -> Order:
        entries = self.store.list_cart(user_id)
        if not entries:
            raise InvalidRequest("Cart is empty")
        return self.place_order(
            user_id,
            [(entry.variant_id, entry.quantity) for entry in entries],
            shipping_address=shipping_address,
            billing_address=billing_address,
            payment_method=payment_method,
            clear_cart=True,
        )

    def update_status(self, order_id: int, status: Optional[str] = None,
                      payment_status: Optional[str] = None) -> Order:
        if status is None and payment_status is None:
            raise InvalidRequest("Nothing to update")
        if status is not None and status not in ORDER_STATUSES:
            raise InvalidRequest(f"Unknown order status: {status}")
        if payment_status is not None and payment_status not in PAYMENT_STATUSES:
            raise InvalidRequest(f"Unknown payment status: {payment_status}")

        order = self.store.update_order_status(
            order_id, status=status, payment_status=payment_status, restock_on_cancel=self.track_stock
        )
        logger.info("Order %s is now %s/%s", order.id, order.status, order.payment_status)
        return order
