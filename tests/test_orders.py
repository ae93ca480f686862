import threading
from decimal import Decimal

import pytest

from errors import Conflict, InsufficientStock, InvalidRequest, VariantNotFound
from models import MAX_QUANTITY, CartEntry, Order, OrderItem
from orders import OrderLine, OrderService, merge_lines


def test_total_matches_sum_of_lines(order_service, customer, make_variant):
    user, _ = customer
    tee = make_variant(price="10.00", stock=10, name="Tee")
    cap = make_variant(price="4.50", stock=10, name="Cap")

    order = order_service.place_order(user.id, [(tee.id, 3), (cap.id, 2)])

    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert len(order.items) == 2
    assert order.total_amount == Decimal("39.00")
    assert sum(item.quantity * item.unit_price for item in order.items) == order.total_amount

    stored = order_service.store.get_order(order.id)
    assert stored.total_amount == Decimal("39.00")
    assert sum(item.quantity * item.unit_price for item in stored.items) == stored.total_amount


def test_unknown_variant_rejects_whole_order(order_service, customer, variant, count_rows):
    user, _ = customer

    with pytest.raises(VariantNotFound) as excinfo:
        order_service.place_order(user.id, [(variant.id, 1), (9999, 1)])

    assert excinfo.value.details["variant_id"] == 9999
    assert count_rows(Order) == 0
    assert count_rows(OrderItem) == 0
    assert order_service.store.find_variant(variant.id).stock_quantity == 2


def test_sequential_orders_until_stock_runs_out(order_service, customer, variant):
    user, _ = customer

    first = order_service.place_order(user.id, [(variant.id, 1)])
    assert first.total_amount == Decimal("10.00")
    assert order_service.store.find_variant(variant.id).stock_quantity == 1

    second = order_service.place_order(user.id, [(variant.id, 1)])
    assert second.total_amount == Decimal("10.00")
    assert order_service.store.find_variant(variant.id).stock_quantity == 0

    with pytest.raises(InsufficientStock) as excinfo:
        order_service.place_order(user.id, [(variant.id, 1)])
    assert excinfo.value.details == {"variant_id": variant.id, "requested": 1, "available": 0}


def test_failed_decrement_rolls_back_earlier_lines(store, customer, make_variant, count_rows):
    user, _ = customer
    plenty = make_variant(stock=5, name="Plenty")
    scarce = make_variant(stock=1, name="Scarce")
    lines = [
        OrderLine(plenty.id, 2, Decimal("10.00")),
        OrderLine(scarce.id, 3, Decimal("10.00")),
    ]

    with pytest.raises(InsufficientStock):
        store.create_order_atomic(user.id, lines, Decimal("50.00"))

    assert store.find_variant(plenty.id).stock_quantity == 5
    assert store.find_variant(scarce.id).stock_quantity == 1
    assert count_rows(Order) == 0
    assert count_rows(OrderItem) == 0


def test_concurrent_orders_for_last_unit(order_service, customer, other_customer, make_variant, count_rows):
    last = make_variant(stock=1)
    barrier = threading.Barrier(2)
    results = []
    lock = threading.Lock()

    def place(user_id):
        barrier.wait()
        try:
            order_service.place_order(user_id, [(last.id, 1)])
            outcome = "ok"
        except InsufficientStock:
            outcome = "insufficient"
        with lock:
            results.append(outcome)

    threads = [
        threading.Thread(target=place, args=(customer[0].id,)),
        threading.Thread(target=place, args=(other_customer[0].id,)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert sorted(results) == ["insufficient", "ok"]
    assert order_service.store.find_variant(last.id).stock_quantity == 0
    assert count_rows(Order) == 1


def test_unit_price_is_a_snapshot(order_service, customer, variant):
    user, _ = customer
    order = order_service.place_order(user.id, [(variant.id, 1)])

    order_service.store.update_variant(variant.id, {"price": Decimal("99.00")})

    stored = order_service.store.get_order(order.id)
    assert stored.items[0].unit_price == Decimal("10.00")
    assert stored.total_amount == Decimal("10.00")


def test_repeated_variant_is_merged(order_service, customer, variant):
    user, _ = customer
    order = order_service.place_order(user.id, [(variant.id, 1), (variant.id, 1)])

    assert len(order.items) == 1
    assert order.items[0].quantity == 2
    assert order.total_amount == Decimal("20.00")


@pytest.mark.parametrize("lines", [[], [(1, 0)], [(1, -2)]])
def test_invalid_lines_are_rejected(order_service, customer, variant, count_rows, lines):
    user, _ = customer
    with pytest.raises(InvalidRequest):
        order_service.place_order(user.id, lines)
    assert count_rows(Order) == 0


def test_merge_lines_keeps_first_seen_order():
    assert merge_lines([(3, 1), (1, 2), (3, 4)]) == [(3, 5), (1, 2)]


def test_inactive_product_is_not_orderable(order_service, store, customer, variant):
    user, _ = customer
    store.deactivate_product(variant.product_id)

    with pytest.raises(VariantNotFound):
        order_service.place_order(user.id, [(variant.id, 1)])


def test_untracked_stock_is_left_alone(store, customer, variant):
    user, _ = customer
    service = OrderService(store, track_stock=False)

    order = service.place_order(user.id, [(variant.id, 5)])

    assert order.total_amount == Decimal("50.00")
    assert store.find_variant(variant.id).stock_quantity == 2


def test_checkout_places_order_and_clears_cart(order_service, store, customer, make_variant, count_rows):
    user, _ = customer
    tee = make_variant(price="10.00", stock=5, name="Tee")
    cap = make_variant(price="7.25", stock=5, name="Cap")
    store.add_to_cart(user.id, tee.id, 2)
    store.add_to_cart(user.id, cap.id, 1)

    order = order_service.checkout(user.id, payment_method="card")

    assert order.total_amount == Decimal("27.25")
    assert {(i.variant_id, i.quantity) for i in order.items} == {(tee.id, 2), (cap.id, 1)}
    assert store.list_cart(user.id) == []
    assert count_rows(CartEntry) == 0


def test_failed_checkout_keeps_cart(order_service, store, customer, variant):
    user, _ = customer
    store.add_to_cart(user.id, variant.id, 3)

    with pytest.raises(InsufficientStock):
        order_service.checkout(user.id)

    assert [(e.variant_id, e.quantity) for e in store.list_cart(user.id)] == [(variant.id, 3)]


def test_checkout_with_empty_cart(order_service, customer):
    user, _ = customer
    with pytest.raises(InvalidRequest):
        order_service.checkout(user.id)


def test_status_transitions(order_service, customer, variant):
    user, _ = customer
    order = order_service.place_order(user.id, [(variant.id, 1)])

    paid = order_service.update_status(order.id, status="paid", payment_status="paid")
    assert (paid.status, paid.payment_status) == ("paid", "paid")

    with pytest.raises(Conflict):
        order_service.update_status(order.id, status="pending")

    with pytest.raises(InvalidRequest):
        order_service.update_status(order.id, status="lost")


def test_cancel_returns_stock(order_service, customer, variant):
    user, _ = customer
    order = order_service.place_order(user.id, [(variant.id, 2)])
    assert order_service.store.find_variant(variant.id).stock_quantity == 0

    cancelled = order_service.update_status(order.id, status="cancelled")

    assert cancelled.status == "cancelled"
    assert order_service.store.find_variant(variant.id).stock_quantity == 2
    with pytest.raises(Conflict):
        order_service.update_status(order.id, status="paid")


def test_merged_quantity_is_capped():
    with pytest.raises(InvalidRequest):
        merge_lines([(1, MAX_QUANTITY), (1, 1)])
    assert merge_lines([(1, MAX_QUANTITY - 1), (1, 1)]) == [(1, MAX_QUANTITY)]


def test_total_beyond_column_range_is_rejected(order_service, customer, make_variant, count_rows):
    user, _ = customer
    variant = make_variant(price="99999.99", stock=MAX_QUANTITY)

    with pytest.raises(InvalidRequest):
        order_service.place_order(user.id, [(variant.id, MAX_QUANTITY)])

    assert count_rows(Order) == 0
    assert order_service.store.find_variant(variant.id).stock_quantity == MAX_QUANTITY


def test_decrement_stock(store, variant):
    updated = store.decrement_stock(variant.id, 1)
    assert updated.stock_quantity == 1

    with pytest.raises(InsufficientStock) as excinfo:
        store.decrement_stock(variant.id, 2)
    assert (excinfo.value.details["requested"], excinfo.value.details["available"]) == (2, 1)
    assert store.find_variant(variant.id).stock_quantity == 1

    with pytest.raises(VariantNotFound):
        store.decrement_stock(9999, 1)
    with pytest.raises(InvalidRequest):
        store.decrement_stock(variant.id, 0)
    assert store.find_variant(variant.id).stock_quantity == 1


def test_cart_rejects_inactive_product(store, customer, variant):
    user, _ = customer
    store.deactivate_product(variant.product_id)

    with pytest.raises(VariantNotFound):
        store.add_to_cart(user.id, variant.id, 1)
    assert store.list_cart(user.id) == []


def test_cart_quantity_is_capped(store, customer, variant):
    user, _ = customer
    store.add_to_cart(user.id, variant.id, MAX_QUANTITY - 1)

    with pytest.raises(InvalidRequest):
        store.add_to_cart(user.id, variant.id, 2)

    store.add_to_cart(user.id, variant.id, 1)
    assert [e.quantity for e in store.list_cart(user.id)] == [MAX_QUANTITY]
