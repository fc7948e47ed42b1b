# orders.py
"""Order creation and line completion.

Stock is only checked when an order is created. It is debited when a cashier
marks a line complete and credited back when the line is reopened, so an order
that was taken but not yet made does not consume inventory. Two orders created
at the same time can both pass the check against stock that only one of them
can use; completion never rejects for stock, and a count driven below zero is
logged and left in the stock ledger for someone to correct.
"""
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy import select
from sqlalchemy.orm.attributes import flag_modified

from database import db, now_utc, money, transaction, MAX_INT, Ingredient, MenuItem, Order, OrderItem
from errors import InsufficientInventoryError, NotFoundError, ValidationError
from inventory import credit, debit, recipe_for, required_ingredients
from sequences import next_id

EMPTY_ORDER_MESSAGE = "Order must contain at least one item"


def _int_field(d, key, required=True, positive=False):
    value = d.get(key)
    if value is None or value == "":
        if required:
            raise ValidationError(f"{key} is required")
        return None
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValidationError(f"{key} must be an integer")
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer") from None
    if positive and n <= 0:
        raise ValidationError(f"{key} must be positive")
    if abs(n) > MAX_INT:
        raise ValidationError(f"{key} is out of range")
    return n


def _parse_timestamp(value):
    if value is None or value == "":
        return None
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        raise ValidationError("timeoforder must be an ISO-8601 timestamp") from None
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def parse_order_payload(d):
    """Turn a POST /orders body into keyword arguments for create_order."""
    raw_items = d.get("orderItems")
    if not raw_items or not isinstance(raw_items, list):
        raise ValidationError(EMPTY_ORDER_MESSAGE)

    items = []
    for raw in raw_items:
        if not isinstance(raw, dict):
            raise ValidationError("orderItems entries must be objects")
        items.append((
            _int_field(raw, "menuitemid"),
            _int_field(raw, "quantity", positive=True),
        ))

    if d.get("totalcost") is None:
        raise ValidationError("totalcost is required")
    try:
        total_cost = Decimal(str(d.get("totalcost")))
    except InvalidOperation:
        raise ValidationError("totalcost must be a number") from None
    if not total_cost.is_finite() or total_cost < 0:
        raise ValidationError("totalcost must be a non-negative number")

    return {
        "employee_id": _int_field(d, "employeeid"),
        "customer_id": _int_field(d, "customerid", required=False),
        "total_cost": money(total_cost),
        "order_week": _int_field(d, "orderweek"),
        "items": items,
        "created_at": _parse_timestamp(d.get("timeoforder")),
    }


def _check_stock(items):
    required = required_ingredients(items)
    if not required:
        return

    rows = db.session.execute(
        select(Ingredient)
        .where(Ingredient.id.in_(sorted(required)))
        .order_by(Ingredient.id.asc())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()

    missing = sorted(set(required) - {ing.id for ing in rows})
    if missing:
        current_app.logger.warning("Rejecting order: recipe uses missing ingredient %s", missing[0])
        raise ValidationError(f"Recipe uses an ingredient that does not exist: {missing[0]}")

    for ing in rows:
        need = required[ing.id]
        if need > int(ing.stock_qty):
            current_app.logger.warning(
                "Rejecting order: ingredient %s (%s) needs %s, has %s",
                ing.id, ing.name, need, ing.stock_qty
            )
            raise InsufficientInventoryError(ing.id, ing.name, need, int(ing.stock_qty))


def create_order(employee_id, items, customer_id=None, total_cost=0, order_week=None, created_at=None):
    if not items:
        raise ValidationError(EMPTY_ORDER_MESSAGE)
    for _, qty in items:
        if int(qty) <= 0:
            raise ValidationError("quantity must be positive")
        if int(qty) > MAX_INT:
            raise ValidationError("quantity is out of range")

    with transaction():
        menu_ids = {menu_item_id for menu_item_id, _ in items}
        known = set(db.session.execute(select(MenuItem.id).where(MenuItem.id.in_(sorted(menu_ids)))).scalars())
        missing = sorted(menu_ids - known)
        if missing:
            raise ValidationError(f"Menu item not found: {missing[0]}")

        _check_stock(items)

        o = Order(
            id=next_id("order"),
            created_at=created_at or now_utc(),
            customer_id=customer_id,
            employee_id=employee_id,
            total_cost=money(total_cost),
            order_week=order_week,
            _is_complete=False,
        )
        db.session.add(o)

        for menu_item_id, qty in items:
            db.session.add(OrderItem(
                id=next_id("order_item"),
                order_id=o.id,
                menu_item_id=menu_item_id,
                qty=int(qty),
                is_complete=False,
            ))

    current_app.logger.info("Created order %s with %s line(s)", o.id, len(items))
    return o


def set_item_complete(order_item_id, is_complete=True):
    """Mark one order line complete or incomplete and settle inventory.

    The inventory delta is applied only when the flag actually changes. The
    parent order's flag is recomputed from all of its lines in the same
    transaction.
    """
    will = bool(is_complete)

    with transaction():
        line = db.session.get(OrderItem, order_item_id, with_for_update=True, populate_existing=True)
        if line is None:
            raise NotFoundError("Order item not found")

        was = bool(line.is_complete)
        line.is_complete = will
        flag_modified(line, "is_complete")
        db.session.flush()

        if will != was:
            # ingredient id order, the same order _check_stock locks rows in
            for rl in sorted(recipe_for(line.menu_item_id), key=lambda rl: rl.ingredient_id):
                amount = int(rl.qty_per_item) * int(line.qty)
                if will:
                    debit(rl.ingredient_id, amount, "order_item_complete", "order_item", line.id)
                else:
                    credit(rl.ingredient_id, amount, "order_item_reopen", "order_item", line.id)

        o = db.session.get(Order, line.order_id)
        o.refresh_completion()

    current_app.logger.info(
        "Order item %s: complete %s -> %s (order %s complete=%s)",
        line.id, was, will, o.id, o.is_complete
    )
    return line


def list_orders():
    return Order.query.order_by(Order.created_at.desc(), Order.id.desc()).all()


def _items_with_menu():
    return (
        db.session.query(OrderItem, MenuItem.name, MenuItem.price)
        .join(MenuItem, MenuItem.id == OrderItem.menu_item_id)
    )


def order_items(order_id):
    if db.session.get(Order, order_id) is None:
        raise NotFoundError("Order not found")
    return _items_with_menu().filter(OrderItem.order_id == order_id).order_by(OrderItem.id.asc()).all()


def get_order_item(order_item_id):
    row = _items_with_menu().filter(OrderItem.id == order_item_id).first()
    if row is None:
        raise NotFoundError("Order item not found")
    return row
