# inventory.py
from collections import defaultdict

from flask import current_app
from sqlalchemy import select

from database import db, now_utc, MAX_INT, Ingredient, MenuItem, RecipeLine, StockLedger
from errors import NotFoundError, ValidationError
from sequences import next_id


def stock_adjust(ingredient_id, change_qty, reason, ref_type="", ref_id=None):
    """Apply a signed change to an ingredient count inside the caller's transaction.

    The count is updated with a SQL expression so concurrent adjustments of the
    same row never lose each other's writes. No floor is enforced here.
    """
    ing = db.session.get(Ingredient, ingredient_id)
    if ing is None:
        raise NotFoundError(f"Ingredient not found: {ingredient_id}")

    ing.stock_qty = Ingredient.stock_qty + int(change_qty)
    db.session.add(StockLedger(
        ingredient_id=ingredient_id,
        change_qty=int(change_qty),
        reason=reason,
        ref_type=ref_type,
        ref_id=ref_id,
        created_at=now_utc()
    ))
    db.session.flush()

    if ing.stock_qty < 0:
        current_app.logger.warning(
            "Ingredient %s (%s) went negative: %s after %s %s",
            ing.id, ing.name, ing.stock_qty, reason, change_qty
        )
    return ing


def debit(ingredient_id, amount, reason="debit", ref_type="", ref_id=None):
    return stock_adjust(ingredient_id, -int(amount), reason, ref_type, ref_id)


def credit(ingredient_id, amount, reason="credit", ref_type="", ref_id=None):
    return stock_adjust(ingredient_id, int(amount), reason, ref_type, ref_id)


def recipe_for(menu_item_id):
    return RecipeLine.query.filter_by(menu_item_id=menu_item_id).order_by(RecipeLine.id.asc()).all()


def required_ingredients(items):
    """Total quantity of each ingredient needed by ``(menu_item_id, qty)`` pairs."""
    required = defaultdict(int)
    for menu_item_id, qty in items:
        for line in recipe_for(menu_item_id):
            required[line.ingredient_id] += int(line.qty_per_item) * int(qty)
    return dict(required)


def menu_item_recipe(menu_item_id):
    mi = db.session.get(MenuItem, menu_item_id)
    if mi is None:
        raise NotFoundError("Menu item not found")
    return (
        db.session.query(RecipeLine, Ingredient.name)
        .join(Ingredient, Ingredient.id == RecipeLine.ingredient_id)
        .filter(RecipeLine.menu_item_id == mi.id)
        .order_by(Ingredient.name.asc())
        .all()
    )


def list_ingredients():
    return Ingredient.query.order_by(Ingredient.name.asc()).all()


def _parse_count(value, field):
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationError(f"{field} must be a non-negative integer")
    try:
        count = int(value)
    except ValueError:
        raise ValidationError(f"{field} must be a non-negative integer") from None
    if count < 0:
        raise ValidationError(f"{field} must be a non-negative integer")
    if count > MAX_INT:
        raise ValidationError(f"{field} must be at most {MAX_INT}")
    return count


def create_ingredient(name, count):
    name = (name or "").strip()
    if not name:
        raise ValidationError("ingredientname is required")
    if count is None:
        raise ValidationError("ingredientcount is required")
    count = _parse_count(count, "ingredientcount")

    exists = Ingredient.query.filter(db.func.lower(Ingredient.name) == name.lower()).first()
    if exists:
        raise ValidationError("ingredient name already exists")

    row = Ingredient(id=next_id("ingredient"), name=name, stock_qty=0)
    db.session.add(row)
    db.session.flush()
    if count:
        stock_adjust(row.id, count, "opening_balance", "ingredient", row.id)
    return row


def set_ingredient_count(ingredient_id, new_count):
    if new_count is None:
        raise ValidationError("newQuantity is required")
    new_count = _parse_count(new_count, "newQuantity")

    ing = db.session.execute(
        select(Ingredient)
        .where(Ingredient.id == ingredient_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if ing is None:
        raise NotFoundError("Inventory item not found")

    diff = new_count - int(ing.stock_qty)
    if diff:
        stock_adjust(ing.id, diff, "count_adjustment", "manual")
    return ing


def stock_ledger(ingredient_id=None, limit=200):
    limit = max(1, min(int(limit), 500))
    q = (
        db.session.query(StockLedger, Ingredient.name.label("ingredient_name"))
        .join(Ingredient, Ingredient.id == StockLedger.ingredient_id)
    )
    if ingredient_id is not None:
        q = q.filter(StockLedger.ingredient_id == ingredient_id)
    return q.order_by(StockLedger.id.desc()).limit(limit).all()


def list_menu():
    return MenuItem.query.order_by(MenuItem.name.asc()).all()
