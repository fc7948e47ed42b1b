# database.py
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from errors import ConflictError

db = SQLAlchemy()

# largest value an INTEGER column holds on every supported backend
MAX_INT = 2**31 - 1


def now_utc():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def money(x) -> Decimal:
    try:
        return Decimal(str(x)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    except Exception:
        return Decimal("0.00")


@contextmanager
def transaction():
    """Commit the session when the block finishes, roll it back on any error.

    Lock timeouts, serialization failures and lost optimistic version checks
    are re-raised as ConflictError so callers can tell the client to retry.
    """
    try:
        yield db.session
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        raise ConflictError("Record was modified concurrently, retry") from exc
    except OperationalError as exc:
        db.session.rollback()
        if exc.connection_invalidated:
            raise
        raise ConflictError("Database is busy, retry") from exc
    except Exception:
        db.session.rollback()
        raise


class Ingredient(db.Model):
    id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    name = db.Column(db.String(160), unique=True, nullable=False)
    stock_qty = db.Column(db.Integer, nullable=False, default=0)


class MenuItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(180), nullable=False)
    category = db.Column(db.String(80))
    price = db.Column(db.Numeric(10, 2), nullable=False, default=0)

    recipe_lines = db.relationship("RecipeLine", back_populates="menu_item", order_by="RecipeLine.id")


class RecipeLine(db.Model):
    __table_args__ = (db.UniqueConstraint("menu_item_id", "ingredient_id"),)

    id = db.Column(db.Integer, primary_key=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_item.id"), nullable=False, index=True)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredient.id"), nullable=False)
    qty_per_item = db.Column(db.Integer, nullable=False, default=0)

    menu_item = db.relationship("MenuItem", back_populates="recipe_lines")
    ingredient = db.relationship("Ingredient")


class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)
    customer_id = db.Column(db.Integer)
    employee_id = db.Column(db.Integer, nullable=False)
    total_cost = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    order_week = db.Column(db.Integer)

    # Derived from the lines; only refresh_completion() writes it.
    _is_complete = db.Column("is_complete", db.Boolean, nullable=False, default=False)

    items = db.relationship("OrderItem", back_populates="order", order_by="OrderItem.id")

    @property
    def is_complete(self):
        return bool(self._is_complete)

    def refresh_completion(self):
        """Recompute the aggregate flag from the lines and mark it for writing."""
        lines = OrderItem.query.filter_by(order_id=self.id).all()
        self._is_complete = bool(lines) and all(line.is_complete for line in lines)
        flag_modified(self, "_is_complete")
        return self._is_complete


class OrderItem(db.Model):
    id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    order_id = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False, index=True)
    menu_item_id = db.Column(db.Integer, db.ForeignKey("menu_item.id"), nullable=False)
    qty = db.Column(db.Integer, nullable=False, default=1)
    is_complete = db.Column(db.Boolean, nullable=False, default=False)
    version = db.Column(db.Integer, nullable=False)

    order = db.relationship("Order", back_populates="items")
    menu_item = db.relationship("MenuItem")

    __mapper_args__ = {"version_id_col": version}


class StockLedger(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    ingredient_id = db.Column(db.Integer, db.ForeignKey("ingredient.id"), nullable=False, index=True)
    change_qty = db.Column(db.Integer, nullable=False, default=0)
    reason = db.Column(db.String(80), nullable=False)
    ref_type = db.Column(db.String(50))
    ref_id = db.Column(db.Integer)
    created_at = db.Column(db.DateTime, default=now_utc)


class IdSequence(db.Model):
    kind = db.Column(db.String(40), primary_key=True)
    last_value = db.Column(db.Integer, nullable=False, default=0)

