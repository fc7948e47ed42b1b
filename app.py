# app.py
import logging
import os

from flask import Blueprint, Flask, current_app, jsonify, request
from flask_cors import CORS
from sqlalchemy import select
from werkzeug.exceptions import HTTPException

from database import db, money, transaction, MAX_INT, Ingredient, MenuItem, RecipeLine
from errors import PosError, ValidationError
from inventory import (
    create_ingredient, list_ingredients, list_menu, menu_item_recipe,
    set_ingredient_count, stock_ledger,
)
from orders import (
    create_order, get_order_item, list_orders, order_items,
    parse_order_payload, set_item_complete,
)
from sequences import ensure_sequences

api = Blueprint("api", __name__, url_prefix="/api")


def json_error(message, code=400, error_type=None):
    body = {"success": False, "error": message}
    if error_type:
        body["type"] = error_type
    return jsonify(body), code


def require_json():
    if not request.is_json:
        return json_error("Expected JSON body", 400, error_type="ValidationError")
    return None


def json_object(optional=False):
    d = request.get_json(silent=True)
    if d is None and optional:
        return {}
    if not isinstance(d, dict):
        raise ValidationError("Expected a JSON object")
    return d


def init_db():
    db.create_all()
    ensure_sequences()
    db.session.commit()


def order_json(o):
    return {
        "orderid": o.id,
        "timeoforder": o.created_at.isoformat() if o.created_at else None,
        "customerid": o.customer_id,
        "employeeid": o.employee_id,
        "totalcost": str(money(o.total_cost)),
        "orderweek": o.order_week,
        "is_complete": o.is_complete,
    }


def order_item_json(oi, name=None, price=None):
    out = {
        "orderitemid": oi.id,
        "orderid": oi.order_id,
        "menuitemid": oi.menu_item_id,
        "quantity": oi.qty,
        "is_complete": bool(oi.is_complete),
    }
    if name is not None:
        out["menuitemname"] = name
        out["price"] = str(money(price))
    return out


def ingredient_json(ing):
    return {
        "ingredientid": ing.id,
        "ingredientname": ing.name,
        "ingredientcount": int(ing.stock_qty),
    }


# Orders

@api.get("/orders")
def api_orders_list():
    return jsonify({"success": True, "data": [order_json(o) for o in list_orders()]})


@api.post("/orders")
def api_orders_create():
    bad = require_json()
    if bad:
        return bad

    kwargs = parse_order_payload(json_object())
    o = create_order(**kwargs)
    return jsonify({"success": True, "data": order_json(o)}), 201


@api.get("/orders/items/<int:order_item_id>")
def api_order_item_get(order_item_id):
    oi, name, price = get_order_item(order_item_id)
    return jsonify({"success": True, "data": order_item_json(oi, name, price)})


@api.patch("/orders/items/<int:order_item_id>/complete")
def api_order_item_complete(order_item_id):
    d = json_object(optional=True)
    flag = d.get("isComplete", True)
    if not isinstance(flag, bool):
        raise ValidationError("isComplete must be a boolean")

    oi = set_item_complete(order_item_id, flag)
    return jsonify({"success": True, "data": order_item_json(oi)})


@api.get("/orders/<int:order_id>/items")
def api_order_items_list(order_id):
    rows = order_items(order_id)
    return jsonify({"success": True, "data": [order_item_json(oi, name, price) for oi, name, price in rows]})


# Inventory

@api.get("/inventory")
def api_inventory_list():
    return jsonify({"success": True, "data": [ingredient_json(r) for r in list_ingredients()]})


@api.post("/inventory")
def api_inventory_create():
    bad = require_json()
    if bad:
        return bad

    d = json_object()
    with transaction():
        row = create_ingredient(d.get("ingredientname"), d.get("ingredientcount"))
    return jsonify({"success": True, "data": ingredient_json(row)}), 201


@api.put("/inventory/<int:ingredient_id>/quantity")
def api_inventory_set_quantity(ingredient_id):
    bad = require_json()
    if bad:
        return bad

    d = json_object()
    with transaction():
        row = set_ingredient_count(ingredient_id, d.get("newQuantity"))
    return jsonify({"success": True, "data": ingredient_json(row)})


@api.get("/inventory/ledger")
def api_stock_ledger_list():
    try:
        limit = int(request.args.get("limit") or 200)
        ingredient_id = request.args.get("ingredient_id")
        ingredient_id = int(ingredient_id) if ingredient_id else None
    except ValueError:
        raise ValidationError("limit and ingredient_id must be integers") from None
    if ingredient_id is not None and abs(ingredient_id) > MAX_INT:
        raise ValidationError("ingredient_id is out of range")

    rows = stock_ledger(ingredient_id, limit)
    out = [{
        "id": r.id,
        "created_at": r.created_at.isoformat() if r.created_at else None,
        "ingredientid": r.ingredient_id,
        "ingredientname": name,
        "change_qty": r.change_qty,
        "reason": r.reason,
        "ref_type": r.ref_type,
        "ref_id": r.ref_id,
    } for r, name in rows]
    return jsonify({"success": True, "data": out})


# Menu

@api.get("/menu")
def api_menu_list():
    out = [{
        "menuitemid": mi.id,
        "drinkcategory": mi.category,
        "menuitemname": mi.name,
        "price": str(money(mi.price)),
    } for mi in list_menu()]
    return jsonify({"success": True, "data": out})


@api.get("/menu/<int:menu_item_id>/ingredients")
def api_menu_item_ingredients(menu_item_id):
    out = [{
        "ingredientid": rl.ingredient_id,
        "ingredientname": name,
        "ingredientqty": rl.qty_per_item,
    } for rl, name in menu_item_recipe(menu_item_id)]
    return jsonify({"success": True, "data": out})


# System

@api.post("/system/init")
def api_system_init():
    init_db()
    return jsonify({"success": True, "data": {"message": "Initialized"}})


DEMO_MENU = [
    ("Classic Milk Tea", "Milk Tea", "5.25", {"Black Tea": 1, "Milk": 2, "Boba": 5}),
    ("Taro Milk Tea", "Milk Tea", "5.75", {"Taro Powder": 2, "Milk": 2, "Boba": 5}),
    ("Mango Green Tea", "Fruit Tea", "5.50", {"Green Tea": 1, "Mango Syrup": 2}),
    ("Brown Sugar Boba Milk", "Specialty", "6.25", {"Milk": 3, "Brown Sugar": 2, "Boba": 6}),
]
DEMO_STOCK = {
    "Black Tea": 200, "Green Tea": 200, "Milk": 300, "Boba": 1000,
    "Taro Powder": 150, "Mango Syrup": 150, "Brown Sugar": 150,
}


@api.post("/system/seed-menu")
def api_seed_menu():
    init_db()
    if MenuItem.query.count() > 0:
        return jsonify({"success": True, "data": {"message": "Menu already seeded"}})

    with transaction():
        ingredients = {}
        for name, count in DEMO_STOCK.items():
            ing = db.session.execute(select(Ingredient).where(Ingredient.name == name)).scalar_one_or_none()
            ingredients[name] = ing or create_ingredient(name, count)

        for name, category, price, recipe in DEMO_MENU:
            mi = MenuItem(name=name, category=category, price=money(price))
            db.session.add(mi)
            db.session.flush()
            for ing_name, qty in recipe.items():
                db.session.add(RecipeLine(menu_item_id=mi.id, ingredient_id=ingredients[ing_name].id, qty_per_item=qty))

    current_app.logger.info("Seeded demo menu with %s items", len(DEMO_MENU))
    return jsonify({"success": True, "data": {"message": f"Seeded {len(DEMO_MENU)} menu items"}}), 201


@api.get("/health")
def api_health():
    return jsonify({"success": True, "data": {"name": "bobapos", "status": "OK"}})


def register_error_handlers(app):
    @app.errorhandler(PosError)
    def _err_pos(e):
        if e.status_code >= 500:
            app.logger.error("%s: %s", e.code, e.message)
        elif e.status_code == 409:
            app.logger.warning("Conflict on %s %s: %s", request.method, request.path, e.message)
        return json_error(e.message, e.status_code, error_type=e.code)

    @app.errorhandler(HTTPException)
    def _err_http(e):
        return json_error(e.description or e.name, e.code or 500, error_type=e.name.replace(" ", ""))

    @app.errorhandler(Exception)
    def _err_unexpected(e):
        db.session.rollback()
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return json_error("Internal server error", 500, error_type="InternalError")


def create_app(test_config=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get("DATABASE_URL")
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SQLITE_TIMEOUT"] = float(os.environ.get("SQLITE_TIMEOUT", "15"))
    app.config["CORS_ORIGINS"] = os.environ.get("CORS_ORIGINS", "*")
    app.config["LOG_LEVEL"] = os.environ.get("LOG_LEVEL", "INFO")

    if test_config:
        app.config.update(test_config)

    if not app.config["SQLALCHEMY_DATABASE_URI"]:
        os.makedirs(app.instance_path, exist_ok=True)
        app.config["SQLALCHEMY_DATABASE_URI"] = "sqlite:///" + os.path.join(app.instance_path, "bobapos.db")

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite"):
        engine_options = app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", {})
        connect_args = engine_options.setdefault("connect_args", {})
        connect_args.setdefault("timeout", app.config["SQLITE_TIMEOUT"])
        connect_args.setdefault("check_same_thread", False)

    app.logger.setLevel(getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO))

    origins = [o.strip() for o in str(app.config["CORS_ORIGINS"]).split(",") if o.strip()]
    CORS(app, resources={r"/api/*": {"origins": origins or "*"}})

    db.init_app(app)
    app.register_blueprint(api)
    register_error_handlers(app)

    app.logger.info("Using database %s", app.config["SQLALCHEMY_DATABASE_URI"])
    return app


if __name__ == "__main__":
    app = create_app()
    with app.app_context():
        init_db()
    app.run(port=int(os.environ.get("PORT", "3000")))
