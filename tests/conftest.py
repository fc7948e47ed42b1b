import pytest

from app import create_app, init_db
from database import db, money, transaction, Ingredient, MenuItem, RecipeLine
from inventory import create_ingredient


@pytest.fixture()
def app(tmp_path):
    """A fresh app backed by its own SQLite file, so threads get real connections."""
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'bobapos-test.db'}",
    })
    with app.app_context():
        init_db()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def ctx(app):
    with app.app_context():
        yield
        db.session.remove()


class Catalog:
    """Builds ingredients and menu items the way the menu/inventory screens would."""

    def ingredient(self, name, count):
        with transaction():
            row = create_ingredient(name, count)
        return row.id

    def menu_item(self, name, recipe, price="5.00"):
        with transaction():
            mi = MenuItem(name=name, category="Test", price=money(price))
            db.session.add(mi)
            db.session.flush()
            for ingredient_id, qty in recipe.items():
                db.session.add(RecipeLine(menu_item_id=mi.id, ingredient_id=ingredient_id, qty_per_item=qty))
        return mi.id

    def count(self, ingredient_id):
        db.session.expire_all()
        return db.session.get(Ingredient, ingredient_id).stock_qty


@pytest.fixture()
def catalog(ctx):
    return Catalog()
