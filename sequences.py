# sequences.py
"""Identifier allocation.

Each entity kind owns one row in ``id_sequence``. Allocating is a single
``UPDATE ... SET last_value = last_value + 1`` followed by a read of the row in
the same transaction, so the row's write lock serializes concurrent allocators
of one kind until their transactions end. Different kinds are different rows
and never wait on each other.
"""
from flask import current_app
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from database import db, IdSequence, Ingredient, Order, OrderItem
from errors import ConflictError

SEQUENCE_MODELS = {
    "order": Order,
    "order_item": OrderItem,
    "ingredient": Ingredient,
}


def _model_for(kind):
    model = SEQUENCE_MODELS.get(kind)
    if model is None:
        raise ValueError(f"unknown sequence kind: {kind!r}")
    return model


def _max_existing_id(model) -> int:
    return int(db.session.execute(select(func.coalesce(func.max(model.id), 0))).scalar_one())


def _seed(kind):
    row = IdSequence(kind=kind, last_value=_max_existing_id(_model_for(kind)))
    db.session.add(row)
    try:
        db.session.flush()
    except IntegrityError as exc:
        raise ConflictError(f"sequence {kind!r} was seeded concurrently, retry") from exc
    return row


def ensure_sequences():
    """Create the counter rows that do not exist yet, starting at MAX(id)."""
    existing = set(db.session.execute(select(IdSequence.kind)).scalars())
    for kind in SEQUENCE_MODELS:
        if kind not in existing:
            _seed(kind)


def next_id(kind) -> int:
    _model_for(kind)

    result = db.session.execute(
        update(IdSequence)
        .where(IdSequence.kind == kind)
        .values(last_value=IdSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        current_app.logger.info("Seeding missing id sequence %s", kind)
        _seed(kind)
        return next_id(kind)

    value = db.session.execute(
        select(IdSequence.last_value).where(IdSequence.kind == kind)
    ).scalar_one()
    return int(value)
