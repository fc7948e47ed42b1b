# errors.py


class PosError(Exception):
    status_code = 500

    def __init__(self, message):
        super().__init__(message)
        self.message = message

    @property
    def code(self) -> str:
        return type(self).__name__


class ValidationError(PosError):
    status_code = 400


class InsufficientInventoryError(PosError):
    status_code = 400

    def __init__(self, ingredient_id, ingredient_name, required, available):
        super().__init__(
            f"Insufficient inventory for ingredient {ingredient_name} (ID: {ingredient_id}): "
            f"required {required}, available {available}"
        )
        self.ingredient_id = ingredient_id
        self.ingredient_name = ingredient_name
        self.required = required
        self.available = available


class NotFoundError(PosError):
    status_code = 404


class ConflictError(PosError):
    """Lock timeout, serialization failure or a concurrent write; safe to retry."""

    status_code = 409
