"""
Domain errors raised by the service layer.

Every error carries the HTTP status it maps to; main.py turns them into
the {"success": false, "message": ...} envelope.
"""
from typing import Any, Dict, Optional


class OrderingError(Exception):
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "message": self.message}


class ValidationError(OrderingError):
    status_code = 400


class AuthenticationError(OrderingError):
    status_code = 401


class ForbiddenError(OrderingError):
    status_code = 403


class NotFoundError(OrderingError):
    status_code = 404


class ConflictError(OrderingError):
    status_code = 409


class InvalidTransitionError(OrderingError):
    status_code = 409


class InsufficientStockError(ConflictError):
    def __init__(self, food_id: int, name: str, available: int, requested: Optional[int] = None):
        super().__init__(
            f"Insufficient stock for {name}: {available} available, {requested} requested"
        )
        self.food_id = food_id
        self.name = name
        self.available = available
        self.requested = requested

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["item"] = {
            "food_id": self.food_id,
            "name": self.name,
            "available": self.available,
            "requested": self.requested,
        }
        return data
