from __future__ import annotations

from decimal import Decimal, InvalidOperation

from sqlalchemy import String
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    pass


class DecimalString(TypeDecorator):
    """Částka/množství uložené jako desetinný řetězec ("1234.50"), v Pythonu Decimal."""

    impl = String(32)
    cache_ok = True

    def __init__(self, places: int = 2):
        super().__init__()
        self.places = int(places)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, Decimal):
            value = Decimal(str(value))
        return format(value.quantize(Decimal(1).scaleb(-self.places)), "f")

    def process_result_value(self, value, dialect):
        if value is None or value == "":
            return None
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None
