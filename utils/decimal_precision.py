"""
Decimal Precision Utilities for Financial Calculations
Enforces consistent Decimal usage across all credit and payment amounts
"""

import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from typing import Any, Optional, Union

logger = logging.getLogger(__name__)

getcontext().prec = 28

Number = Union[str, int, float, Decimal]


class MonetaryDecimal:
    """Decimal-only monetary operations with ledger precision"""

    USD_PRECISION = Decimal("0.01")  # credits are whole cents

    @classmethod
    def parse(cls, value: Any, context: str = "monetary") -> Optional[Decimal]:
        """
        Convert a gateway or cache value to a finite Decimal.

        Returns None for missing, malformed, NaN or infinite input instead of
        guessing a value. Booleans are rejected.
        """
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, Decimal):
            decimal_value = value
        else:
            try:
                # Convert to string first to avoid float precision issues
                decimal_value = Decimal(str(value).strip())
            except (InvalidOperation, ValueError):
                logger.debug(f"Unparseable amount {value!r} in context {context}")
                return None
        if not decimal_value.is_finite():
            return None
        return decimal_value

    @classmethod
    def parse_positive(cls, value: Any, context: str = "monetary") -> Optional[Decimal]:
        decimal_value = cls.parse(value, context)
        if decimal_value is None or decimal_value <= 0:
            return None
        return decimal_value

    @classmethod
    def to_decimal(cls, value: Any, context: str = "monetary") -> Decimal:
        """Like parse() but falls back to zero"""
        decimal_value = cls.parse(value, context)
        return decimal_value if decimal_value is not None else Decimal("0")

    @classmethod
    def quantize_usd(cls, amount: Number) -> Decimal:
        """Quantize amount to USD precision (2 decimal places)"""
        return cls.to_decimal(amount, "USD").quantize(cls.USD_PRECISION, rounding=ROUND_HALF_UP)

    @classmethod
    def to_float(cls, amount: Optional[Decimal]) -> Optional[float]:
        """JSON-friendly float for metadata and cache payloads"""
        if amount is None:
            return None
        return float(amount)
