from .money import quantize_money, to_decimal
from .clock import utcnow

__all__ = ["quantize_money", "to_decimal", "utcnow"]
