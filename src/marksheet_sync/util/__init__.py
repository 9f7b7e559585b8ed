from .numbers import parse_number, round_half_up

__all__ = ["parse_number", "round_half_up"]
