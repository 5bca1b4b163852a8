from .dates import iter_months, month_bounds, parse_date

__all__ = ["iter_months", "month_bounds", "parse_date"]
