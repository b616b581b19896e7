from .range_resolver import RangeResolver

__all__ = ["RangeResolver"]
