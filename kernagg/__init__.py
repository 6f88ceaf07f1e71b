"""Aggregation of concurrent tasks into shared executor slices and recycled buffers."""

__version__ = "0.1.0"
__all__ = ["config", "function_call", "buffer_registry", "executor", "pool", "buffers"]