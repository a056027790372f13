"""Context assembly."""

from ctxloop.context.builder import BuiltContext, ContextBuilder

__all__ = ["BuiltContext", "ContextBuilder"]
