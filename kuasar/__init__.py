"""Mount helpers, storage bookkeeping, a quark sandboxer and shim building blocks."""

__version__ = "0.1.0"