from .local import LocalSessionCache, Loader

__all__ = ["LocalSessionCache", "Loader"]
