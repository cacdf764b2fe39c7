"""Cart Manager: гостевые и пользовательские корзины."""

__version__ = "1.0.0"
