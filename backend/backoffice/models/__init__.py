from .sites import Site
from .auth import User, SessionToken
from .inventory import Product, StockMovement
from .sales import Sale, SaleItem
from .capital import CapitalTransaction

__all__ = [
    'Site',
    'User', 'SessionToken',
    'Product', 'StockMovement',
    'Sale', 'SaleItem',
    'CapitalTransaction',
]
