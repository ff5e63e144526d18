from .auth import User, SessionToken
from .catalog import Product
from .orders import Order, OrderItem
from .keys import Key, KeyLog

__all__ = [
    'User', 'SessionToken',
    'Product',
    'Order', 'OrderItem',
    'Key', 'KeyLog',
]
