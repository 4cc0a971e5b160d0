from .catalog import Product, Customer
from .inventory import Batch, Location, StockRecord, StockMovement
from .orders import Order, OrderLine
from .payments import Payment
from .documents import DocumentSequence

__all__ = [
    'Product', 'Customer',
    'Batch', 'Location', 'StockRecord', 'StockMovement',
    'Order', 'OrderLine',
    'Payment',
    'DocumentSequence',
]
