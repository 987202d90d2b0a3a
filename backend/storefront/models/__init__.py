from .tenancy import Store
from .inventory import Category, Product, ProductVariant, InventoryMovement, product_categories
from .promotions import Discount, DiscountCode
from .customers import Customer
from .orders import Order, OrderLine, OrderPayment, OrderLineImmutableError
from .documents import DocumentSequence
from .communications import Notification

__all__ = [
    'Store',
    'Category', 'Product', 'ProductVariant', 'InventoryMovement', 'product_categories',
    'Discount', 'DiscountCode',
    'Customer',
    'Order', 'OrderLine', 'OrderPayment', 'OrderLineImmutableError',
    'DocumentSequence',
    'Notification',
]
