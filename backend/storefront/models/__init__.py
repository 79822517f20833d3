from .catalog import Category, Product, ProductVariant
from .inventory import Inventory, InventoryLog, INVENTORY_CHANGE_TYPES
from .promotions import (
    DealTemplate,
    ProductDeal,
    DealLimits,
    DealUsage,
    Coupon,
    CouponUsage,
    coupon_categories,
    coupon_products,
    DEAL_TYPES,
    COUPON_TYPES,
    COUPON_STATUSES,
)
from .carts import CartItem
from .orders import Order, OrderItem, OrderTimeline, ORDER_STATUSES, PAYMENT_STATUSES

__all__ = [
    'Category', 'Product', 'ProductVariant',
    'Inventory', 'InventoryLog', 'INVENTORY_CHANGE_TYPES',
    'DealTemplate', 'ProductDeal', 'DealLimits', 'DealUsage',
    'Coupon', 'CouponUsage', 'coupon_categories', 'coupon_products',
    'DEAL_TYPES', 'COUPON_TYPES', 'COUPON_STATUSES',
    'CartItem',
    'Order', 'OrderItem', 'OrderTimeline', 'ORDER_STATUSES', 'PAYMENT_STATUSES',
]
