# Import models so that SQLAlchemy metadata includes them on app startup
from .user import User  # noqa: F401
from .product import Product  # noqa: F401
from .cart import Cart, CartItem  # noqa: F401
from .discount import Discount  # noqa: F401
from .shipping_zone import ShippingZone  # noqa: F401
from .tax_config import TaxConfig  # noqa: F401
from .order import Order, OrderStatus, PaymentStatus, PaymentMethod  # noqa: F401
from .order_item import OrderItem  # noqa: F401
from .order_status_history import OrderStatusHistory  # noqa: F401
from .payment import Payment  # noqa: F401
