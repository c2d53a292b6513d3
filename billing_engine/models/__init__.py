# Models package: import all models here so Alembic can discover them.

from billing_engine.models.order import Order  # noqa: F401
from billing_engine.models.checkout_correlation import CheckoutSessionCorrelation  # noqa: F401
from billing_engine.models.product import Product  # noqa: F401
from billing_engine.models.booking import Booking  # noqa: F401
from billing_engine.models.dunning import DunningCase  # noqa: F401
from billing_engine.models.processed_event import ProcessedEvent  # noqa: F401
from billing_engine.models.audit import AuditEvent  # noqa: F401
