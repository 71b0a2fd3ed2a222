# attendance_etl/adapters/__init__.py

from .woocommerce import WooCommerceClient   # orders & products (pull)
from .loops import LoopsClient               # active-members list (push)

REGISTRY = {
    "woocommerce": WooCommerceClient.from_settings,
    "loops": LoopsClient.from_settings,
}


def build(name: str, settings, **kw):
    return REGISTRY[name](settings, **kw)
