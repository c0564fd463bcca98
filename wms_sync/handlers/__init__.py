from wms_sync.handlers.storefront import build_default_registry, order_exists
