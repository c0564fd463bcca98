from wms_sync.wms.api import WMSAPI
_client = None


def get_wms_client():
    '''
    Returns a singleton instance of the WMSAPI class
    '''
    global _client
    if _client is None:
        from flask import current_app
        cfg = current_app.config
        _client = WMSAPI(
            cfg.get("WMS_API_BASE_URL"),
            cfg.get("WMS_USERNAME"),
            cfg.get("WMS_PASSWORD"),
            wms_code=cfg.get("WMS_CODE"),
            customer_code=cfg.get("WMS_CUSTOMER_CODE"),
            customer_id=cfg.get("WMS_CUSTOMER_ID"),
        )
    return _client


def reset_wms_client():
    global _client
    _client = None
