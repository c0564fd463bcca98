from wms_sync.wms.api import WMSAPI, WMSAPIError
from wms_sync.wms.client import get_wms_client
