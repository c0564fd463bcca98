import time
import requests
from datetime import datetime
from typing import Any, Dict, List, Optional
from requests.exceptions import ConnectionError, Timeout, RequestException
from urllib3.exceptions import ProtocolError

from wms_sync.logging_config import get_logger

logger = get_logger(__name__)

# Upper bound on pages read by one list call
MAX_PAGES = 50


class WMSAPIError(Exception):
    """Raised when the WMS rejects a request or cannot be reached."""

    def __init__(self, message, status_code=None):
        super().__init__(message)
        self.status_code = status_code


class WMSAPI:
    """WMS REST connection layer utilizing a requests session, token auth and connection retries."""

    def __init__(self, base_url, username, password, wms_code=None, customer_code=None,
                 customer_id=None, timeout=30):
        if not all([base_url, username, password]):
            raise ValueError("Missing WMS configuration (WMS_API_BASE_URL, WMS_USERNAME, WMS_PASSWORD)")

        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.wms_code = wms_code
        self.customer_code = customer_code
        self.customer_id = customer_id
        self.timeout = timeout
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None

        # Reusable HTTP session
        self.session = requests.Session()
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if wms_code:
            self.session.headers["X-Wms-Code"] = wms_code
        if customer_code:
            self.session.headers["X-Customer-Code"] = customer_code

    # -------------------------
    # Authentication
    # -------------------------
    def _authenticate(self):
        '''Log in with username/password and store the tokens'''
        r = self.session.post(
            f"{self.base_url}/wms/auth/login/",
            json={"username": self.username, "password": self.password},
            timeout=self.timeout,
        )
        if r.status_code != 200:
            raise WMSAPIError(f"WMS authentication failed: {r.status_code} {r.text[:200]}", r.status_code)
        data = r.json()
        if not data.get("token"):
            raise WMSAPIError("WMS authentication failed: no token received")
        self.access_token = data["token"]
        self.refresh_token = data.get("refresh_token") or None
        logger.info("WMS authentication successful", has_refresh_token=bool(self.refresh_token))

    def _refresh(self):
        '''Refresh the access token, falling back to a full login'''
        if not self.refresh_token:
            self._authenticate()
            return
        r = self.session.post(
            f"{self.base_url}/wms/auth/refresh/",
            json={"refresh_token": self.refresh_token},
            timeout=self.timeout,
        )
        if r.status_code == 200 and r.json().get("token"):
            data = r.json()
            self.access_token = data["token"]
            self.refresh_token = data.get("refresh_token") or self.refresh_token
            logger.info("WMS token refreshed")
            return
        logger.warning("WMS token refresh failed, performing full authentication", status_code=r.status_code)
        self._authenticate()

    def _update_auth_header(self):
        '''Adds the Authorization header to the session'''
        if not self.access_token:
            self._authenticate()
        self.session.headers["Authorization"] = f"Bearer {self.access_token}"

    def _request(self, method: str, endpoint: str, max_retries: int = 3, retry_delay: float = 1.0, **kwargs):
        """
        Make a request with retry logic for connection errors.

        Args:
            method: HTTP method
            endpoint: API endpoint
            max_retries: Maximum number of retries for connection errors
            retry_delay: Initial delay between retries (exponential backoff)
            **kwargs: Additional arguments for requests
        """
        self._update_auth_header()
        url = f"{self.base_url}{endpoint}"

        for attempt in range(max_retries):
            try:
                r = self.session.request(method, url, timeout=self.timeout, **kwargs)

                if r.status_code == 401:
                    # Token expired or invalid, refresh once
                    self._refresh()
                    self._update_auth_header()
                    r = self.session.request(method, url, timeout=self.timeout, **kwargs)

                if r.status_code >= 400:
                    raise WMSAPIError(f"{r.status_code} from WMS {method} {endpoint}: {r.text[:500]}", r.status_code)

                return r.json() if r.text else None

            except (ConnectionError, ProtocolError, Timeout) as e:
                if attempt < max_retries - 1:
                    time.sleep(retry_delay * (2 ** attempt))
                    continue
                raise WMSAPIError(f"Connection error after {max_retries} attempts: {str(e)}") from e
            except RequestException as e:
                raise WMSAPIError(f"Request to WMS failed: {str(e)}") from e

    def _get(self, endpoint: str, params: Optional[Dict] = None):
        return self._request("GET", endpoint, params=params)

    def _post(self, endpoint: str, data: Dict):
        return self._request("POST", endpoint, json=data)

    def _patch(self, endpoint: str, data: Optional[Dict] = None):
        return self._request("PATCH", endpoint, json=data)

    @staticmethod
    def _as_list(response) -> List[Dict]:
        # List endpoints answer either a bare list or {"results": [...]}
        if isinstance(response, list):
            return response
        if isinstance(response, dict):
            for key in ("results", "data", "items"):
                if isinstance(response.get(key), list):
                    return response[key]
        return []

    # -------------------------
    # Orders
    # -------------------------
    def create_order(self, payload: Dict[str, Any]) -> Dict:
        return self._post("/wms/orders/", payload)

    def cancel_order(self, order_id: str) -> Dict:
        return self._patch(f"/wms/orders/{order_id}/cancel/")

    def get_orders(self, since: datetime, limit: int = 100) -> List[Dict]:
        return self._get_all_pages("/wms/orders/", {
            "from": since.strftime("%Y-%m-%d"),
            "sort": "updatedAt",
            "direction": "desc",
        }, limit)

    # -------------------------
    # Shipments / inbounds / stock
    # -------------------------
    def get_shipments(self, since: datetime, limit: int = 100) -> List[Dict]:
        return self._get_all_pages("/wms/shipments/", {"from": since.strftime("%Y-%m-%d")}, limit)

    def get_inbounds(self, since: datetime, limit: int = 1000) -> List[Dict]:
        return self._get_all_pages("/wms/inbounds/", {"from": since.strftime("%Y-%m-%d")}, limit)

    def get_stock(self, since: datetime, limit: int = 100) -> List[Dict]:
        """Stock rows modified since the given time."""
        return self._get_all_pages("/wms/stock/", {"modified_gte": since.strftime("%Y-%m-%dT%H:%M:%S")}, limit)

    def _get_all_pages(self, endpoint: str, params: Dict, limit: int) -> List[Dict]:
        """
        Follow ``page`` until a short page comes back.

        Raises:
            WMSAPIError: if MAX_PAGES full pages were read, so a caller never
                treats a truncated window as complete
        """
        rows: List[Dict] = []
        for page in range(1, MAX_PAGES + 1):
            batch = self._as_list(self._get(endpoint, {**params, "limit": limit, "page": page}))
            rows.extend(batch)
            if len(batch) < limit:
                return rows
        logger.warning("WMS list still full after page limit", endpoint=endpoint, pages=MAX_PAGES, rows=len(rows))
        raise WMSAPIError(f"{endpoint} returned more than {MAX_PAGES} pages of {limit}")

    # -------------------------
    # Reconciliation source
    # -------------------------
    def fetch_recent(self, category, since: datetime) -> List[Dict]:
        """Items of a reconciliation category changed since the given time."""
        fetchers = {
            "stock": self.get_stock,
            "orders": self.get_orders,
            "shipments": self.get_shipments,
            "inbounds": self.get_inbounds,
        }
        name = getattr(category, "value", category)
        if name not in fetchers:
            raise ValueError(f"Unknown reconciliation category: {name}")
        return fetchers[name](since)
