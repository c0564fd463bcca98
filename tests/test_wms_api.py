"""
Tests for the WMS REST client (auth, token refresh, retries, list endpoints).
All HTTP calls are mocked on the requests session.
"""
import json
from datetime import datetime
from unittest.mock import Mock, patch

import pytest
from requests.exceptions import ConnectionError

from wms_sync.services.reconciliation import ReconciliationCategory
from wms_sync.wms.api import WMSAPI, WMSAPIError


def _response(status_code=200, data=None):
    response = Mock()
    response.status_code = status_code
    response.text = json.dumps(data) if data is not None else ""
    response.json.return_value = data
    return response


@pytest.fixture
def api():
    return WMSAPI("https://wms.example.com/", "user", "pass", wms_code="WMS1", customer_code="CUST")


class TestWMSAPIAuth:

    def test_missing_configuration(self):
        with pytest.raises(ValueError):
            WMSAPI(None, "user", "pass")

    def test_tenant_headers(self, api):
        assert api.base_url == "https://wms.example.com"
        assert api.session.headers["X-Wms-Code"] == "WMS1"
        assert api.session.headers["X-Customer-Code"] == "CUST"

    def test_logs_in_before_first_request(self, api):
        with patch.object(api.session, "post", return_value=_response(200, {"token": "abc", "refresh_token": "r1"})) as mock_post, \
                patch.object(api.session, "request", return_value=_response(200, [{"id": 1}])) as mock_request:
            result = api._get("/wms/orders/")

        assert result == [{"id": 1}]
        assert mock_post.call_args[0][0] == "https://wms.example.com/wms/auth/login/"
        assert api.session.headers["Authorization"] == "Bearer abc"
        mock_request.assert_called_once()

    def test_login_without_token_fails(self, api):
        with patch.object(api.session, "post", return_value=_response(200, {})):
            with pytest.raises(WMSAPIError):
                api._get("/wms/orders/")

    def test_expired_token_refreshed_once(self, api):
        login = _response(200, {"token": "old", "refresh_token": "r1"})
        refresh = _response(200, {"token": "new"})
        with patch.object(api.session, "post", side_effect=[login, refresh]) as mock_post, \
                patch.object(api.session, "request", side_effect=[_response(401, {"detail": "expired"}),
                                                                  _response(200, {"ok": True})]):
            result = api._get("/wms/stock/")

        assert result == {"ok": True}
        assert mock_post.call_args_list[1][0][0] == "https://wms.example.com/wms/auth/refresh/"
        assert api.session.headers["Authorization"] == "Bearer new"
        assert api.refresh_token == "r1"


class TestWMSAPIRequests:

    @pytest.fixture(autouse=True)
    def logged_in(self, api):
        api.access_token = "abc"

    def test_error_status_raises(self, api):
        with patch.object(api.session, "request", return_value=_response(422, {"error": "bad"})):
            with pytest.raises(WMSAPIError) as exc_info:
                api.create_order({"reference": "ORD-1"})
        assert exc_info.value.status_code == 422

    @patch("wms_sync.wms.api.time.sleep")
    def test_connection_errors_retried(self, mock_sleep, api):
        with patch.object(api.session, "request", side_effect=[ConnectionError("reset"), _response(200, {"id": 5})]):
            assert api.create_order({"reference": "ORD-1"}) == {"id": 5}
        mock_sleep.assert_called_once_with(1.0)

    @patch("wms_sync.wms.api.time.sleep")
    def test_connection_errors_exhausted(self, mock_sleep, api):
        with patch.object(api.session, "request", side_effect=ConnectionError("reset")):
            with pytest.raises(WMSAPIError):
                api.cancel_order("9001")
        assert mock_sleep.call_count == 2

    def test_cancel_order_endpoint(self, api):
        with patch.object(api.session, "request", return_value=_response(200, {})) as mock_request:
            api.cancel_order("9001")
        method, url = mock_request.call_args[0]
        assert method == "PATCH"
        assert url == "https://wms.example.com/wms/orders/9001/cancel/"

    def test_empty_body_returns_none(self, api):
        with patch.object(api.session, "request", return_value=_response(204)):
            assert api._patch("/wms/orders/1/cancel/") is None

    def test_results_envelope_unwrapped(self, api):
        with patch.object(api.session, "request", return_value=_response(200, {"results": [{"id": 1}]})):
            assert api.get_orders(datetime(2025, 1, 1)) == [{"id": 1}]

    def test_fetch_recent_stock_pages(self, api):
        pages = [_response(200, [{"sku": "A"}, {"sku": "B"}]), _response(200, [{"sku": "C"}])]
        with patch.object(api.session, "request", side_effect=pages) as mock_request:
            rows = api.get_stock(datetime(2025, 1, 1, 11, 0, 0), limit=2)

        assert [r["sku"] for r in rows] == ["A", "B", "C"]
        params = mock_request.call_args_list[0][1]["params"]
        assert params["modified_gte"] == "2025-01-01T11:00:00"
        assert mock_request.call_args_list[1][1]["params"]["page"] == 2

    def test_fetch_recent_by_category(self, api):
        with patch.object(api.session, "request", return_value=_response(200, [])) as mock_request:
            api.fetch_recent(ReconciliationCategory.SHIPMENTS, datetime(2025, 1, 1))
        assert mock_request.call_args[0][1] == "https://wms.example.com/wms/shipments/"
        assert mock_request.call_args[1]["params"]["from"] == "2025-01-01"

    def test_fetch_recent_unknown_category(self, api):
        with pytest.raises(ValueError):
            api.fetch_recent("invoices", datetime(2025, 1, 1))

    @pytest.mark.parametrize("category, endpoint", [
        (ReconciliationCategory.ORDERS, "/wms/orders/"),
        (ReconciliationCategory.SHIPMENTS, "/wms/shipments/"),
    ])
    def test_list_endpoints_follow_pages(self, api, category, endpoint):
        full = [{"id": i} for i in range(100)]
        with patch.object(api, "_get", side_effect=[full, full, [{"id": 200}]]) as mock_get:
            rows = api.fetch_recent(category, datetime(2025, 1, 1))

        assert len(rows) == 201
        assert [c[0][0] for c in mock_get.call_args_list] == [endpoint] * 3
        assert [c[0][1]["page"] for c in mock_get.call_args_list] == [1, 2, 3]

    @patch("wms_sync.wms.api.MAX_PAGES", 3)
    def test_endless_full_pages_raise(self, api):
        full = [{"id": i} for i in range(1000)]
        with patch.object(api, "_get", return_value=full) as mock_get:
            with pytest.raises(WMSAPIError):
                api.get_inbounds(datetime(2025, 1, 1))
        assert mock_get.call_count == 3
