"""Unit tests for CloudflareDNSProvider."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from cf_autodns.cli import (
    CloudflareAPIError,
    CloudflareDNSProvider,
    DNSRecord,
    RecordSettings,
)

BASE = "https://api.cloudflare.test/client/v4"


def make_provider() -> CloudflareDNSProvider:
    return CloudflareDNSProvider(api_token="secret-token", base_url=BASE + "/", timeout_seconds=5)


def make_response(data) -> MagicMock:
    response = MagicMock()
    response.json.return_value = data
    return response


class TestCloudflareCall:
    """Tests for the generic call() wrapper."""

    def test_session_sends_bearer_token(self) -> None:
        provider = make_provider()

        assert provider._session.headers["Authorization"] == "Bearer secret-token"
        assert provider._session.headers["Content-Type"] == "application/json"

    def test_call_returns_body_on_success(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": True, "result": []})

            data = provider.call("GET", "zones", params={"name": "example.com"})

            assert data == {"success": True, "result": []}
            mock_request.assert_called_once_with(
                "GET", f"{BASE}/zones", json=None, params={"name": "example.com"}, timeout=5
            )

    def test_call_raises_with_provider_errors(self) -> None:
        provider = make_provider()
        errors = [{"code": 9109, "message": "Invalid access token"}]

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": False, "errors": errors})

            with pytest.raises(CloudflareAPIError) as exc_info:
                provider.call("GET", "zones")

            assert exc_info.value.errors == errors
            assert "Invalid access token" in str(exc_info.value)

    def test_call_raises_when_success_flag_missing(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"result": []})

            with pytest.raises(CloudflareAPIError):
                provider.call("GET", "zones")

    def test_call_raises_on_transport_error(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

            with pytest.raises(CloudflareAPIError):
                provider.call("GET", "zones")

    def test_call_raises_on_undecodable_body(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            response = MagicMock()
            response.json.side_effect = ValueError("No JSON object could be decoded")
            mock_request.return_value = response

            with pytest.raises(CloudflareAPIError):
                provider.call("GET", "zones")

    def test_call_does_not_retry(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": False, "errors": []})

            with pytest.raises(CloudflareAPIError):
                provider.call("DELETE", "zones/z1/dns_records/r1")

            assert mock_request.call_count == 1


class TestCloudflareConnection:
    """Tests for token verification."""

    def test_test_connection_success(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": True, "result": {"status": "active"}})

            assert provider.test_connection() is True
            assert mock_request.call_args[0] == ("GET", f"{BASE}/user/tokens/verify")

    def test_test_connection_failure(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

            assert provider.test_connection() is False


class TestCloudflareZones:
    """Tests for zone lookup."""

    def test_find_zone_id_returns_first_match(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                {"success": True, "result": [{"id": "zone-1", "name": "example.com"}]}
            )

            assert provider.find_zone_id("example.com") == "zone-1"
            assert mock_request.call_args[1]["params"] == {"name": "example.com", "status": "active"}

    def test_find_zone_id_returns_none_when_no_zone(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": True, "result": []})

            assert provider.find_zone_id("unknown.org") is None


class TestCloudflareRecords:
    """Tests for CNAME record listing and mutation."""

    def test_list_cname_records_parses_records(self) -> None:
        provider = make_provider()
        body = {
            "success": True,
            "result": [
                {"id": "r1", "name": "app.example.com", "content": "app.example.com", "ttl": 1, "proxied": True},
                {"id": "r2", "name": "api.example.com", "content": "x.example.net", "ttl": 300, "proxied": False},
                {"name": "broken.example.com"},
            ],
            "result_info": {"page": 1, "total_pages": 1},
        }

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(body)

            records = provider.list_cname_records("zone-1")

            assert records == [
                DNSRecord("r1", "app.example.com", "app.example.com", 1, True),
                DNSRecord("r2", "api.example.com", "x.example.net", 300, False),
            ]
            mock_request.assert_called_once_with(
                "GET",
                f"{BASE}/zones/zone-1/dns_records",
                json=None,
                params={"type": "CNAME", "per_page": 5000, "page": 1},
                timeout=5,
            )

    def test_list_cname_records_follows_pages(self) -> None:
        provider = make_provider()
        pages = [
            {
                "success": True,
                "result": [{"id": "r1", "name": "a.example.com"}],
                "result_info": {"page": 1, "total_pages": 2},
            },
            {
                "success": True,
                "result": [{"id": "r2", "name": "b.example.com"}],
                "result_info": {"page": 2, "total_pages": 2},
            },
        ]

        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [make_response(p) for p in pages]

            records = provider.list_cname_records("zone-1")

            assert [r.id for r in records] == ["r1", "r2"]
            assert mock_request.call_count == 2
            assert mock_request.call_args[1]["params"]["page"] == 2

    def test_create_record_posts_payload(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": True, "result": {"id": "new-1"}})

            record_id = provider.create_record(
                "zone-1", "app.example.com", "app.example.com", RecordSettings(ttl=1, proxied=True)
            )

            assert record_id == "new-1"
            mock_request.assert_called_once_with(
                "POST",
                f"{BASE}/zones/zone-1/dns_records",
                json={
                    "type": "CNAME",
                    "name": "app.example.com",
                    "content": "app.example.com",
                    "ttl": 1,
                    "proxied": True,
                },
                params=None,
                timeout=5,
            )

    def test_update_record_puts_payload(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": True, "result": {"id": "r1"}})

            provider.update_record(
                "zone-1", "r1", "app.example.com", "app.example.com", RecordSettings(ttl=300, proxied=False)
            )

            method, url = mock_request.call_args[0]
            assert (method, url) == ("PUT", f"{BASE}/zones/zone-1/dns_records/r1")
            assert mock_request.call_args[1]["json"]["ttl"] == 300
            assert mock_request.call_args[1]["json"]["proxied"] is False

    def test_delete_record(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response({"success": True, "result": {"id": "r1"}})

            provider.delete_record("zone-1", "r1")

            mock_request.assert_called_once_with(
                "DELETE", f"{BASE}/zones/zone-1/dns_records/r1", json=None, params=None, timeout=5
            )

    def test_delete_record_failure_raises(self) -> None:
        provider = make_provider()

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                {"success": False, "errors": [{"code": 81044, "message": "Record does not exist."}]}
            )

            with pytest.raises(CloudflareAPIError):
                provider.delete_record("zone-1", "r1")
