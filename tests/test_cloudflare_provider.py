"""Unit tests for CloudflareDNSProvider."""

from typing import Any, Dict, Optional
from unittest.mock import MagicMock, patch

import pytest
import requests

from cloudflare_ddns.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    ProviderError,
    RateLimitError,
    ValidationError,
)
from cloudflare_ddns.models import DnsRecord
from cloudflare_ddns.provider import DEFAULT_API_URL, CloudflareDNSProvider
from mocks import ZONE_ID, FakeClock

RECORDS_URL = f"{DEFAULT_API_URL}/zones/{ZONE_ID}/dns_records"


def make_response(
    status: int = 200,
    payload: Any = None,
    headers: Optional[Dict[str, str]] = None,
) -> MagicMock:
    response = MagicMock()
    response.status_code = status
    response.headers = headers or {}
    if payload is None:
        response.json.side_effect = ValueError("No JSON object could be decoded")
        response.text = "<html>bad gateway</html>"
    else:
        response.json.return_value = payload
        response.text = ""
    return response


def ok(result: Any, result_info: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    payload = {"success": True, "errors": [], "messages": [], "result": result}
    if result_info is not None:
        payload["result_info"] = result_info
    return payload


def failure(code: int, message: str) -> Dict[str, Any]:
    return {"success": False, "errors": [{"code": code, "message": message}], "result": None}


def record_json(
    record_id: str = "rec1",
    name: str = "home.example.com",
    content: str = "203.0.113.10",
    record_type: str = "A",
) -> Dict[str, Any]:
    return {
        "id": record_id,
        "zone_id": ZONE_ID,
        "type": record_type,
        "name": name,
        "content": content,
        "ttl": 120,
        "proxied": False,
    }


@pytest.fixture
def provider() -> CloudflareDNSProvider:
    return CloudflareDNSProvider(api_token="test-token")


class TestCloudflareConnection:
    """Tests for Cloudflare connection functionality."""

    def test_token_sent_as_bearer(self, provider: CloudflareDNSProvider) -> None:
        """Test the API token is sent as a bearer token."""
        assert provider._session.headers["Authorization"] == "Bearer test-token"

    def test_test_connection_success(self, provider: CloudflareDNSProvider) -> None:
        """Test successful token verification returns True."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(payload=ok({"status": "active"}))

            result = provider.test_connection()

            assert result is True
            mock_request.assert_called_once_with(
                "GET",
                f"{DEFAULT_API_URL}/user/tokens/verify",
                params=None,
                json=None,
                timeout=10.0,
            )

    def test_test_connection_rejected_token(self, provider: CloudflareDNSProvider) -> None:
        """Test rejected token returns False."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(401, failure(1000, "Invalid API Token"))

            assert provider.test_connection() is False

    def test_test_connection_network_failure(self, provider: CloudflareDNSProvider) -> None:
        """Test a network failure during verification returns False."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.ConnectionError("Connection refused")

            assert provider.test_connection() is False

    def test_missing_token_makes_no_request(self) -> None:
        """Calls without a credential fail before reaching the network."""
        provider = CloudflareDNSProvider(api_token="  ")

        with patch.object(provider._session, "request") as mock_request:
            with pytest.raises(AuthError):
                provider.list_zones()

            mock_request.assert_not_called()


class TestCloudflareListing:
    """Tests for zone and record listing."""

    def test_list_zones_follows_pagination(self, provider: CloudflareDNSProvider) -> None:
        """All pages reported by result_info are fetched."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = [
                make_response(
                    payload=ok(
                        [{"id": "z1", "name": "example.com", "status": "active"}],
                        {"page": 1, "total_pages": 2},
                    )
                ),
                make_response(
                    payload=ok(
                        [{"id": "z2", "name": "example.org", "status": "pending"}],
                        {"page": 2, "total_pages": 2},
                    )
                ),
            ]

            zones = provider.list_zones()

            assert [(z.id, z.name, z.status) for z in zones] == [
                ("z1", "example.com", "active"),
                ("z2", "example.org", "pending"),
            ]
            pages = [call.kwargs["params"]["page"] for call in mock_request.call_args_list]
            assert pages == [1, 2]

    def test_list_records_filters_type_and_name(self, provider: CloudflareDNSProvider) -> None:
        """Only address records of the wanted type and exact name are returned."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                payload=ok(
                    [
                        record_json("r1"),
                        record_json("r2", name="www.home.example.com"),
                        record_json("r3", record_type="AAAA", content="2001:db8::1"),
                    ],
                    {"page": 1, "total_pages": 1},
                )
            )

            records = provider.list_records(ZONE_ID, types=["A"], name="home.example.com")

            assert [r.id for r in records] == ["r1"]
            args, kwargs = mock_request.call_args
            assert args == ("GET", RECORDS_URL)
            assert kwargs["params"]["type"] == "A"
            assert kwargs["params"]["name"] == "home.example.com"

    def test_list_records_defaults_to_address_types(self, provider: CloudflareDNSProvider) -> None:
        """Test list_records keeps only A and AAAA records by default."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                payload=ok(
                    [
                        record_json("r1"),
                        record_json("r2", record_type="AAAA", content="2001:db8::1"),
                        record_json("r3", record_type="TXT", content="v=spf1 -all"),
                    ]
                )
            )

            records = provider.list_records(ZONE_ID)

            assert sorted(r.id for r in records) == ["r1", "r2"]
            assert "type" not in mock_request.call_args.kwargs["params"]

    def test_list_records_skips_malformed_entries(self, provider: CloudflareDNSProvider) -> None:
        """Test malformed record entries are skipped."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                payload=ok([record_json("r1"), {"id": "broken"}, "garbage"])
            )

            records = provider.list_records(ZONE_ID)

            assert [r.id for r in records] == ["r1"]

    def test_list_rejects_non_list_result(self, provider: CloudflareDNSProvider) -> None:
        """Test a non-list result for a list call is a ProviderError."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(payload=ok({"unexpected": "shape"}))

            with pytest.raises(ProviderError, match="expected list"):
                provider.list_zones()


class TestCloudflareRecordWrites:
    """Tests for get/create/update/delete of single records."""

    def test_get_record(self, provider: CloudflareDNSProvider) -> None:
        """Test get_record maps the API payload onto DnsRecord."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(payload=ok(record_json()))

            record = provider.get_record(ZONE_ID, "rec1")

            assert record == DnsRecord(
                id="rec1",
                zone_id=ZONE_ID,
                type="A",
                name="home.example.com",
                content="203.0.113.10",
            )
            mock_request.assert_called_once_with(
                "GET", f"{RECORDS_URL}/rec1", params=None, json=None, timeout=10.0
            )

    def test_get_record_not_found(self, provider: CloudflareDNSProvider) -> None:
        """Test a 404 on get_record raises NotFoundError."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(404, failure(81044, "Record does not exist."))

            with pytest.raises(NotFoundError):
                provider.get_record(ZONE_ID, "gone")

    def test_create_record_posts_body(self, provider: CloudflareDNSProvider) -> None:
        """Create sends type, name, content, ttl, proxied and comment."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(payload=ok(record_json("new-id")))

            created = provider.create_record(
                ZONE_ID,
                DnsRecord(
                    id="",
                    zone_id=ZONE_ID,
                    type="A",
                    name="home.example.com",
                    content="203.0.113.10",
                    comment="managed by cloudflare-ddns",
                ),
            )

            assert created.id == "new-id"
            mock_request.assert_called_once_with(
                "POST",
                RECORDS_URL,
                params=None,
                json={
                    "type": "A",
                    "name": "home.example.com",
                    "content": "203.0.113.10",
                    "ttl": 120,
                    "proxied": False,
                    "comment": "managed by cloudflare-ddns",
                },
                timeout=10.0,
            )

    def test_create_record_conflict(self, provider: CloudflareDNSProvider) -> None:
        """Cloudflare's identical-record error codes map to ConflictError."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                400, failure(81057, "Record already exists.")
            )

            with pytest.raises(ConflictError):
                provider.create_record(
                    ZONE_ID,
                    DnsRecord(id="", zone_id=ZONE_ID, type="A", name="a.example.com", content="192.0.2.1"),
                )

    @pytest.mark.parametrize(
        "record",
        [
            DnsRecord(id="", zone_id=ZONE_ID, type="TXT", name="a.example.com", content="x"),
            DnsRecord(id="", zone_id=ZONE_ID, type="A", name="", content="192.0.2.1"),
            DnsRecord(id="", zone_id=ZONE_ID, type="A", name="a.example.com", content=" "),
        ],
    )
    def test_create_record_validates_before_request(
        self, provider: CloudflareDNSProvider, record: DnsRecord
    ) -> None:
        """Test invalid records are rejected without a request."""
        with patch.object(provider._session, "request") as mock_request:
            with pytest.raises(ValidationError):
                provider.create_record(ZONE_ID, record)

            mock_request.assert_not_called()

    def test_update_record_sends_patch(self, provider: CloudflareDNSProvider) -> None:
        """Only the changed fields are sent."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                payload=ok(record_json(content="198.51.100.7"))
            )

            updated = provider.update_record(ZONE_ID, "rec1", {"content": "198.51.100.7"})

            assert updated.content == "198.51.100.7"
            mock_request.assert_called_once_with(
                "PATCH",
                f"{RECORDS_URL}/rec1",
                params=None,
                json={"content": "198.51.100.7"},
                timeout=10.0,
            )

    def test_update_record_not_found(self, provider: CloudflareDNSProvider) -> None:
        """Test a 404 on update_record raises NotFoundError."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(404, failure(81044, "Record does not exist."))

            with pytest.raises(NotFoundError):
                provider.update_record(ZONE_ID, "gone", {"content": "198.51.100.7"})

    def test_delete_record(self, provider: CloudflareDNSProvider) -> None:
        """Test delete_record sends DELETE to the record URL."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(payload=ok({"id": "rec1"}))

            assert provider.delete_record(ZONE_ID, "rec1") is True
            assert mock_request.call_args.args == ("DELETE", f"{RECORDS_URL}/rec1")

    def test_delete_absent_record_is_success(self, provider: CloudflareDNSProvider) -> None:
        """Test deleting a record that is already gone succeeds."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(404, failure(81044, "Record does not exist."))

            assert provider.delete_record(ZONE_ID, "gone") is True


class TestCloudflareErrors:
    """Tests for error classification and rate limiting."""

    def test_forbidden_maps_to_auth_error(self, provider: CloudflareDNSProvider) -> None:
        """Test a 403 raises AuthError."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(403, failure(10000, "Authentication error"))

            with pytest.raises(AuthError):
                provider.list_zones()

    def test_unsuccessful_payload_is_provider_error(self, provider: CloudflareDNSProvider) -> None:
        """Test success false in a 200 payload raises ProviderError."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(200, failure(1004, "DNS Validation Error"))

            with pytest.raises(ProviderError, match="DNS Validation Error"):
                provider.list_zones()

    def test_non_json_response_is_provider_error(self, provider: CloudflareDNSProvider) -> None:
        """Test a non-JSON body raises ProviderError."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(502)

            with pytest.raises(ProviderError):
                provider.list_zones()

    def test_network_failure_is_provider_error(self, provider: CloudflareDNSProvider) -> None:
        """Test a request timeout raises ProviderError."""
        with patch.object(provider._session, "request") as mock_request:
            mock_request.side_effect = requests.exceptions.Timeout("read timed out")

            with pytest.raises(ProviderError):
                provider.get_record(ZONE_ID, "rec1")

    def test_rate_limit_blocks_calls_until_retry_after(self) -> None:
        """After a 429 no request is sent until the Retry-After window has passed."""
        clock = FakeClock()
        provider = CloudflareDNSProvider(api_token="test-token", clock=clock)

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(
                429, failure(971, "Please wait and consider throttling your request speed"),
                headers={"Retry-After": "30"},
            )
            with pytest.raises(RateLimitError) as exc_info:
                provider.list_zones()
            assert exc_info.value.retry_after == 30.0

            clock.advance(10)
            with pytest.raises(RateLimitError):
                provider.list_zones()
            assert mock_request.call_count == 1

            clock.advance(21)
            mock_request.return_value = make_response(payload=ok([]))
            assert provider.list_zones() == []
            assert mock_request.call_count == 2

    def test_rate_limit_without_retry_after_uses_default(self) -> None:
        """Test a 429 without Retry-After backs off for the default delay."""
        clock = FakeClock()
        provider = CloudflareDNSProvider(api_token="test-token", clock=clock)

        with patch.object(provider._session, "request") as mock_request:
            mock_request.return_value = make_response(429, failure(971, "slow down"))

            with pytest.raises(RateLimitError) as exc_info:
                provider.list_zones()

            assert exc_info.value.retry_after == 60.0
