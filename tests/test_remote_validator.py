"""Tests for the remote license authority client."""

import json
from datetime import datetime

import httpx
import pytest

from conftest import run
from errors import ApplicationError, MalformedResponse, NetworkError
from models import LicenseStatus, VerdictSource
from remote_validator import RemoteValidator

URL = "https://authority.test/api/validate"


def _validator(handler, timeout=10.0):
    return RemoteValidator(URL, timeout=timeout, transport=httpx.MockTransport(handler))


class TestSuccess:
    def test_posts_key_and_domain(self):
        seen = {}

        def handler(request):
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "status": "active",
                "company": "Acme Lda",
                "valid_until": "2031-06-30T00:00:00Z",
                "features": {"reports": True},
                "msg": "ok",
            })

        verdict = run(_validator(handler).validate("K1", "inventory.example.com"))

        assert seen == {
            "method": "POST",
            "url": URL,
            "body": {"license_key": "K1", "domain": "inventory.example.com"},
        }
        assert verdict.status is LicenseStatus.ACTIVE
        assert verdict.company == "Acme Lda"
        assert verdict.valid_until == datetime(2031, 6, 30)
        assert verdict.features == {"reports": True}
        assert verdict.source is VerdictSource.REMOTE

    def test_date_only_expiry_and_null_features(self):
        handler = lambda request: httpx.Response(200, json={
            "status": "expired", "valid_until": "2024-01-31", "features": None,
        })

        verdict = run(_validator(handler).validate("K1", "localhost"))

        assert verdict.status is LicenseStatus.EXPIRED
        assert verdict.valid_until == datetime(2024, 1, 31)
        assert verdict.features == {}

    def test_no_expiry(self):
        handler = lambda request: httpx.Response(200, json={"status": "active", "valid_until": None})

        verdict = run(_validator(handler).validate("K1", "localhost"))
        assert verdict.valid_until is None


class TestNetworkErrors:
    def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(NetworkError, match="timed out"):
            run(_validator(handler, timeout=2).validate("K1", "localhost"))

    def test_connection_refused(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(NetworkError, match="unreachable"):
            run(_validator(handler).validate("K1", "localhost"))

    def test_server_error(self):
        handler = lambda request: httpx.Response(503, text="maintenance")

        with pytest.raises(NetworkError, match="503"):
            run(_validator(handler).validate("K1", "localhost"))


class TestApplicationErrors:
    def test_http_rejection_carries_message(self):
        handler = lambda request: httpx.Response(404, json={"msg": "Unknown license key"})

        with pytest.raises(ApplicationError, match="Unknown license key"):
            run(_validator(handler).validate("K1", "localhost"))

    def test_http_rejection_without_body(self):
        handler = lambda request: httpx.Response(403, text="")

        with pytest.raises(ApplicationError, match="HTTP 403"):
            run(_validator(handler).validate("K1", "localhost"))

    def test_rejected_status_in_ok_response(self):
        handler = lambda request: httpx.Response(200, json={"status": "invalid", "msg": "Domain mismatch"})

        with pytest.raises(ApplicationError, match="Domain mismatch"):
            run(_validator(handler).validate("K1", "localhost"))


class TestMalformed:
    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html>hello</html>"),
        httpx.Response(200, json=["active"]),
        httpx.Response(200, json={"company": "Acme Lda"}),
        httpx.Response(200, json={"status": "active", "valid_until": "next tuesday"}),
        httpx.Response(200, json={"status": "active", "features": ["reports"]}),
    ])
    def test_malformed_bodies(self, response):
        with pytest.raises(MalformedResponse):
            run(_validator(lambda request: response).validate("K1", "localhost"))
