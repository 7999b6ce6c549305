import httpx
import pytest

from huebridgectl.domain.models import DiscoveryMethod
from huebridgectl.infrastructure import cloud_gateway
from huebridgectl.infrastructure.cloud_gateway import CloudFallbackClient, parse_registry_entries


def _patch_client(monkeypatch, handler):
    real_client = httpx.Client
    calls = []

    def _handler(request):
        calls.append(request)
        return handler(request, len(calls))

    def client_factory(*args, **kwargs):
        kwargs["transport"] = httpx.MockTransport(_handler)
        return real_client(*args, **kwargs)

    monkeypatch.setattr(cloud_gateway.httpx, "Client", client_factory)
    return calls


def test_parse_registry_entries_reads_both_field_spellings() -> None:
    entries = parse_registry_entries(
        [
            {"id": "001788fffe0a1b2c", "internalipaddress": "192.168.1.23", "port": 443},
            {"identifier": "ABC", "address": "192.168.1.40"},
            {"id": "no-address"},
            "garbage",
        ]
    )
    assert [(c.address, c.port, c.raw_identifier) for c in entries] == [
        ("192.168.1.23", 443, "001788fffe0a1b2c"),
        ("192.168.1.40", 443, "ABC"),
    ]
    assert all(c.discovery_method == DiscoveryMethod.CLOUD for c in entries)


def test_parse_registry_entries_rejects_non_list() -> None:
    with pytest.raises(ValueError, match="Unexpected registry response"):
        parse_registry_entries({"error": "rate limited"})


def test_lookup_all_known_devices_returns_candidates(monkeypatch) -> None:
    calls = _patch_client(
        monkeypatch,
        lambda request, n: httpx.Response(
            200, json=[{"id": "ABC123", "internalipaddress": "192.168.1.23", "port": 443}]
        ),
    )
    client = CloudFallbackClient(registry_url="https://registry.test/", sleep=lambda _s: None)
    candidates = client.lookup_all_known_devices()
    assert [c.address for c in candidates] == ["192.168.1.23"]
    assert str(calls[0].url) == "https://registry.test/"


def test_lookup_by_identifier_filters_on_normalized_id(monkeypatch) -> None:
    calls = _patch_client(
        monkeypatch,
        lambda request, n: httpx.Response(
            200,
            json=[
                {"id": "abc123", "internalipaddress": "192.168.1.23"},
                {"id": "def456", "internalipaddress": "192.168.1.24"},
            ],
        ),
    )
    client = CloudFallbackClient(registry_url="https://registry.test/", sleep=lambda _s: None)
    candidates = client.lookup_by_identifier("AB:C1:23")
    assert [c.address for c in candidates] == ["192.168.1.23"]
    assert calls[0].url.params["id"] == "AB:C1:23"


def test_fetch_retries_transient_failures(monkeypatch) -> None:
    def handler(request, n):
        if n == 1:
            raise httpx.ConnectTimeout("timeout", request=request)
        if n == 2:
            return httpx.Response(503)
        return httpx.Response(200, json=[])

    calls = _patch_client(monkeypatch, handler)
    sleeps = []
    client = CloudFallbackClient(registry_url="https://registry.test/", sleep=sleeps.append)
    assert client.lookup_all_known_devices() == []
    assert len(calls) == 3
    assert sleeps == [1.0, 2.0]


def test_fetch_gives_up_after_max_attempts(monkeypatch) -> None:
    calls = _patch_client(monkeypatch, lambda request, n: httpx.Response(500))
    client = CloudFallbackClient(
        registry_url="https://registry.test/", max_attempts=3, sleep=lambda _s: None
    )
    with pytest.raises(httpx.HTTPStatusError):
        client.lookup_all_known_devices()
    assert len(calls) == 3


def test_fetch_does_not_retry_client_errors(monkeypatch) -> None:
    calls = _patch_client(monkeypatch, lambda request, n: httpx.Response(429))
    client = CloudFallbackClient(registry_url="https://registry.test/", sleep=lambda _s: None)
    with pytest.raises(httpx.HTTPStatusError):
        client.lookup_all_known_devices()
    assert len(calls) == 1
