from __future__ import annotations

import socket

import pytest

from app.domain.errors import InvalidTargetURL
from app.security.url_guard import (
    MAX_URL_LENGTH,
    ensure_webhook_url,
    validate_webhook_url,
    verify_dispatch_target,
)


@pytest.mark.parametrize(
    "url",
    [
        "https://hooks.example.com/insights",
        "http://analytics.example.org:8080/run?source=dashboard",
        "https://8.8.8.8/hook",
    ],
)
def test_public_urls_are_accepted(url):
    assert validate_webhook_url(url).ok


@pytest.mark.parametrize(
    "url",
    [
        "http://localhost/hook",
        "http://127.0.0.1:5678/hook",
        "http://[::1]/hook",
        "http://0.0.0.0/hook",
        "http://10.1.2.3/hook",
        "http://192.168.0.10/hook",
        "http://172.16.0.1/hook",
        "http://172.31.255.255/hook",
        "http://169.254.169.254/latest/meta-data",
        "http://printer.local/hook",
        "http://LOCALHOST./hook",
        "http://2130706433/hook",
        "http://127.1:8080/hook",
        "http://0x7f000001/hook",
        "http://0/hook",
        "http://0177.0.0.1/hook",
        "http://0xa9.0xfe.0xa9.0xfe/latest",
        "http://[::ffff:127.0.0.1]/hook",
        "http://100.64.0.1/hook",
    ],
)
def test_internal_targets_are_rejected(url):
    verdict = validate_webhook_url(url)
    assert not verdict.ok
    assert verdict.reason == "Internal network URLs are not allowed"


def test_172_outside_private_range_is_allowed():
    assert validate_webhook_url("http://172.32.0.1/hook").ok


@pytest.mark.parametrize("url", ["ftp://example.com/file", "file:///etc/passwd", "javascript:alert(1)"])
def test_non_http_schemes_are_rejected(url):
    verdict = validate_webhook_url(url)
    assert verdict.reason == "Only HTTP and HTTPS protocols are allowed"


def test_missing_and_malformed_urls():
    assert validate_webhook_url(None).reason == "URL is required"
    assert validate_webhook_url("").reason == "URL is required"
    assert validate_webhook_url("https://").reason == "Invalid URL format"
    assert validate_webhook_url("http://[::1/hook").reason == "Invalid URL format"


def test_overlong_url_is_rejected():
    url = "https://example.com/" + "a" * MAX_URL_LENGTH
    assert validate_webhook_url(url).reason == f"URL is too long (max {MAX_URL_LENGTH} characters)"


def test_ensure_raises_with_reason():
    with pytest.raises(InvalidTargetURL) as excinfo:
        ensure_webhook_url("http://10.0.0.5/hook")
    assert excinfo.value.reason == "Internal network URLs are not allowed"
    assert ensure_webhook_url("https://example.com/h") == "https://example.com/h"


def _resolving_to(*addresses):
    def resolver(host, port, **kwargs):
        return [(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP, "", (address, port)) for address in addresses]

    return resolver


def test_numeric_hostnames_that_are_not_addresses_stay_names():
    assert validate_webhook_url("https://1.2.3.4.5.example.com/hook").ok
    assert validate_webhook_url("https://cafe.example.com/hook").ok


def test_dispatch_target_with_public_resolution_is_accepted():
    assert verify_dispatch_target("https://hooks.example.com/x", _resolving_to("93.184.216.34")).ok


def test_dispatch_target_resolving_to_private_range_is_rejected():
    verdict = verify_dispatch_target(
        "https://rebind.example.com/x", _resolving_to("93.184.216.34", "10.0.0.7")
    )
    assert not verdict.ok
    assert verdict.reason == "Internal network URLs are not allowed"


def test_dispatch_target_skips_resolution_for_rejected_literals():
    def resolver(host, port, **kwargs):
        raise AssertionError("resolver must not be called")

    assert verify_dispatch_target("http://127.1/x", resolver).reason == "Internal network URLs are not allowed"


def test_dispatch_target_uses_scheme_default_port():
    seen = []

    def resolver(host, port, **kwargs):
        seen.append((host, port))
        return _resolving_to("93.184.216.34")(host, port)

    verify_dispatch_target("https://hooks.example.com/x", resolver)
    verify_dispatch_target("http://hooks.example.com/x", resolver)
    assert seen == [("hooks.example.com", 443), ("hooks.example.com", 80)]


def test_dispatch_target_that_does_not_resolve_is_rejected():
    def resolver(host, port, **kwargs):
        raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")

    assert verify_dispatch_target("https://nowhere.invalid/x", resolver).reason == "Webhook host could not be resolved"
