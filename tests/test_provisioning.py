"""Provider client: response parsing, clamping and error mapping."""

import httpx
import pytest

from proxyshop.core.exceptions import UpstreamEmptyResponse, UpstreamError, ValidationError
from proxyshop.services.provisioning import ParsedEmpty, ParsedOk, UpstreamFailure, parse_response


def _parse(body):
    return parse_response(body, region="US", session_type="sticky", proxy_type="residential", now_ms=1700000000000)


def test_parse_full_and_partial_records():
    result = _parse("1.2.3.4:8080:alice:secret\r\n5.6.7.8:9090\r\n")
    assert isinstance(result, ParsedOk)
    first, second = result.proxies
    assert (first.ip, first.port, first.username, first.password) == ("1.2.3.4", 8080, "alice", "secret")
    assert second.username == "user_1700000000000_1"
    assert second.password == "pass_1700000000000_1"
    assert second.country == "US"


def test_parse_drops_malformed_lines_and_keeps_good_ones():
    body = "\n".join([
        "1.2.3.4:8080:u:p",
        "garbage-without-colon",
        ":8080",
        "9.9.9.9:notaport",
        "8.8.8.8:70000",
        "",
        "5.6.7.8:3128",
    ])
    result = _parse(body)
    assert isinstance(result, ParsedOk)
    assert [p.ip for p in result.proxies] == ["1.2.3.4", "5.6.7.8"]
    assert len(result.dropped) == 3


def test_parse_all_malformed_is_empty():
    assert isinstance(_parse("nonsense\r\n:1\r\nhost:port"), ParsedEmpty)
    assert isinstance(_parse(""), ParsedEmpty)


def test_parse_non_text_is_failure():
    assert isinstance(_parse(None), UpstreamFailure)


async def test_generate_sends_provider_params_and_clamps_count(make_provider, provider_calls):
    client = make_provider(lambda request: httpx.Response(200, text="1.1.1.1:1000"))
    proxies = await client.generate("us", 250, session_type="sticky", protocol="socks5", proxy_type="datacenter")

    assert len(proxies) == 1
    params = provider_calls[0].url.params
    assert provider_calls[0].url.path == "/gen"
    assert params["count"] == "100"
    assert params["region"] == "US"
    assert params["zone"] == "datacenter"
    assert params["ptype"] == "2"
    assert params["proto"] == "socks5"
    assert params["sessType"] == "sticky"
    assert proxies[0].protocol == "socks5"
    assert proxies[0].proxy_type == "datacenter"


async def test_generate_all_malformed_raises_empty_response(make_provider):
    client = make_provider(lambda request: httpx.Response(200, text="oops:\r\n:also-bad"))
    with pytest.raises(UpstreamEmptyResponse) as exc:
        await client.generate("US", 2)
    assert isinstance(exc.value, UpstreamError)
    assert exc.value.code == "UPSTREAM_EMPTY_RESPONSE"


async def test_generate_http_error_status(make_provider):
    client = make_provider(lambda request: httpx.Response(500, text="provider down"))
    with pytest.raises(UpstreamError) as exc:
        await client.generate("US", 1)
    assert exc.value.upstream_status == 500
    assert "provider down" in exc.value.message


async def test_generate_timeout(make_provider):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_provider(handler)
    with pytest.raises(UpstreamError) as exc:
        await client.generate("US", 1)
    assert "timed out" in exc.value.message


@pytest.mark.parametrize(
    "kwargs",
    [
        {"region": "XX", "count": 1},
        {"region": "US", "count": 1, "proxy_type": "satellite"},
        {"region": "US", "count": 1, "protocol": "ftp"},
    ],
)
async def test_invalid_input_does_no_io(make_provider, provider_calls, kwargs):
    client = make_provider(lambda request: httpx.Response(200, text="1.1.1.1:1000"))
    with pytest.raises(ValidationError):
        await client.generate(**kwargs)
    assert provider_calls == []
