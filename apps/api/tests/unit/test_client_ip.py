"""Client IP extraction from proxy headers."""

from paymatch_api.auth.client_ip import UNKNOWN_IP, extract_client_ip


def test_vercel_header_wins_and_takes_first_hop():
    headers = {
        "x-vercel-forwarded-for": "198.51.100.1, 10.0.0.1",
        "cf-connecting-ip": "198.51.100.2",
        "x-forwarded-for": "198.51.100.3",
    }
    assert extract_client_ip(headers) == "198.51.100.1"


def test_cloudflare_before_forwarded_for():
    headers = {"cf-connecting-ip": "198.51.100.2", "x-forwarded-for": "198.51.100.3"}
    assert extract_client_ip(headers) == "198.51.100.2"


def test_forwarded_for_first_hop_trimmed():
    assert extract_client_ip({"x-forwarded-for": " 198.51.100.3 , 10.0.0.1"}) == "198.51.100.3"


def test_real_ip_and_remote_addr_fallbacks():
    assert extract_client_ip({"x-real-ip": "198.51.100.4"}) == "198.51.100.4"
    assert extract_client_ip({"x-connection-remote-addr": "198.51.100.5"}) == "198.51.100.5"


def test_no_headers_returns_unknown():
    assert extract_client_ip({}) == UNKNOWN_IP
    assert extract_client_ip({"x-forwarded-for": "  "}) == UNKNOWN_IP
