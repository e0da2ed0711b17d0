"""
Unit Tests for the request dump format
"""

from services.request_dump import canonical_header_name, dump_request


def test_canonical_header_name():
    assert canonical_header_name("content-type") == "Content-Type"
    assert canonical_header_name("X-REQUEST-ID") == "X-Request-Id"
    assert canonical_header_name("accept") == "Accept"
    assert canonical_header_name("bad header") == "bad header"


def test_dump_layout():
    dump = dump_request(
        method="POST",
        target="/path?a=1",
        http_version="1.1",
        host="example.com",
        headers=[
            ("user-agent", "curl/8.0"),
            ("host", "example.com"),
            ("accept", "*/*"),
            ("content-length", "5"),
        ],
        body=b"hello",
    )

    assert dump == (
        b"POST /path?a=1 HTTP/1.1\r\n"
        b"Host: example.com\r\n"
        b"Accept: */*\r\n"
        b"Content-Length: 5\r\n"
        b"User-Agent: curl/8.0\r\n"
        b"\r\n"
        b"hello"
    )


def test_repeated_headers_keep_order():
    dump = dump_request("GET", "/", "1.1", "h", [("x-b", "2"), ("x-a", "1"), ("x-b", "3")], b"")

    assert dump == b"GET / HTTP/1.1\r\nHost: h\r\nX-A: 1\r\nX-B: 2\r\nX-B: 3\r\n\r\n"


def test_hop_by_hop_headers_excluded():
    dump = dump_request(
        "GET", "/", "1.1", "h",
        [("transfer-encoding", "chunked"), ("trailer", "x-checksum"), ("accept", "*/*")],
        b"",
    )

    assert b"Transfer-Encoding" not in dump
    assert b"Trailer" not in dump
    assert b"Accept: */*" in dump


def test_empty_body_and_http2_version():
    dump = dump_request("GET", "/", "2", "h", [], b"")

    assert dump == b"GET / HTTP/2.0\r\nHost: h\r\n\r\n"
