"""
Request Dump

Renders an inbound request as the raw HTTP/1.x text a client would have sent:

    GET /path?query HTTP/1.1\r\n
    Host: example.com\r\n
    Accept: */*\r\n
    User-Agent: curl/8.0\r\n
    \r\n
    <body>

Host always comes first; the remaining headers use their canonical
"Title-Case" names and are sorted by name, one line per value.
Transfer-Encoding and Trailer are hop-by-hop and never dumped.
"""

import re
from collections import defaultdict
from typing import Dict, Iterable, List, Tuple

EXCLUDED_HEADERS = frozenset(("host", "transfer-encoding", "trailer"))

_TOKEN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


def canonical_header_name(name: str) -> str:
    """
    Canonical MIME form of a header name: "x-request-id" -> "X-Request-Id".

    Names containing characters that are not valid in a header token are
    returned unchanged.
    """
    if not _TOKEN.match(name):
        return name
    return "-".join(part[:1].upper() + part[1:].lower() for part in name.split("-"))


def _clean_value(value: str) -> str:
    return value.replace("\r", " ").replace("\n", " ").strip()


def dump_request(
    method: str,
    target: str,
    http_version: str,
    host: str,
    headers: Iterable[Tuple[str, str]],
    body: bytes,
) -> bytes:
    """
    Build the textual dump of one request.

    Args:
        method: Request method, e.g. "POST"
        target: Raw request target (path plus "?query" when present)
        http_version: "1.0", "1.1" or "2"
        host: Host the request was addressed to
        headers: (name, value) pairs as received
        body: Raw request body

    Returns:
        The dump as bytes, CRLF line endings
    """
    grouped: Dict[str, List[str]] = defaultdict(list)
    for name, value in headers:
        if name.lower() in EXCLUDED_HEADERS:
            continue
        grouped[canonical_header_name(name)].append(_clean_value(value))

    if "." not in http_version:
        http_version = f"{http_version}.0"

    lines = [f"{method} {target} HTTP/{http_version}", f"Host: {host}"]
    for name in sorted(grouped):
        for value in grouped[name]:
            lines.append(f"{name}: {value}")

    head = "\r\n".join(lines) + "\r\n\r\n"
    return head.encode("latin-1", errors="replace") + body


def request_target(scope) -> str:
    """Raw request target of an ASGI scope: path plus "?query" when present."""
    raw_path = scope.get("raw_path") or scope["path"].encode("utf-8")
    path = raw_path.split(b"?", 1)[0].decode("latin-1")
    query = scope.get("query_string", b"").decode("latin-1")
    return f"{path}?{query}" if query else path
