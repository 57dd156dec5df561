from __future__ import annotations

import socket
import threading
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from fakes import Recorded, Reply


Route = Callable[[Recorded], Reply]


@dataclass
class FakeHTTPServer:
    base_url: str
    routes: dict[str, Reply | Route] = field(default_factory=dict)
    requests: list[Recorded] = field(default_factory=list)

    def url(self, path: str) -> str:
        return self.base_url + path

    def add(self, path: str, route: Reply | Route) -> str:
        self.routes[path] = route
        return self.url(path)


def _make_handler(server: FakeHTTPServer) -> type[BaseHTTPRequestHandler]:
    class Handler(BaseHTTPRequestHandler):
        def _handle(self) -> None:
            length = int(self.headers.get("Content-Length") or 0)
            body = self.rfile.read(length) if length else b""
            recorded = Recorded(self.command, self.path, body)
            server.requests.append(recorded)

            route = server.routes.get(self.path)
            if route is None:
                reply = Reply(status=404, body=b"not found")
            elif isinstance(route, Reply):
                reply = route
            else:
                reply = route(recorded)

            self.send_response(reply.status)
            self.send_header("Content-Type", reply.content_type)
            if reply.send_length:
                declared = reply.content_length if reply.content_length is not None else len(reply.body)
                self.send_header("Content-Length", str(declared))
            self.end_headers()
            payload = reply.body if reply.truncate_at is None else reply.body[: reply.truncate_at]
            self.wfile.write(payload)
            self.wfile.flush()

        do_GET = _handle
        do_POST = _handle
        do_DELETE = _handle

        def log_message(self, format: str, *args: object) -> None:
            return None

    return Handler


@pytest.fixture
def http_server() -> Iterator[FakeHTTPServer]:
    fake = FakeHTTPServer(base_url="")
    server = ThreadingHTTPServer(("127.0.0.1", 0), _make_handler(fake))
    host, port = server.server_address[:2]
    fake.base_url = f"http://{host}:{port}"
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield fake
    finally:
        server.shutdown()
        server.server_close()
        thread.join(timeout=5)


@pytest.fixture
def unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch, tmp_path: Path) -> None:
    for name in (
        "OLLAMAROOT_HOME",
        "OLLAMAROOT_STRATEGY",
        "OLLAMAROOT_SERVER_VERSION",
        "OLLAMAROOT_PORT",
        "OLLAMAROOT_ABIS",
        "OLLAMAROOT_PROOT_URL",
        "OLLAMAROOT_ROOTFS_URL",
        "OLLAMAROOT_SERVER_ARCHIVE_URL",
        "OLLAMAROOT_BOOTSTRAP_URL",
        "OLLAMAROOT_SERVER_PACKAGE_URL",
        "http_proxy",
        "HTTP_PROXY",
        "all_proxy",
        "ALL_PROXY",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "xdg"))
