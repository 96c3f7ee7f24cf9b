import base64
import copy
from email.utils import formatdate
from typing import Dict, List, Optional
from urllib.parse import quote, unquote, urlparse

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

import cloudmark.config as config_module
from cloudmark.storage import LocalStore
from cloudmark.webdav import SnapshotFile


SAMPLE_DATA = {
    "folders": [
        {
            "id": "f1",
            "name": "Development",
            "bookmarks": [
                {
                    "id": "b1",
                    "title": "Python Documentation",
                    "url": "https://docs.python.org",
                    "iconDataUrl": "data:image/png;base64,AAAA",
                },
                {
                    "id": "b2",
                    "title": "GitHub",
                    "url": "https://github.com",
                },
            ],
            "children": [
                {
                    "id": "f2",
                    "name": "Nested",
                    "bookmarks": [
                        {
                            "id": "b3",
                            "title": "aiohttp",
                            "url": "https://docs.aiohttp.org",
                            "iconDataUrl": "data:image/png;base64,BBBB",
                        }
                    ],
                }
            ],
        }
    ],
    "backgroundImage": "",
    "settings": {"theme": "dark"},
    "history": [{"action": "add", "id": "b1"}],
    "lastModified": 1700000000000,
}


@pytest.fixture
def sample_data():
    """A populated dataset with nested folders and inline icons."""
    return copy.deepcopy(SAMPLE_DATA)


@pytest.fixture(autouse=True)
def reset_global_config():
    """Each test starts without a cached global configuration."""
    config_module._config = None
    yield
    config_module._config = None


@pytest.fixture
def store(tmp_path):
    """An initialized store in a temporary data directory."""
    s = LocalStore(tmp_path / "data")
    s.ensure_init()
    return s


@pytest.fixture
def configured_store(store, sample_data):
    """A store with WebDAV configured and a populated dataset."""
    settings = store.read_settings()
    settings.webdav.url = "https://dav.example.com/backup/"
    settings.webdav.username = "alice"
    settings.webdav.password = "secret"
    settings.client.identifier = "TESTCLIENT"
    store.write_settings(settings)
    store.write_data(sample_data)
    return store


class FakeRemote:
    """
    In-memory remote used by orchestration tests.

    ``factory`` has the client-factory signature the orchestrator, detector
    and executor expect.
    """

    def __init__(self):
        self.files: Dict[str, dict] = {}
        self.mtimes: Dict[str, int] = {}
        self.calls: List[tuple] = []
        self.fail_upload: Optional[Exception] = None
        self.fail_download: Optional[Exception] = None
        self.fail_remove: Dict[str, Exception] = {}
        self.clock = 1700000000000

    def put(self, name: str, payload: dict, lastmod: Optional[int] = None):
        self.files[name] = copy.deepcopy(payload)
        self.mtimes[name] = lastmod if lastmod is not None else self.tick()

    def tick(self) -> int:
        self.clock += 1000
        return self.clock

    def factory(self, settings):
        return FakeClient(self)


class FakeClient:
    def __init__(self, remote: FakeRemote):
        self.remote = remote

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return None

    async def list(self):
        self.remote.calls.append(("list",))
        files = [SnapshotFile(name=name, lastmod=self.remote.mtimes[name], size=1)
                 for name in self.remote.files]
        files.sort(key=lambda f: f.lastmod, reverse=True)
        return files

    async def upload(self, name, payload):
        self.remote.calls.append(("upload", name))
        if self.remote.fail_upload:
            raise self.remote.fail_upload
        self.remote.put(name, payload)
        return True

    async def download(self, name):
        self.remote.calls.append(("download", name))
        if self.remote.fail_download:
            raise self.remote.fail_download
        return copy.deepcopy(self.remote.files[name])

    async def remove(self, name):
        self.remote.calls.append(("remove", name))
        if name in self.remote.fail_remove:
            raise self.remote.fail_remove[name]
        self.remote.files.pop(name, None)
        self.remote.mtimes.pop(name, None)
        return True


@pytest.fixture
def remote():
    return FakeRemote()


class FakeHandle:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class FakeLoop:
    """
    Manually advanced event loop stand-in for timer tests.

    Coroutines handed to ``create_task`` are collected in ``tasks`` so the
    test can await them.
    """

    def __init__(self):
        self.now = 0.0
        self.handles: List[FakeHandle] = []
        self.tasks: List = []

    def time(self):
        return self.now

    def call_later(self, delay, callback):
        handle = FakeHandle(self.now + delay, callback)
        self.handles.append(handle)
        return handle

    def create_task(self, coro):
        self.tasks.append(coro)
        return FakeTask()

    def advance(self, seconds):
        """Move time forward, firing due callbacks in order."""
        target = self.now + seconds
        while True:
            due = [h for h in self.handles if not h.cancelled and h.when <= target]
            if not due:
                break
            handle = min(due, key=lambda h: h.when)
            self.handles.remove(handle)
            self.now = handle.when
            handle.callback()
        self.now = target

    async def drain(self):
        """Await every collected coroutine."""
        tasks, self.tasks = self.tasks, []
        for coro in tasks:
            await coro

    @property
    def active(self):
        return [h for h in self.handles if not h.cancelled]


class FakeTask:
    def add_done_callback(self, callback):
        pass


@pytest.fixture
def fake_loop():
    return FakeLoop()


# ---------------------------------------------------------------------------
# In-memory WebDAV server
# ---------------------------------------------------------------------------

DAV_PREFIX = "/dav/"


class DavServerState:
    """Files, credentials and failure injection for the test server."""

    def __init__(self, username: str = "alice", password: str = "secret"):
        self.username = username
        self.password = password
        self.files: Dict[str, bytes] = {}
        self.mtimes: Dict[str, int] = {}
        self.status_overrides: Dict[str, int] = {}
        self.requests: List[tuple] = []
        self.relayed: List[tuple] = []
        self.base_url = ""
        self.relay_url = ""
        self.clock = 1700000000000

    def add_file(self, name: str, body: bytes, lastmod: Optional[int] = None):
        self.clock += 1000
        self.files[name] = body
        self.mtimes[name] = lastmod if lastmod is not None else self.clock

    def expected_auth(self) -> str:
        token = base64.b64encode(f"{self.username}:{self.password}".encode("utf-8")).decode("ascii")
        return f"Basic {token}"

    def multistatus(self) -> str:
        def response(href, lastmod, size):
            return (
                "<d:response>"
                f"<d:href>{href}</d:href>"
                "<d:propstat><d:prop>"
                f"<d:getlastmodified>{formatdate(lastmod / 1000, usegmt=True)}</d:getlastmodified>"
                f"<d:getcontentlength>{size}</d:getcontentlength>"
                "</d:prop><d:status>HTTP/1.1 200 OK</d:status></d:propstat>"
                "</d:response>"
            )

        parts = [response(DAV_PREFIX, self.clock, 0)]
        for name, body in self.files.items():
            parts.append(response(DAV_PREFIX + quote(name), self.mtimes[name], len(body)))
        return '<?xml version="1.0"?><d:multistatus xmlns:d="DAV:">' + "".join(parts) + "</d:multistatus>"


async def _dispatch(state: DavServerState, method: str, path: str, headers, body: bytes) -> web.Response:
    state.requests.append((method, path))
    if method in state.status_overrides:
        return web.Response(status=state.status_overrides[method])
    if headers.get("Authorization") != state.expected_auth():
        return web.Response(status=401)

    name = unquote(path[len(DAV_PREFIX):]) if path.startswith(DAV_PREFIX) else ""
    if method == "HEAD":
        return web.Response(status=200)
    if method == "PROPFIND":
        return web.Response(status=207, text=state.multistatus(),
                            content_type="application/xml")
    if method == "PUT":
        state.add_file(name, body)
        return web.Response(status=201)
    if method == "GET":
        if name not in state.files:
            return web.Response(status=404)
        return web.Response(status=200, body=state.files[name], content_type="application/json")
    if method == "DELETE":
        if name not in state.files:
            return web.Response(status=404)
        del state.files[name]
        del state.mtimes[name]
        return web.Response(status=204)
    return web.Response(status=405)


def make_dav_app(state: DavServerState) -> web.Application:
    """WebDAV collection under /dav/ plus a relay endpoint at /api/webdav."""

    async def dav(request: web.Request):
        body = await request.read()
        return await _dispatch(state, request.method, request.path, request.headers, body)

    async def relay(request: web.Request):
        target = request.query.get("url", "")
        method = request.headers.get("X-Dav-Method", request.method).upper()
        state.relayed.append((request.method, method, target))
        body = await request.read()
        return await _dispatch(state, method, urlparse(target).path, request.headers, body)

    app = web.Application()
    app.router.add_route("*", "/api/webdav", relay)
    app.router.add_route("*", "/dav/{name:.*}", dav)
    return app


@pytest_asyncio.fixture
async def dav_server():
    """A running in-memory WebDAV server; yields its state."""
    state = DavServerState()
    server = TestServer(make_dav_app(state))
    await server.start_server()
    state.base_url = str(server.make_url(DAV_PREFIX))
    state.relay_url = str(server.make_url("/api/webdav"))
    yield state
    await server.close()
