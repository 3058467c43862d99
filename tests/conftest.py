#!/usr/bin/env python3
"""
Shared pytest fixtures and configuration for mailvault tests.
"""

import datetime
import hashlib
import itertools
import os
import re
import sys
import threading
from pathlib import Path
from urllib.parse import unquote

import pytest
import requests

# Ensure the repository root is importable without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from mailvault import db
from mailvault.config import MIB, Settings

API_BASE = "https://graph.test/v1.0"
UPLOAD_HOST = "https://upload.graph.test/session/"


class FakeResponse:
    """Just enough of requests.Response for the code under test."""

    def __init__(self, status_code=200, json_data=None, text="", content=b""):
        self.status_code = status_code
        self._json = json_data
        self.text = text
        self.content = content

    def json(self):
        if self._json is None:
            raise ValueError("no json body")
        return self._json

    def iter_content(self, chunk_size=65536):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeGraph:
    """
    In-memory OneDrive speaking the subset of Graph the transport uses.

    Counters expose how uploads happened; the fail_* knobs inject errors.
    """

    def __init__(self):
        self.items = {}
        self.calls = []
        self.small_uploads = 0
        self.sessions_opened = 0
        self.chunk_puts = []
        self.fail_next_chunks = 0
        self.fail_metadata_status = None
        self.omit_hashes = False
        self.token_responses = []
        self.token_requests = []
        self._sessions = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()

    # --- helpers for tests -------------------------------------------
    def put_item(self, path, data):
        self.items[path] = data

    def corrupt(self, path):
        self.items[path] = self.items[path] + b"corrupted"

    def _item_json(self, path):
        data = self.items[path]
        body = {
            "id": f"item-{abs(hash(path)) % 100000}",
            "name": path.rsplit("/", 1)[-1],
            "size": len(data),
            "lastModifiedDateTime": "2024-01-01T00:00:00Z",
            "file": {},
        }
        if not self.omit_hashes:
            body["file"]["hashes"] = {"sha1Hash": hashlib.sha1(data).hexdigest().upper()}
        return body

    def _path_of(self, url):
        prefix = f"{API_BASE}/me/drive/root:/"
        rest = url[len(prefix):]
        for suffix in (":/content", ":/createUploadSession"):
            if rest.endswith(suffix):
                return unquote(rest[: -len(suffix)]), suffix
        return unquote(rest), ""

    # --- requests.Session surface -------------------------------------
    def post(self, url, data=None, timeout=None, **kwargs):
        self.token_requests.append(dict(data or {}))
        if self.token_responses:
            resp = self.token_responses.pop(0)
            if isinstance(resp, Exception):
                raise resp
            return resp
        return FakeResponse(200, {"access_token": "new-access", "refresh_token": "new-refresh",
                                  "expires_in": 3600, "token_type": "Bearer"})

    def get(self, url, headers=None, stream=False, timeout=None, **kwargs):
        self.calls.append(("GET", url))
        path, suffix = self._path_of(url)
        if path not in self.items:
            return FakeResponse(404, {"error": {"code": "itemNotFound"}})
        return FakeResponse(200, content=self.items[path])

    def request(self, method, url, **kwargs):
        with self._lock:
            return self._handle(method, url, **kwargs)

    def _handle(self, method, url, headers=None, data=None, json=None, timeout=None, **kwargs):
        self.calls.append((method, url))
        headers = headers or {}

        if url.startswith(UPLOAD_HOST):
            return self._chunk(url, headers, data)

        if url == f"{API_BASE}/me/drive":
            return FakeResponse(200, {"id": "drive", "quota": {"total": 1000, "used": 250, "remaining": 750,
                                                                "deleted": 0, "state": "normal"}})

        path, suffix = self._path_of(url)
        if method == "PUT" and suffix == ":/content":
            self.small_uploads += 1
            self.items[path] = bytes(data)
            return FakeResponse(201, self._item_json(path))
        if method == "POST" and suffix == ":/createUploadSession":
            self.sessions_opened += 1
            session_id = str(next(self._ids))
            self._sessions[session_id] = {"path": path, "buffer": bytearray()}
            return FakeResponse(200, {"uploadUrl": UPLOAD_HOST + session_id})
        if method == "GET":
            if self.fail_metadata_status:
                return FakeResponse(self.fail_metadata_status, text="boom")
            if path not in self.items:
                return FakeResponse(404, {"error": {"code": "itemNotFound"}})
            return FakeResponse(200, self._item_json(path))
        if method == "DELETE":
            if path not in self.items:
                return FakeResponse(404)
            del self.items[path]
            return FakeResponse(204)
        return FakeResponse(400, text=f"unsupported {method} {url}")

    def _chunk(self, url, headers, data):
        if "Authorization" in headers:
            return FakeResponse(401, text="bearer not allowed on upload url")
        if self.fail_next_chunks > 0:
            self.fail_next_chunks -= 1
            raise requests.ConnectionError("connection reset")
        session = self._sessions[url[len(UPLOAD_HOST):]]
        m = re.match(r"bytes (\d+)-(\d+)/(\d+)", headers["Content-Range"])
        start, end, total = (int(g) for g in m.groups())
        self.chunk_puts.append((start, end, total))
        assert start == len(session["buffer"]), "chunk out of order"
        assert end - start + 1 == len(data) == int(headers["Content-Length"])
        session["buffer"].extend(data)
        if len(session["buffer"]) == total:
            self.items[session["path"]] = bytes(session["buffer"])
            return FakeResponse(201, self._item_json(session["path"]))
        return FakeResponse(202, {"nextExpectedRanges": [f"{len(session['buffer'])}-"]})


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime.datetime(2024, 6, 1, 12, 0, tzinfo=datetime.timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += datetime.timedelta(seconds=seconds)


def make_settings(tmp_path, **overrides):
    values = dict(
        mail_root=tmp_path / "mail",
        db_path=tmp_path / "state.db",
        log_path=tmp_path / "mailvault.log",
        restore_dir=tmp_path / "restored",
        client_id="client-id",
        client_secret="client-secret",
        tenant_id="common",
        redirect_uri="http://localhost/callback",
        scopes="Files.ReadWrite offline_access",
        backup_principal="backup",
        token_skew=0,
        api_base=API_BASE,
        cloud_base_path="ISP-Email-Backups",
        chunk_size=10 * MIB,
        small_upload_threshold=4 * MIB,
        max_retry_attempts=3,
        retry_delay=5.0,
        request_timeout=5,
        checksum_algorithm="sha1",
        retention_days=30,
        default_threshold_mb=1000,
        warning_pct=80.0,
        critical_pct=95.0,
        max_batch_workers=2,
        task_retries=0,
        status_interval=0,
    )
    values.update(overrides)
    return Settings(**values)


def write_mail(mail_root, mailbox, name, size=64, age_days=None):
    """Create a file in <mail_root>/<mailbox>/cur and optionally backdate it."""
    path = mail_root / mailbox / "cur" / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(os.urandom(size))
    if age_days is not None:
        ts = (datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=age_days)).timestamp()
        os.utime(path, (ts, ts))
    return path


@pytest.fixture
def tmp_dir(tmp_path):
    """Returns a temporary directory Path."""
    return tmp_path


@pytest.fixture
def test_settings(tmp_path):
    """Create a Settings object with test paths and a migrated database."""
    settings = make_settings(tmp_path)
    settings.mail_root.mkdir(parents=True, exist_ok=True)
    db.ensure_schema(settings.db_path)
    return settings


@pytest.fixture
def test_db(test_settings):
    """Path of a test database with schema initialized."""
    return test_settings.db_path


@pytest.fixture
def fake_graph():
    return FakeGraph()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def authed(test_settings):
    """Store a token for the backup principal valid for an hour."""
    expires = datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(hours=1)
    db.save_token(test_settings.db_path, "backup", "microsoft", "access-1", "refresh-1",
                  expires.isoformat(), "Files.ReadWrite", "Bearer")
    return test_settings


@pytest.fixture
def services(authed, fake_graph):
    from mailvault.operations import build_services
    return build_services(authed, session=fake_graph, sleep=lambda s: None)


@pytest.fixture
def mail_factory(test_settings):
    def factory(mailbox, name, size=64, age_days=None):
        return write_mail(test_settings.mail_root, mailbox, name, size, age_days)
    return factory
