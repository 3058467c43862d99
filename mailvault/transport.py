#!/usr/bin/env python3

"""
transport.py

Microsoft Graph (OneDrive) transport:
- simple PUT upload for small payloads
- resumable upload sessions streamed in Content-Range chunks, each chunk
  retried on its own with exponential backoff
- streamed download
- metadata / exists / checksum / delete queries
- drive quota and connection test

Every call asks the TokenStore for a valid access token first and fails with
Unauthenticated before touching the network when there is none.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Any, BinaryIO, Callable, Dict, Iterator, Optional, Tuple
from urllib.parse import quote

import requests

from mailvault.config import Settings
from mailvault.errors import ChunkUploadExhausted, TransportError, Unauthenticated
from mailvault.logger import get_logger
from mailvault.models import RemoteItem, RemoteMetadata
from mailvault.oauth import TokenStore

ProgressFn = Callable[[int, int], None]


def chunk_ranges(total: int, chunk_size: int) -> Iterator[Tuple[int, int]]:
    """
    Yield inclusive (start, end) byte ranges covering `total` bytes.
    The last range is shorter when total is not a multiple of chunk_size.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    start = 0
    while start < total:
        end = min(start + chunk_size, total) - 1
        yield start, end
        start = end + 1


class GraphTransport:

    def __init__(
            self,
            settings: Settings,
            tokens: TokenStore,
            session: Optional[requests.Session] = None,
            sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.tokens = tokens
        self.session = session or requests.Session()
        self.sleep = sleep
        self.logger = get_logger(__name__)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _auth_headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.tokens.require_access_token()}"}
        if extra:
            headers.update(extra)
        return headers

    def _item_url(self, remote: str) -> str:
        return f"{self.settings.api_base}/me/drive/root:/{quote(remote.strip('/'), safe='/')}"

    def _request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        kwargs.setdefault("timeout", self.settings.request_timeout)
        try:
            return self.session.request(method, url, **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _json(resp: requests.Response, what: str) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise TransportError(f"{what}: response is not JSON", resp.status_code) from e

    @staticmethod
    def _raise_for_status(resp: requests.Response, what: str) -> None:
        if not 200 <= resp.status_code < 300:
            raise TransportError(f"{what} returned HTTP {resp.status_code}: {(resp.text or '')[:200]}",
                                 resp.status_code)

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------
    def upload(self, local: Path, remote: str, progress: Optional[ProgressFn] = None) -> RemoteItem:
        size = os.path.getsize(local)
        if size < self.settings.small_upload_threshold:
            return self.upload_small(local, remote)
        return self.upload_large(local, remote, progress)

    def upload_small(self, local: Path, remote: str) -> RemoteItem:
        headers = self._auth_headers({"Content-Type": "application/octet-stream"})
        with open(local, "rb") as fh:
            data = fh.read()
        resp = self._request("PUT", f"{self._item_url(remote)}:/content", headers=headers, data=data)
        self._raise_for_status(resp, f"Upload of {remote}")
        item = RemoteItem.from_response(self._json(resp, f"Upload of {remote}"), remote,
                                        self.settings.checksum_algorithm)
        self.logger.debug(f"Uploaded {local} -> {remote} ({len(data)} bytes)")
        return item

    def upload_large(self, local: Path, remote: str, progress: Optional[ProgressFn] = None) -> RemoteItem:
        upload_url = self._create_upload_session(remote)
        total = os.path.getsize(local)
        self.logger.debug(f"Upload session opened for {remote} ({total} bytes)")

        with open(local, "rb") as fh:
            for start, end in chunk_ranges(total, self.settings.chunk_size):
                payload = self._upload_chunk(upload_url, fh, start, end, total)
                if progress is not None:
                    progress(end + 1, total)
                if payload is not None:
                    return RemoteItem.from_response(payload, remote, self.settings.checksum_algorithm)

        raise TransportError(f"Upload session for {remote} ended without a drive item")

    def _create_upload_session(self, remote: str) -> str:
        headers = self._auth_headers({"Content-Type": "application/json"})
        body = {"item": {"@microsoft.graph.conflictBehavior": "replace"}}
        resp = self._request("POST", f"{self._item_url(remote)}:/createUploadSession", headers=headers, json=body)
        self._raise_for_status(resp, f"Upload session for {remote}")
        payload = self._json(resp, f"Upload session for {remote}")
        upload_url = payload.get("uploadUrl") if isinstance(payload, dict) else None
        if not upload_url:
            raise TransportError(f"Upload session for {remote} has no uploadUrl", resp.status_code)
        return upload_url

    def _upload_chunk(self, upload_url: str, fh: BinaryIO, start: int, end: int, total: int) -> Optional[dict]:
        """
        PUT one byte range. Returns the drive item once the provider reports
        completion, None while the session expects more bytes.
        """
        attempts = max(1, self.settings.max_retry_attempts)
        last_error: Optional[Exception] = None

        for attempt in range(1, attempts + 1):
            fh.seek(start)
            data = fh.read(end - start + 1)
            headers = {
                "Content-Length": str(len(data)),
                "Content-Range": f"bytes {start}-{end}/{total}",
            }
            try:
                # The upload URL is pre-authenticated; Graph rejects a bearer header here
                resp = self._request("PUT", upload_url, headers=headers, data=data)
                self._raise_for_status(resp, f"Chunk {start}-{end}")
                if resp.status_code == 202:
                    return None
                payload = self._json(resp, f"Chunk {start}-{end}")
                if isinstance(payload, dict) and payload.get("id"):
                    return payload
                return None
            except TransportError as e:
                last_error = e
                if attempt >= attempts:
                    break
                delay = self.settings.retry_delay * 2 ** (attempt - 1)
                self.logger.warning(f"Chunk {start}-{end}/{total} failed (attempt {attempt}/{attempts}), "
                                    f"retrying in {delay:.1f}s: {e}")
                self.sleep(delay)

        raise ChunkUploadExhausted(start, end, attempts, last_error)

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------
    def download(self, remote: str, sink: Path) -> bool:
        """Stream remote content into `sink`. Returns False on any transport failure."""
        headers = self._auth_headers()
        tmp = sink.with_name(sink.name + ".part")
        try:
            sink.parent.mkdir(parents=True, exist_ok=True)
            with self.session.get(f"{self._item_url(remote)}:/content", headers=headers, stream=True,
                                  timeout=self.settings.request_timeout) as resp:
                if not 200 <= resp.status_code < 300:
                    self.logger.warning(f"Download of {remote} returned HTTP {resp.status_code}")
                    return False
                with open(tmp, "wb") as out:
                    for chunk in resp.iter_content(chunk_size=65536):
                        if chunk:
                            out.write(chunk)
            os.replace(tmp, sink)
            return True
        except (requests.RequestException, OSError) as e:
            self.logger.warning(f"Download of {remote} failed: {e}")
            tmp.unlink(missing_ok=True)
            return False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def metadata(self, remote: str) -> Optional[RemoteMetadata]:
        """Return item metadata, None if the item does not exist."""
        resp = self._request("GET", self._item_url(remote), headers=self._auth_headers())
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, f"Metadata of {remote}")
        return RemoteMetadata.from_response(self._json(resp, f"Metadata of {remote}"), remote)

    def exists(self, remote: str) -> bool:
        return self.metadata(remote) is not None

    def checksum(self, remote: str) -> Optional[str]:
        meta = self.metadata(remote)
        if meta is None:
            return None
        return meta.checksum(self.settings.checksum_algorithm)

    def delete(self, remote: str) -> bool:
        """Delete a remote item. A missing item counts as deleted."""
        try:
            resp = self._request("DELETE", self._item_url(remote), headers=self._auth_headers())
        except TransportError as e:
            self.logger.warning(f"Delete of {remote} failed: {e}")
            return False
        if resp.status_code in (200, 204, 404):
            return True
        self.logger.warning(f"Delete of {remote} returned HTTP {resp.status_code}")
        return False

    # ------------------------------------------------------------------
    # Drive
    # ------------------------------------------------------------------
    def drive_info(self) -> Dict[str, Any]:
        resp = self._request("GET", f"{self.settings.api_base}/me/drive", headers=self._auth_headers())
        self._raise_for_status(resp, "Drive info")
        return self._json(resp, "Drive info")

    def storage_usage(self) -> Dict[str, Any]:
        quota = self.drive_info().get("quota") or {}
        total = int(quota.get("total") or 0)
        used = int(quota.get("used") or 0)
        return {
            "total": total,
            "used": used,
            "remaining": int(quota.get("remaining") or max(total - used, 0)),
            "deleted": int(quota.get("deleted") or 0),
            "state": quota.get("state", "unknown"),
            "used_percent": round(used / total * 100, 2) if total else 0.0,
        }

    def test_connection(self) -> bool:
        try:
            self.drive_info()
            return True
        except (Unauthenticated, TransportError) as e:
            self.logger.error(f"Connection test failed: {e}")
            return False
