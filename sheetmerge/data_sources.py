# sheetmerge/data_sources.py

import csv
import http.client
import json
import logging
import mimetypes
import re
import ssl
import urllib.error
import urllib.parse
import urllib.request
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import certifi

from sheetmerge.errors import UpstreamFetchError


logger = logging.getLogger(__name__)

DEFAULT_HOST = "go.trackvia.com"
DEFAULT_FILE_NAME = "template.xlsx"
OAUTH_CLIENT_ID = "TrackViaAPI"
USER_AGENT = "sheetmerge/1.0"


@dataclass
class ViewPage:
    records: List[Dict[str, Any]]
    structure: List[Dict[str, Any]]
    total_count: int = 0

    def fields_of_type(self, field_type: str) -> List[str]:
        return [f.get("name") for f in self.structure if f.get("type") == field_type]

    def field_names(self) -> set:
        return {f.get("name") for f in self.structure}


@dataclass
class FileDownload:
    content: bytes
    content_disposition: str = ""

    @property
    def file_name(self) -> str:
        return file_name_from_disposition(self.content_disposition)

    @property
    def extension(self) -> str:
        return extension_from_disposition(self.content_disposition)


# -------------------------------------------------
# Public API
# -------------------------------------------------

def load_records_csv(path: str) -> Tuple[List[Dict[str, str]], List[str]]:
    """
    Load records from a local CSV export of a view.

    Field names keep their original casing because they must match template
    headers exactly.

    Returns:
        records: list of row dictionaries
        headers: ordered list of column headers
    """
    records = []

    with open(path, mode="r", encoding="utf-8-sig", newline="") as f:
        reader = csv.DictReader(f)

        headers = [str(h).strip() for h in (reader.fieldnames or [])]

        for row in reader:
            records.append({
                str(k).strip(): v
                for k, v in (row.items() if row else [])
            })

    return records, headers


def file_name_from_disposition(header: Optional[str]) -> str:
    """
    File name from a Content-Disposition header.

    Falls back to "template.xlsx" when the header carries no name.
    """
    value = (header or "").replace('"', "")
    marker = "filename="
    index = value.find(marker)
    if index > 0:
        name = value[index + len(marker):].split(";")[0].strip()
        if name:
            return name
    return DEFAULT_FILE_NAME


def extension_from_disposition(header: Optional[str]) -> str:
    """Extension of the quoted file name in a Content-Disposition header."""
    m = re.search(r'"(.*)"', header or "")
    if not m or "." not in m.group(1):
        return ""
    return m.group(1).rsplit(".", 1)[1].lower()


class DataSourceClient:
    """
    Blocking client for a TrackVia-style REST API.

    Views are the unit of access: records, attachments and new records are
    all addressed through a view id. Every request carries the account's API
    key and, after `login` or `set_access_token`, an OAuth access token.
    """

    def __init__(self, api_key: str, host: str = DEFAULT_HOST, timeout: int = 30):
        self.api_key = api_key
        self.host = host or DEFAULT_HOST
        self.timeout = timeout
        self.access_token: Optional[str] = None
        self._context = ssl.create_default_context(cafile=certifi.where())

    # -------------------------
    # Authentication
    # -------------------------

    def set_access_token(self, token: str) -> None:
        self.access_token = token

    def login(self, username: str, password: str) -> None:
        body = urllib.parse.urlencode({
            "client_id": OAUTH_CLIENT_ID,
            "grant_type": "password",
            "username": username,
            "password": password,
        }).encode("utf-8")

        data = self._request_json(
            "POST",
            "/oauth/token",
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            auth=False,
        )
        token = data.get("access_token") or data.get("value")
        if not token:
            raise UpstreamFetchError("Login response carried no access token", verb="POST", href="/oauth/token")
        self.access_token = token

    # -------------------------
    # Views and records
    # -------------------------

    def get_view(self, view_id, start: int = 0, max_records: int = 1000) -> ViewPage:
        data = self._request_json(
            "GET",
            f"/openapi/views/{view_id}",
            query={"start": start, "max": max_records},
        )
        return ViewPage(
            records=list(data.get("data") or []),
            structure=list(data.get("structure") or []),
            total_count=int(data.get("totalCount") or 0),
        )

    def update_record(self, view_id, record_id, fields: Dict[str, Any]) -> Dict[str, Any]:
        return self._request_json(
            "PUT",
            f"/openapi/views/{view_id}/records/{record_id}",
            data=json.dumps({"data": [fields]}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )

    def add_record(self, view_id, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create a record; returns the created record including its `id`."""
        data = self._request_json(
            "POST",
            f"/openapi/views/{view_id}/records",
            data=json.dumps({"data": [fields]}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
        )
        created = data.get("data") or []
        if not created:
            raise UpstreamFetchError(
                "Create record response carried no record",
                verb="POST",
                href=f"/openapi/views/{view_id}/records",
            )
        return created[0]

    # -------------------------
    # Files
    # -------------------------

    def get_file(self, view_id, record_id, field_name: str) -> Optional[FileDownload]:
        """
        Download a record's file or image field.

        Returns None when the field is empty (the API answers 404).
        """
        path = self._file_path(view_id, record_id, field_name)
        try:
            body, headers = self._request("GET", path)
        except UpstreamFetchError as e:
            if e.status == 404:
                return None
            raise
        return FileDownload(content=body, content_disposition=headers.get("content-disposition", ""))

    def attach_file(self, view_id, record_id, field_name: str, file_path: str) -> Dict[str, Any]:
        path = Path(file_path)
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        body, boundary = _multipart_body("file", path.name, path.read_bytes(), content_type)

        return self._request_json(
            "POST",
            self._file_path(view_id, record_id, field_name),
            data=body,
            headers={"Content-Type": f"multipart/form-data; boundary={boundary}"},
        )

    # -------------------------
    # Internal helpers
    # -------------------------

    def _file_path(self, view_id, record_id, field_name: str) -> str:
        field = urllib.parse.quote(str(field_name), safe="")
        return f"/openapi/views/{view_id}/records/{record_id}/files/{field}"

    def _url(self, path: str, query: Optional[Dict[str, Any]], auth: bool) -> str:
        params = dict(query or {})
        params["user_key"] = self.api_key
        if auth and self.access_token:
            params["access_token"] = self.access_token
        return f"https://{self.host}{path}?{urllib.parse.urlencode(params)}"

    def _request(
        self,
        method: str,
        path: str,
        *,
        query: Optional[Dict[str, Any]] = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
        auth: bool = True,
    ) -> Tuple[bytes, Dict[str, str]]:
        req = urllib.request.Request(
            self._url(path, query, auth),
            data=data,
            headers={"User-Agent": USER_AGENT, **(headers or {})},
            method=method,
        )
        logger.debug(f"{method} {path}")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout, context=self._context) as resp:
                return resp.read(), {k.lower(): v for k, v in resp.headers.items()}
        except urllib.error.HTTPError as e:
            body = e.read().decode("utf-8", errors="replace")
            raise UpstreamFetchError(
                f"HTTP {e.code} for {method} {path}",
                status=e.code,
                verb=method,
                href=path,
                body=body,
            ) from e
        except urllib.error.URLError as e:
            raise UpstreamFetchError(f"{method} {path} failed: {e.reason}", verb=method, href=path) from e
        except (OSError, http.client.HTTPException) as e:
            # timeouts and dropped connections during the read are not wrapped by urllib
            raise UpstreamFetchError(f"{method} {path} failed: {e!r}", verb=method, href=path) from e

    def _request_json(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        body, _ = self._request(method, path, **kwargs)
        if not body:
            return {}
        try:
            return json.loads(body.decode("utf-8-sig"))
        except ValueError as e:
            raise UpstreamFetchError(
                f"Invalid JSON from {method} {path}", verb=method, href=path, body=body[:200].decode("utf-8", "replace")
            ) from e


def _multipart_body(field: str, file_name: str, content: bytes, content_type: str) -> Tuple[bytes, str]:
    boundary = uuid.uuid4().hex
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="{field}"; filename="{file_name}"\r\n'
        f"Content-Type: {content_type}\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--\r\n".encode("utf-8")
    return head + content + tail, boundary
