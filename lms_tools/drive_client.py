"""Google Drive v3 REST client shared by every Drive-facing command."""

from __future__ import annotations

import json
import uuid
from typing import IO, Any, Dict, List, Mapping, Optional, Tuple

import httpx
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from lms_tools.console import log
from lms_tools.google_auth import GoogleAuthError, ServiceAccount, TokenProvider


API_BASE = "https://www.googleapis.com/drive/v3"
UPLOAD_BASE = "https://www.googleapis.com/upload/drive/v3"
FOLDER_MIME = "application/vnd.google-apps.folder"
DEFAULT_MIME = "application/octet-stream"
MAX_UPLOAD_BYTES = 500 * 1024 * 1024
CHUNK_UNIT = 256 * 1024
MAX_STALLED_CHUNKS = 3
# statuses on which a POST is retried; POSTs are never replayed after a transport error
POST_RETRY_STATUSES = (429, 503)
FILE_FIELDS = (
    "id,name,mimeType,size,createdTime,modifiedTime,webViewLink,parents,iconLink,thumbnailLink"
)

TOPIC_MARKERS = {
    "project": "[project]",
    "course_content": "[content]",
    "company": "[company]",
    "course_category": "[category]",
    "course": "[course]",
}
DEFAULT_TOPIC_MARKER = "[topic]"


class DriveError(RuntimeError):
    """Raised when the Drive API responds with an error."""

    def __init__(self, message: str, status: Optional[int] = None, retryable: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.retryable = retryable


def _retryable_status(method: str, status: int) -> bool:
    if method == "POST":
        return status in POST_RETRY_STATUSES
    return status == 429 or status >= 500


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    return isinstance(exc, DriveError) and exc.retryable


def escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def topic_folder_name(topic: str, topic_type: Optional[str]) -> str:
    marker = TOPIC_MARKERS.get(topic_type or "", DEFAULT_TOPIC_MARKER)
    return f"{marker} {topic.strip()}"


def build_multipart_body(metadata: Mapping[str, Any], data: bytes, mime_type: str) -> Tuple[bytes, str]:
    """Encode a multipart/related upload body; returns (body, content type)."""

    boundary = f"lms_tools_{uuid.uuid4().hex}"
    head = (
        f"--{boundary}\r\n"
        "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        f"{json.dumps(metadata)}\r\n"
        f"--{boundary}\r\n"
        f"Content-Type: {mime_type}\r\n\r\n"
    ).encode("utf-8")
    tail = f"\r\n--{boundary}--\r\n".encode("utf-8")
    return head + data + tail, f"multipart/related; boundary={boundary}"


class DriveClient:
    """Drive v3 calls with bearer tokens from a :class:`TokenProvider`."""

    def __init__(
        self,
        tokens: TokenProvider,
        shared_drive_id: Optional[str] = None,
        http: Optional[httpx.Client] = None,
        timeout: float = 60.0,
    ) -> None:
        self.tokens = tokens
        self.shared_drive_id = shared_drive_id
        self._http = http or httpx.Client(timeout=timeout)

    @classmethod
    def from_settings(cls, settings) -> "DriveClient":
        account = ServiceAccount.from_settings(settings)
        return cls(
            TokenProvider(account),
            shared_drive_id=settings.shared_drive_id,
            timeout=max(settings.request_timeout, 60.0),
        )

    def close(self) -> None:
        self._http.close()

    # ---- transport ----------------------------------------------------
    @retry(
        retry=retry_if_exception(_is_transient),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        stop=stop_after_attempt(4),
        reraise=True,
    )
    def _request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        ok_statuses: Tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        query = {"supportsAllDrives": "true", **(params or {})}
        extra_headers = kwargs.pop("headers", None) or {}
        response = None
        for attempt in range(2):
            headers = {"Authorization": f"Bearer {self.tokens.token()}", **extra_headers}
            try:
                response = self._http.request(method, url, params=query, headers=headers, **kwargs)
            except httpx.TransportError as exc:
                if method != "POST":
                    raise
                raise DriveError(f"{method} {url} failed: {exc}") from exc
            if response.status_code == 401 and attempt == 0:
                self.tokens.invalidate()
                continue
            break
        if response.status_code >= 400 and response.status_code not in ok_statuses:
            raise DriveError(
                f"{method} {url} failed: {response.status_code} {response.text}",
                status=response.status_code,
                retryable=_retryable_status(method, response.status_code),
            )
        return response

    def _json(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        response = self._request(method, f"{API_BASE}{path}", **kwargs)
        if not response.content:
            return {}
        return response.json()

    # ---- listing ------------------------------------------------------
    def list_files(
        self,
        folder_id: str,
        page_size: int = 50,
        order_by: str = "modifiedTime desc",
        query: Optional[str] = None,
        all_pages: bool = False,
    ) -> List[Dict[str, Any]]:
        q = f"'{escape_query_value(folder_id)}' in parents and trashed=false"
        if query:
            q = f"{q} and {query}"
        return self._list(q, page_size=page_size, order_by=order_by, all_pages=all_pages)

    def search_files(self, name_fragment: str, page_size: int = 50) -> List[Dict[str, Any]]:
        q = f"name contains '{escape_query_value(name_fragment)}' and trashed=false"
        return self._list(q, page_size=page_size, order_by=None, all_pages=False)

    def _list(
        self, q: str, page_size: int, order_by: Optional[str], all_pages: bool
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {
            "q": q,
            "pageSize": str(page_size),
            "fields": f"nextPageToken,files({FILE_FIELDS})",
            "includeItemsFromAllDrives": "true",
        }
        if order_by:
            params["orderBy"] = order_by
        if self.shared_drive_id:
            params["corpora"] = "drive"
            params["driveId"] = self.shared_drive_id
        files: List[Dict[str, Any]] = []
        while True:
            payload = self._json("GET", "/files", params=params)
            files.extend(payload.get("files") or [])
            token = payload.get("nextPageToken")
            if not all_pages or not token:
                return files
            params["pageToken"] = token

    def get_file(self, file_id: str) -> Dict[str, Any]:
        return self._json("GET", f"/files/{file_id}", params={"fields": FILE_FIELDS})

    def file_exists(self, file_id: str) -> bool:
        response = self._request(
            "GET",
            f"{API_BASE}/files/{file_id}",
            params={"fields": "id,trashed"},
            ok_statuses=(404,),
        )
        if response.status_code == 404:
            return False
        return not response.json().get("trashed", False)

    # ---- folders ------------------------------------------------------
    def find_folder(self, parent_id: str, name: str) -> Optional[Dict[str, Any]]:
        matches = self.list_files(
            parent_id,
            page_size=10,
            order_by="createdTime",
            query=f"mimeType='{FOLDER_MIME}' and name='{escape_query_value(name)}'",
        )
        return matches[0] if matches else None

    def create_folder(self, name: str, parent_id: str) -> Dict[str, Any]:
        folder = self._json(
            "POST",
            "/files",
            params={"fields": FILE_FIELDS},
            json={"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id]},
        )
        log("drive", f"Created folder {name} ({folder.get('id')})")
        return folder

    def ensure_folder(self, name: str, parent_id: str) -> Tuple[Dict[str, Any], bool]:
        existing = self.find_folder(parent_id, name)
        if existing:
            return existing, False
        return self.create_folder(name, parent_id), True

    def create_topic_folder(
        self, parent_id: str, topic: str, topic_type: Optional[str] = None
    ) -> Tuple[Dict[str, Any], bool]:
        if not parent_id or not topic.strip():
            raise ValueError("parent folder id and topic name are required")
        return self.ensure_folder(topic_folder_name(topic, topic_type), parent_id)

    # ---- uploads ------------------------------------------------------
    def upload_file(
        self,
        data: bytes,
        name: str,
        folder_id: str,
        mime_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        mime = mime_type or DEFAULT_MIME
        body, content_type = build_multipart_body(
            {"name": name, "parents": [folder_id], "mimeType": mime}, data, mime
        )
        response = self._request(
            "POST",
            f"{UPLOAD_BASE}/files",
            params={"uploadType": "multipart", "fields": FILE_FIELDS},
            content=body,
            headers={"Content-Type": content_type},
        )
        uploaded = response.json()
        log("drive", f"Uploaded {name} ({uploaded.get('id')})")
        return uploaded

    def start_resumable_upload(
        self,
        name: str,
        size: int,
        folder_id: str,
        mime_type: Optional[str] = None,
    ) -> str:
        if size <= 0:
            raise ValueError("file size must be positive")
        if size > MAX_UPLOAD_BYTES:
            raise DriveError(
                f"File too large: {size} bytes (limit {MAX_UPLOAD_BYTES})", status=413
            )
        mime = mime_type or DEFAULT_MIME
        response = self._request(
            "POST",
            f"{UPLOAD_BASE}/files",
            params={"uploadType": "resumable"},
            json={"name": name, "parents": [folder_id], "mimeType": mime},
            headers={
                "X-Upload-Content-Type": mime,
                "X-Upload-Content-Length": str(size),
            },
        )
        location = response.headers.get("Location")
        if not location:
            raise DriveError("Resumable upload session created without a Location header")
        return location

    def upload_chunk(
        self, session_url: str, chunk: bytes, start: int, total: int
    ) -> Tuple[Optional[int], Optional[Dict[str, Any]]]:
        """Send one chunk; returns (next_offset, None) or (None, file) when done."""

        if not session_url.startswith("https://"):
            raise ValueError("upload session URL must be https")
        if not chunk:
            raise ValueError("empty chunk")
        end = start + len(chunk) - 1
        if end >= total:
            raise ValueError("chunk runs past the declared total size")
        response = self._request(
            "PUT",
            session_url,
            content=chunk,
            headers={"Content-Range": f"bytes {start}-{end}/{total}"},
            ok_statuses=(308,),
        )
        if response.status_code == 308:
            received = response.headers.get("Range")
            if not received:
                return 0, None
            return int(received.rsplit("-", 1)[-1]) + 1, None
        return None, response.json()

    def upload_resumable(
        self,
        stream: IO[bytes],
        name: str,
        size: int,
        folder_id: str,
        mime_type: Optional[str] = None,
        chunk_size: int = CHUNK_UNIT * 4,
    ) -> Dict[str, Any]:
        if chunk_size <= 0 or chunk_size % CHUNK_UNIT:
            raise ValueError(f"chunk size must be a positive multiple of {CHUNK_UNIT}")
        session_url = self.start_resumable_upload(name, size, folder_id, mime_type)
        offset = 0
        stalled = 0
        while offset < size:
            stream.seek(offset)
            chunk = stream.read(min(chunk_size, size - offset))
            if not chunk:
                raise DriveError(f"Stream ended at {offset} of {size} bytes")
            next_offset, uploaded = self.upload_chunk(session_url, chunk, offset, size)
            if uploaded is not None:
                log("drive", f"Uploaded {name} ({uploaded.get('id')}) in chunks")
                return uploaded
            next_offset = next_offset or 0
            if next_offset <= offset:
                stalled += 1
                if stalled > MAX_STALLED_CHUNKS:
                    raise DriveError(
                        f"Upload of {name} made no progress past byte {offset} "
                        f"after {stalled} chunks"
                    )
            else:
                stalled = 0
            offset = next_offset
        raise DriveError(f"Upload of {name} finished without a file resource")

    # ---- file operations ----------------------------------------------
    def download_file(self, file_id: str) -> bytes:
        response = self._request("GET", f"{API_BASE}/files/{file_id}", params={"alt": "media"})
        return response.content

    def rename_file(self, file_id: str, new_name: str) -> Dict[str, Any]:
        return self._json(
            "PATCH",
            f"/files/{file_id}",
            params={"fields": "id,name,modifiedTime"},
            json={"name": new_name},
        )

    def move_file(self, file_id: str, new_parent_id: str, old_parent_id: str) -> Dict[str, Any]:
        return self._json(
            "PATCH",
            f"/files/{file_id}",
            params={
                "addParents": new_parent_id,
                "removeParents": old_parent_id,
                "fields": "id,name,parents",
            },
            json={},
        )

    def share_file(self, file_id: str, email: str, role: str = "reader") -> Dict[str, Any]:
        self._json(
            "POST",
            f"/files/{file_id}/permissions",
            json={"role": role, "type": "user", "emailAddress": email},
        )
        return self._json(
            "GET", f"/files/{file_id}", params={"fields": "webViewLink,webContentLink"}
        )

    def delete_file(self, file_id: str) -> bool:
        """Delete a file or folder; returns False when it was already gone."""

        response = self._request("DELETE", f"{API_BASE}/files/{file_id}", ok_statuses=(404,))
        if response.status_code == 404:
            log("drive", f"{file_id} not found, treating as already deleted")
            return False
        log("drive", f"Deleted {file_id}")
        return True

    def health(self) -> Dict[str, Any]:
        report: Dict[str, Any] = {"token": False, "shared_drive": None}
        try:
            self.tokens.token()
            report["token"] = True
        except GoogleAuthError as exc:
            report["token_error"] = str(exc)
            return report
        if self.shared_drive_id:
            try:
                report["shared_drive"] = self._json(
                    "GET",
                    f"/drives/{self.shared_drive_id}",
                    params={"fields": "id,name,capabilities"},
                )
            except DriveError as exc:
                report["shared_drive_error"] = str(exc)
        return report
