import io
import json

import httpx
import pytest
from tenacity import wait_none

from lms_tools.drive_client import (
    CHUNK_UNIT,
    MAX_STALLED_CHUNKS,
    MAX_UPLOAD_BYTES,
    DriveClient,
    DriveError,
    build_multipart_body,
    escape_query_value,
    topic_folder_name,
)


class StaticTokens:
    def __init__(self, tokens=("tok-1", "tok-2")):
        self._tokens = list(tokens)
        self.invalidated = 0

    def token(self):
        return self._tokens[min(self.invalidated, len(self._tokens) - 1)]

    def invalidate(self):
        self.invalidated += 1


def make_client(handler, shared_drive_id=None, tokens=None):
    http = httpx.Client(transport=httpx.MockTransport(handler))
    return DriveClient(tokens or StaticTokens(), shared_drive_id=shared_drive_id, http=http)


def test_helpers():
    assert escape_query_value("Bob's \\ notes") == "Bob\\'s \\\\ notes"
    assert topic_folder_name(" Robotics ", "course") == "[course] Robotics"
    assert topic_folder_name("Misc", "other") == "[topic] Misc"
    assert topic_folder_name("Demo", "course_content") == "[content] Demo"

    body, content_type = build_multipart_body({"name": "a.txt"}, b"hello", "text/plain")
    boundary = content_type.split("boundary=", 1)[1]
    assert content_type.startswith("multipart/related; ")
    assert body.startswith(f"--{boundary}\r\n".encode())
    assert b'{"name": "a.txt"}' in body
    assert b"Content-Type: text/plain\r\n\r\nhello" in body
    assert body.endswith(f"\r\n--{boundary}--\r\n".encode())


def test_list_files_paginates_on_shared_drive():
    seen = []

    def handler(request):
        seen.append(request)
        if "pageToken" not in request.url.params:
            return httpx.Response(200, json={"files": [{"id": "a"}], "nextPageToken": "p2"})
        return httpx.Response(200, json={"files": [{"id": "b"}]})

    client = make_client(handler, shared_drive_id="drive-1")
    files = client.list_files("folder-1", all_pages=True)
    assert [f["id"] for f in files] == ["a", "b"]
    params = seen[0].url.params
    assert params["q"] == "'folder-1' in parents and trashed=false"
    assert params["corpora"] == "drive"
    assert params["driveId"] == "drive-1"
    assert params["supportsAllDrives"] == "true"
    assert seen[0].headers["Authorization"] == "Bearer tok-1"


def test_unauthorized_refreshes_token_once():
    calls = []

    def handler(request):
        calls.append(request.headers["Authorization"])
        if request.headers["Authorization"] == "Bearer tok-1":
            return httpx.Response(401, json={"error": "expired"})
        return httpx.Response(200, json={"id": "x", "name": "x"})

    tokens = StaticTokens()
    client = make_client(handler, tokens=tokens)
    assert client.get_file("x")["id"] == "x"
    assert calls == ["Bearer tok-1", "Bearer tok-2"]
    assert tokens.invalidated == 1


def test_client_errors_raise_drive_error():
    client = make_client(lambda request: httpx.Response(403, text="forbidden"))
    with pytest.raises(DriveError) as excinfo:
        client.get_file("x")
    assert excinfo.value.status == 403


def test_ensure_folder_reuses_existing_folder():
    posted = []

    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json={"files": [{"id": "existing", "name": "Docs"}]})
        posted.append(request)
        return httpx.Response(200, json={"id": "new"})

    folder, created = make_client(handler).ensure_folder("Docs", "parent")
    assert (folder["id"], created) == ("existing", False)
    assert posted == []


def test_create_topic_folder_creates_prefixed_folder():
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json={"files": []})
        payload = json.loads(request.content)
        return httpx.Response(200, json={"id": "new", "name": payload["name"], "parents": payload["parents"]})

    folder, created = make_client(handler).create_topic_folder("parent", "Solar car", "project")
    assert created
    assert folder["name"] == "[project] Solar car"
    assert folder["parents"] == ["parent"]

    with pytest.raises(ValueError):
        make_client(handler).create_topic_folder("parent", "   ")


def test_delete_treats_404_as_already_deleted():
    statuses = iter([204, 404])
    client = make_client(lambda request: httpx.Response(next(statuses)))
    assert client.delete_file("a") is True
    assert client.delete_file("a") is False


def test_file_exists():
    def handler(request):
        if request.url.path.endswith("/gone"):
            return httpx.Response(404, json={"error": "notFound"})
        if request.url.path.endswith("/trashed"):
            return httpx.Response(200, json={"id": "trashed", "trashed": True})
        return httpx.Response(200, json={"id": "live", "trashed": False})

    client = make_client(handler)
    assert client.file_exists("live")
    assert not client.file_exists("gone")
    assert not client.file_exists("trashed")


def test_multipart_upload():
    def handler(request):
        assert request.url.params["uploadType"] == "multipart"
        assert request.headers["Content-Type"].startswith("multipart/related; boundary=")
        assert b"file-bytes" in request.content
        return httpx.Response(200, json={"id": "up-1", "name": "notes.txt"})

    uploaded = make_client(handler).upload_file(b"file-bytes", "notes.txt", "folder-1", "text/plain")
    assert uploaded["id"] == "up-1"


def test_resumable_upload_limits():
    def unreachable(request):
        raise AssertionError("limits are checked before any request")

    client = make_client(unreachable)
    with pytest.raises(DriveError) as excinfo:
        client.start_resumable_upload("big.bin", MAX_UPLOAD_BYTES + 1, "folder-1")
    assert excinfo.value.status == 413
    with pytest.raises(ValueError):
        client.start_resumable_upload("empty.bin", 0, "folder-1")
    with pytest.raises(ValueError):
        client.upload_resumable(io.BytesIO(b"x"), "x.bin", 1, "folder-1", chunk_size=1000)
    with pytest.raises(ValueError):
        client.upload_chunk("http://insecure.example", b"x", 0, 1)


def test_resumable_upload_follows_308_offsets():
    data = bytes(range(256)) * (CHUNK_UNIT // 256) * 2 + b"tail"
    ranges = []

    def handler(request):
        if request.method == "POST":
            assert request.url.params["uploadType"] == "resumable"
            assert request.headers["X-Upload-Content-Length"] == str(len(data))
            return httpx.Response(200, headers={"Location": "https://upload.example/session-1"})
        content_range = request.headers["Content-Range"]
        ranges.append(content_range)
        start, end = (int(part) for part in content_range.split(" ")[1].split("/")[0].split("-"))
        assert request.content == data[start : end + 1]
        if end + 1 < len(data):
            return httpx.Response(308, headers={"Range": f"bytes=0-{end}"})
        return httpx.Response(200, json={"id": "file-1", "name": "video.mp4"})

    uploaded = make_client(handler).upload_resumable(
        io.BytesIO(data), "video.mp4", len(data), "folder-1", "video/mp4", chunk_size=CHUNK_UNIT
    )
    assert uploaded["id"] == "file-1"
    assert ranges == [
        f"bytes 0-{CHUNK_UNIT - 1}/{len(data)}",
        f"bytes {CHUNK_UNIT}-{2 * CHUNK_UNIT - 1}/{len(data)}",
        f"bytes {2 * CHUNK_UNIT}-{len(data) - 1}/{len(data)}",
    ]


def test_move_and_share():
    seen = []

    def handler(request):
        seen.append(request)
        if request.url.path.endswith("/permissions"):
            return httpx.Response(200, json={"id": "perm-1"})
        if request.method == "GET":
            return httpx.Response(200, json={"webViewLink": "https://drive.example/x"})
        return httpx.Response(200, json={"id": "x", "parents": ["new"]})

    client = make_client(handler)
    assert client.move_file("x", "new", "old")["parents"] == ["new"]
    assert seen[0].url.params["addParents"] == "new"
    assert seen[0].url.params["removeParents"] == "old"

    link = client.share_file("x", "student@example.com")
    assert link["webViewLink"] == "https://drive.example/x"
    permission = json.loads(seen[1].content)
    assert permission == {"role": "reader", "type": "user", "emailAddress": "student@example.com"}


def test_health_reports_shared_drive():
    def handler(request):
        return httpx.Response(200, json={"id": "drive-1", "name": "LMS"})

    report = make_client(handler, shared_drive_id="drive-1").health()
    assert report["token"] is True
    assert report["shared_drive"]["name"] == "LMS"


@pytest.fixture
def no_wait(monkeypatch):
    monkeypatch.setattr(DriveClient._request.retry, "wait", wait_none())


def sequence_handler(replies, calls):
    replies = list(replies)

    def handler(request):
        calls.append(request.method)
        reply = replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    return handler


def test_transient_get_errors_are_retried(no_wait):
    calls = []
    handler = sequence_handler(
        [
            httpx.Response(503),
            httpx.ConnectError("connection reset"),
            httpx.Response(429),
            httpx.Response(200, json={"id": "x"}),
        ],
        calls,
    )
    assert make_client(handler).get_file("x")["id"] == "x"
    assert calls == ["GET"] * 4


def test_retries_stop_after_four_attempts(no_wait):
    calls = []
    client = make_client(sequence_handler([httpx.Response(500)] * 4, calls))
    with pytest.raises(DriveError) as excinfo:
        client.get_file("x")
    assert excinfo.value.status == 500
    assert len(calls) == 4


def test_client_errors_are_not_retried(no_wait):
    calls = []
    client = make_client(sequence_handler([httpx.Response(400, text="bad request")], calls))
    with pytest.raises(DriveError) as excinfo:
        client.get_file("x")
    assert excinfo.value.status == 400
    assert len(calls) == 1


def test_create_folder_retries_only_when_nothing_was_created(no_wait):
    calls = []
    client = make_client(
        sequence_handler([httpx.Response(503), httpx.Response(200, json={"id": "new"})], calls)
    )
    assert client.create_folder("Docs", "parent")["id"] == "new"
    assert calls == ["POST", "POST"]

    calls.clear()
    client = make_client(sequence_handler([httpx.Response(500)], calls))
    with pytest.raises(DriveError) as excinfo:
        client.create_folder("Docs", "parent")
    assert excinfo.value.status == 500
    assert calls == ["POST"]

    calls.clear()
    client = make_client(sequence_handler([httpx.ReadTimeout("no answer")], calls))
    with pytest.raises(DriveError):
        client.create_folder("Docs", "parent")
    assert calls == ["POST"]


def test_resumable_upload_gives_up_without_progress():
    puts = []

    def handler(request):
        if request.method == "POST":
            return httpx.Response(200, headers={"Location": "https://upload.example/session-1"})
        puts.append(request.headers["Content-Range"])
        return httpx.Response(308)

    client = make_client(handler)
    with pytest.raises(DriveError) as excinfo:
        client.upload_resumable(io.BytesIO(b"x" * 10), "notes.txt", 10, "folder-1")
    assert "no progress" in str(excinfo.value)
    assert puts == ["bytes 0-9/10"] * (MAX_STALLED_CHUNKS + 1)
