"""HTTP surface, driven through FastAPI's TestClient."""
import uuid

import pytest
from fastapi.testclient import TestClient

from filevault.main import create_app

PAYLOAD = b"%PDF-1.7 board minutes"


@pytest.fixture
def client(settings, key_provider, notifier):
    app = create_app(settings, key_provider=key_provider, notifier=notifier, run_sweeper=False)
    with TestClient(app) as client:
        yield client


def upload(client, user="alice", name="minutes.pdf", **form):
    return client.post(
        "/api/files/upload",
        files={"file": (name, PAYLOAD, "application/pdf")},
        data={k: str(v) for k, v in form.items()},
        headers={"X-User-Id": user},
    )


def test_health(client):
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_upload_requires_identity(client):
    response = client.post("/api/files/upload", files={"file": ("a.txt", b"x", "text/plain")})
    assert response.status_code == 401


def test_upload_and_download(client):
    response = upload(client, visibility="public", max_downloads=2)
    assert response.status_code == 201
    body = response.json()
    file_id = body["file"]["id"]
    assert body["file"]["originalName"] == "minutes.pdf"
    assert body["file"]["maxDownloads"] == 2
    assert "storageRef" not in body["file"]
    assert "cipherMeta" not in body["file"]

    first = client.get(f"/api/files/{file_id}/download", headers={"X-User-Id": "bob"})
    assert first.status_code == 200
    assert first.content == PAYLOAD
    assert first.headers["x-download-count"] == "1"
    assert first.headers["x-downloads-remaining"] == "1"
    assert "minutes.pdf" in first.headers["content-disposition"]

    assert client.get(f"/api/files/{file_id}/download").status_code == 200

    exhausted = client.get(f"/api/files/{file_id}/download")
    assert exhausted.status_code == 410
    assert exhausted.json()["error"] == "exhausted"
    assert exhausted.json()["retryable"] is False


def test_private_file_hidden_from_strangers(client):
    file_id = upload(client).json()["file"]["id"]

    denied = client.get(f"/api/files/{file_id}/download", headers={"X-User-Id": "mallory"})
    assert denied.status_code == 403
    assert denied.json()["error"] == "access_denied"
    assert client.get(f"/api/files/{file_id}", headers={"X-User-Id": "mallory"}).status_code == 403

    probe = client.get(f"/api/files/{file_id}/access", params={"op": "download"}, headers={"X-User-Id": "alice"})
    assert probe.json()["allowed"] is True


def test_unknown_file_is_404(client):
    response = client.get(f"/api/files/{uuid.uuid4()}", headers={"X-User-Id": "alice"})
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_invalid_visibility_is_400(client):
    response = upload(client, visibility="everyone")
    assert response.status_code == 400
    assert response.json()["error"] == "validation_error"


def test_link_download_with_secret(client, notifier):
    response = upload(client, visibility="link-limited", max_downloads=1, recipients="bob@example.com")
    body = response.json()
    token, secret = body["linkToken"], body["decryptionSecret"]
    assert body["link"].endswith(f"/download/{token}")
    assert body["notified"] == ["bob@example.com"]

    details = client.get(f"/api/files/link/{token}", headers={"X-Decryption-Secret": secret})
    assert details.status_code == 200
    assert details.json()["requiresSecret"] is True

    assert client.get(f"/api/files/link/{token}/download").status_code == 403

    ok = client.get(f"/api/files/link/{token}/download", headers={"X-Decryption-Secret": secret})
    assert ok.status_code == 200
    assert ok.content == PAYLOAD

    again = client.get(f"/api/files/link/{token}/download", params={"secret": secret})
    assert again.status_code == 410


def test_sharing_routes(client):
    file_id = upload(client).json()["file"]["id"]

    shared = client.post(
        f"/api/files/{file_id}/share",
        json={"granteeId": "bob", "permission": "download"},
        headers={"X-User-Id": "alice"},
    )
    assert shared.status_code == 200
    assert shared.json()["file"]["visibility"] == "shared"

    listing = client.get("/api/files", headers={"X-User-Id": "bob"}).json()
    assert [f["id"] for f in listing["sharedFiles"]] == [file_id]

    assert client.get(f"/api/files/{file_id}/download", headers={"X-User-Id": "bob"}).status_code == 200

    revoked = client.delete(f"/api/files/{file_id}/share/bob", headers={"X-User-Id": "alice"})
    assert revoked.status_code == 200
    assert client.get(f"/api/files/{file_id}/download", headers={"X-User-Id": "bob"}).status_code == 403

    updated = client.put(
        f"/api/files/{file_id}/sharing",
        json={"visibility": "link-limited", "description": "for the auditors"},
        headers={"X-User-Id": "alice"},
    )
    assert updated.status_code == 200
    link = updated.json()["link"]
    assert link["linkToken"]

    reissued = client.post(f"/api/files/{file_id}/link", headers={"X-User-Id": "alice"}).json()
    assert client.get(f"/api/files/link/{link['linkToken']}/download").status_code == 404
    assert client.get(f"/api/files/link/{reissued['linkToken']}/download").status_code == 200


def test_upload_with_share_list(client, notifier):
    response = upload(
        client,
        visibility="shared",
        share_list='[{"granteeId": "bob", "permission": "view"}]',
    )
    assert response.status_code == 201
    assert response.json()["notified"] == ["bob"]
    assert [n.recipient for n in notifier.notices] == ["bob"]


def test_public_listing(client):
    upload(client, name="open.pdf", visibility="public")
    upload(client, name="link.pdf", visibility="link-limited")

    files = client.get("/api/files/public").json()["files"]
    assert [f["originalName"] for f in files] == ["open.pdf"]


def test_delete_is_idempotent(client):
    file_id = upload(client).json()["file"]["id"]

    assert client.delete(f"/api/files/{file_id}", headers={"X-User-Id": "mallory"}).status_code == 403
    for _ in range(2):
        response = client.delete(f"/api/files/{file_id}", headers={"X-User-Id": "alice"})
        assert response.status_code == 200
        assert response.json()["deleted"] is True
    assert client.get(f"/api/files/{file_id}", headers={"X-User-Id": "alice"}).status_code == 404
