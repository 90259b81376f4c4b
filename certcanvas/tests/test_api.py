import io

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from certcanvas.app.main import create_app
from certcanvas.app.render.pdf import PdfEncodeError
from certcanvas.tests.fixtures.design_factory import (
    image,
    make_pipeline,
    make_settings,
    png_bytes,
    rect,
    text,
)

ALICE = {"X-User-Id": "user-alice"}
MALLORY = {"X-User-Id": "user-mallory"}


@pytest.fixture
def client():
    with TestClient(create_app(make_settings())) as test_client:
        yield test_client


def _canvas_with_design(client) -> str:
    response = client.post("/canvases", headers=ALICE)
    assert response.status_code == 201
    session_id = response.json()["session_id"]

    for element in (rect(), text()):
        response = client.post(
            f"/canvases/{session_id}/elements",
            json=element.model_dump(mode="json"),
            headers=ALICE,
        )
        assert response.status_code == 201
    return session_id


def _save_and_verify(client, session_id: str) -> dict:
    save = client.post(
        f"/canvases/{session_id}/save", json={"title": "Cert A"}, headers=ALICE
    ).json()
    response = client.post(
        f"/canvases/{session_id}/verify",
        json={
            "save_id": save["save_id"],
            "author_name": "Jane Doe",
            "authorized_date": "2024-01-01",
        },
        headers=ALICE,
    )
    assert response.status_code == 200
    return response.json()


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["pipeline_ready"] is True


def test_identity_header_is_required(client):
    response = client.post("/canvases")

    assert response.status_code == 401
    assert response.json()["kind"] == "unauthenticated"
    assert response.json()["message"]


def test_new_canvas_uses_default_size(client):
    body = client.post("/canvases", headers=ALICE).json()

    assert body["design"]["width"] == 800
    assert body["design"]["height"] == 600
    assert body["status"]["state"] == "editing"
    assert body["status"]["can_export"] is False


def test_full_pipeline_over_http(client):
    session_id = _canvas_with_design(client)
    verification = _save_and_verify(client, session_id)

    status = client.get(f"/canvases/{session_id}/status", headers=ALICE).json()
    assert status["can_export"] is True
    assert status["verification_url"].endswith(verification["verification_id"])

    response = client.post(
        f"/canvases/{session_id}/export", params={"format": "pdf"}, headers=ALICE
    )
    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.headers["x-verification-url"] == status["verification_url"]
    assert response.headers["x-content-hash"].startswith("SHA-256:")
    assert "attachment" in response.headers["content-disposition"]
    assert response.content.startswith(b"%PDF")

    exports = client.get(f"/canvases/{session_id}/exports", headers=ALICE).json()
    assert [e["format"] for e in exports] == ["pdf"]

    public = client.get(f"/verify/{verification['verification_id']}").json()
    assert public["valid"] is True
    assert public["certificate"]["title"] == "Cert A"
    assert public["certificate"]["author_name"] == "Jane Doe"


def test_export_before_verify_is_conflict(client):
    session_id = _canvas_with_design(client)
    client.post(f"/canvases/{session_id}/save", json={"title": "Cert A"}, headers=ALICE)

    response = client.post(f"/canvases/{session_id}/export", headers=ALICE)

    assert response.status_code == 409
    assert response.json()["kind"] == "export_not_allowed"
    assert response.json()["reason"] == "not_verified"


def test_edit_after_verify_closes_export_gate(client):
    session_id = _canvas_with_design(client)
    _save_and_verify(client, session_id)

    client.patch(
        f"/canvases/{session_id}/elements/frame", json={"x": 40, "y": 40}, headers=ALICE
    )
    response = client.post(
        f"/canvases/{session_id}/export", params={"format": "png"}, headers=ALICE
    )

    assert response.status_code == 409
    assert response.json()["reason"] == "not_saved"


def test_verify_stale_save_is_conflict(client):
    session_id = _canvas_with_design(client)
    save = client.post(
        f"/canvases/{session_id}/save", json={"title": "Cert A"}, headers=ALICE
    ).json()
    client.delete(f"/canvases/{session_id}/elements/heading", headers=ALICE)

    response = client.post(
        f"/canvases/{session_id}/verify",
        json={
            "save_id": save["save_id"],
            "author_name": "Jane Doe",
            "authorized_date": "2024-01-01",
        },
        headers=ALICE,
    )

    assert response.status_code == 409
    assert response.json()["kind"] == "stale_save"


def test_invalid_element_is_unprocessable(client):
    session_id = client.post("/canvases", headers=ALICE).json()["session_id"]

    response = client.post(
        f"/canvases/{session_id}/elements",
        json={"kind": "shape", "shape": "rect", "x": 0, "y": 0, "width": -1, "height": 5},
        headers=ALICE,
    )

    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"
    assert response.json()["errors"]


def test_malformed_save_body_uses_error_envelope(client):
    session_id = _canvas_with_design(client)

    response = client.post(f"/canvases/{session_id}/save", json={}, headers=ALICE)

    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"


def test_other_users_cannot_touch_a_canvas(client):
    session_id = _canvas_with_design(client)

    assert client.get(f"/canvases/{session_id}", headers=MALLORY).status_code == 403
    response = client.post(
        f"/canvases/{session_id}/save", json={"title": "Mine"}, headers=MALLORY
    )
    assert response.status_code == 403
    assert response.json()["kind"] == "forbidden"


def test_unknown_canvas_is_not_found(client):
    response = client.get("/canvases/does-not-exist", headers=ALICE)

    assert response.status_code == 404
    assert response.json()["kind"] == "not_found"


def test_reload_discards_unsaved_edits(client):
    session_id = _canvas_with_design(client)
    client.post(f"/canvases/{session_id}/save", json={"title": "Cert A"}, headers=ALICE)
    client.delete(f"/canvases/{session_id}/elements/heading", headers=ALICE)

    body = client.post(f"/canvases/{session_id}/reload", headers=ALICE).json()

    assert [e["element_id"] for e in body["design"]["elements"]] == ["frame", "heading"]
    assert body["status"]["state"] == "saved"


def test_list_only_shows_callers_canvases(client):
    _canvas_with_design(client)
    client.post("/canvases", headers=MALLORY)

    listed = client.get("/canvases", headers=ALICE).json()

    assert len(listed) == 1
    assert listed[0]["elements"] == 2


def test_unknown_verification_id_is_reported_invalid(client):
    response = client.get("/verify/cert-nope")

    assert response.status_code == 200
    assert response.json()["valid"] is False


def test_out_of_range_coordinates_are_unprocessable(client):
    session_id = client.post("/canvases", headers=ALICE).json()["session_id"]

    response = client.post(
        f"/canvases/{session_id}/elements",
        json=rect(x=20).model_dump(mode="json") | {"x": 1e308},
        headers=ALICE,
    )

    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"


def test_export_failure_uses_error_envelope(client):
    class BrokenPdfEncoder:
        format = "pdf"
        media_type = "application/pdf"
        extension = "pdf"

        def encode(self, job):
            raise PdfEncodeError("Failed to assemble PDF artifact: broken")

    client.app.state.pipeline = make_pipeline(
        settings=client.app.state.settings,
        encoders={"pdf": BrokenPdfEncoder()},
    )
    session_id = _canvas_with_design(client)
    _save_and_verify(client, session_id)

    response = client.post(
        f"/canvases/{session_id}/export", params={"format": "pdf"}, headers=ALICE
    )

    assert response.status_code == 500
    assert response.json()["kind"] == "export_failed"


def test_delete_canvas_keeps_verification_link(client):
    session_id = _canvas_with_design(client)
    verification = _save_and_verify(client, session_id)

    response = client.delete(f"/canvases/{session_id}", headers=MALLORY)
    assert response.status_code == 403

    response = client.delete(f"/canvases/{session_id}", headers=ALICE)
    assert response.status_code == 204

    assert client.get(f"/canvases/{session_id}", headers=ALICE).status_code == 404
    assert client.get("/canvases", headers=ALICE).json() == []
    assert client.delete(f"/canvases/{session_id}", headers=ALICE).status_code == 404

    public = client.get(f"/verify/{verification['verification_id']}").json()
    assert public["valid"] is True


def test_saved_canvases_are_listed_after_restart(tmp_path):
    settings = make_settings(storage_backend="filesystem", storage_dir=tmp_path)

    with TestClient(create_app(settings)) as first:
        session_id = _canvas_with_design(first)
        _save_and_verify(first, session_id)
        first.post("/canvases", headers=ALICE)

    with TestClient(create_app(settings)) as second:
        listed = second.get("/canvases", headers=ALICE).json()

    assert [item["session_id"] for item in listed] == [session_id]
    assert listed[0]["status"]["state"] == "verified"
    assert listed[0]["elements"] == 2


def test_asset_upload_is_usable_in_export(client):
    response = client.post(
        "/assets",
        files={"file": ("logo.png", png_bytes(), "image/png")},
        headers=ALICE,
    )
    assert response.status_code == 201
    image_ref = response.json()["image_ref"]

    listed = client.get("/assets", headers=ALICE).json()
    assert [a["image_ref"] for a in listed] == [image_ref]
    assert client.get("/assets", headers=MALLORY).json() == []

    download = client.get(f"/assets/{image_ref}", headers=ALICE)
    assert download.status_code == 200
    assert download.headers["content-type"] == "image/png"
    assert download.content == png_bytes()
    assert client.get(f"/assets/{image_ref}", headers=MALLORY).status_code == 403

    session_id = _canvas_with_design(client)
    client.post(
        f"/canvases/{session_id}/elements",
        json=image(image_ref=image_ref).model_dump(mode="json"),
        headers=ALICE,
    )
    _save_and_verify(client, session_id)
    exported = client.post(
        f"/canvases/{session_id}/export", params={"format": "png"}, headers=ALICE
    )
    img = Image.open(io.BytesIO(exported.content)).convert("RGB")
    assert img.getpixel((430 * 2, 460 * 2)) == (29, 78, 216)

    assert client.delete(f"/assets/{image_ref}", headers=ALICE).status_code == 204
    assert client.get(f"/assets/{image_ref}", headers=ALICE).status_code == 404


def test_asset_upload_rejects_non_images(client):
    response = client.post(
        "/assets",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=ALICE,
    )

    assert response.status_code == 422
    assert response.json()["errors"][0]["field"] == "file"


def test_asset_upload_requires_identity(client):
    response = client.post(
        "/assets", files={"file": ("logo.png", png_bytes(), "image/png")}
    )

    assert response.status_code == 401
    assert response.json()["kind"] == "unauthenticated"
