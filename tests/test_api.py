"""
Tests for Book Press API endpoints.

Tests cover:
- Health check
- Configuration defaults
- Synchronous conversion, cover compilation and imposition
- Job management (create, list, get, status, cancel)
- PDF download
- Image uploads
- Template listing and cover variables
"""

import time
from io import BytesIO

import pytest


def wait_for_job(client, job_id, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        status = client.get(f"/jobs/{job_id}/status").json()
        if status["status"] in ("completed", "failed"):
            return status
        time.sleep(0.02)
    raise AssertionError(f"Job {job_id} never finished")


@pytest.fixture
def payload(manuscript):
    """A conversion request as the frontend sends it."""
    return {
        "content": manuscript,
        "template": {
            "layout": "Garamond-a5",
            "metadata": {"titre": "Le Voyage", "auteur": "Jeanne"},
            "booleanOptions": {"showtoc": False},
        },
        "conversionMethod": "pandoc_direct",
    }


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestConfigDefaults:
    """Tests for the /config/defaults endpoint."""

    def test_get_config_defaults(self, client):
        """Should return configuration metadata."""
        response = client.get("/config/defaults")
        assert response.status_code == 200

        data = response.json()
        assert data["conversion_methods"] == ["pandoc_direct", "obsidian_export"]
        assert data["template_kinds"] == ["layout", "cover", "impose"]
        assert "titre" in data["metadata_fields"]
        assert "defaults" in data


class TestConvert:
    """Tests for the /convert endpoint."""

    def test_convert_returns_published_pdf(self, client, payload):
        response = client.post("/convert", json=payload)
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "success"
        assert data["pdf_url"] == f"http://press.test/api/pdf/{data['document_id']}"
        assert data["metadata"]["titre"] == "Le Voyage"
        assert data["template"]["layout"] == "Garamond-a5"
        assert "totalPages" not in data

    def test_empty_content_is_rejected(self, client, payload):
        payload["content"] = "   "
        response = client.post("/convert", json=payload)

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "validation_error"

    def test_unknown_layout_is_not_found(self, client, payload):
        payload["template"]["layout"] = "Inconnu"
        response = client.post("/convert", json=payload)

        assert response.status_code == 404
        detail = response.json()["detail"]
        assert detail["code"] == "resolution_error"
        assert detail["kind"] == "layout"

    def test_compile_failure_reports_the_command(self, client, toolchain, payload):
        toolchain.failures["xelatex"] = 2
        response = client.post("/convert", json=payload)

        assert response.status_code == 502
        detail = response.json()["detail"]
        assert detail["code"] == "dispatch_error"
        assert "xelatex" in detail["command"]


class TestImposeAndCover:
    """Tests for the /impose and /compile-cover endpoints."""

    def test_impose_reports_pagination(self, client, payload):
        payload["template"]["impose"] = "A5-4signature"
        response = client.post("/impose", json=payload)
        assert response.status_code == 200

        data = response.json()
        assert data["document_id"].startswith("impose_")
        assert data["totalPages"] == 10
        assert data["targetPages"] == 12
        assert data["pagesPerUnit"] == 4
        assert data["paperThickness"] == pytest.approx(0.1)

    def test_impose_requires_an_imposition_template(self, client, payload):
        response = client.post("/impose", json=payload)
        assert response.status_code == 400

    def test_compile_cover(self, client):
        response = client.post(
            "/compile-cover",
            json={"template": {"cover": "Garamond-a5", "metadata": {"titre": "Le Voyage"}}},
        )
        assert response.status_code == 200
        assert response.json()["pdf_url"].endswith("-cover")

    def test_compile_cover_requires_a_cover(self, client):
        response = client.post("/compile-cover", json={"template": {}})
        assert response.status_code == 400


class TestJobManagement:
    """Tests for job management endpoints."""

    def test_list_jobs_empty(self, client):
        """Listing jobs should work even when empty."""
        response = client.get("/jobs")
        assert response.status_code == 200
        assert response.json() == []

    def test_create_job_runs_in_background(self, client, payload):
        response = client.post("/jobs", json={**payload, "kind": "convert"})
        assert response.status_code == 202

        summary = response.json()
        assert summary["status"] == "pending"
        assert summary["label"].startswith("le-voyage-")

        status = wait_for_job(client, summary["id"])
        assert status["status"] == "completed"
        assert status["build_state"] == "published"
        assert status["error"] is None

        detail = client.get(f"/jobs/{summary['id']}").json()
        assert detail["pdf_url"] == status["pdf_url"]
        assert detail["request"]["template"]["booleanOptions"] == {"showtoc": False}
        assert [job["id"] for job in client.get("/jobs").json()] == [summary["id"]]

    def test_failed_job_status_carries_the_error(self, client, toolchain, payload):
        toolchain.failures["pandoc"] = 1
        job_id = client.post("/jobs", json=payload).json()["id"]

        status = wait_for_job(client, job_id)
        assert status["status"] == "failed"
        assert status["error"]["code"] == "dispatch_error"

    def test_get_nonexistent_job(self, client):
        """Getting a nonexistent job should return 404."""
        response = client.get("/jobs/nonexistent-job-id")
        assert response.status_code == 404

    def test_job_status_nonexistent(self, client):
        """Getting status of nonexistent job should return 404."""
        response = client.get("/jobs/nonexistent-job-id/status")
        assert response.status_code == 404

    def test_cancel_nonexistent_job(self, client):
        response = client.post("/jobs/nonexistent-job-id/cancel")
        assert response.status_code == 404

    def test_cancel_finished_job(self, client, payload):
        job_id = client.post("/jobs", json=payload).json()["id"]
        wait_for_job(client, job_id)

        response = client.post(f"/jobs/{job_id}/cancel")
        assert response.status_code == 200
        assert response.json() == {"cancelled": False}


class TestDownload:
    """Tests for the PDF download endpoints."""

    def test_download_published_pdf(self, client, payload):
        document_id = client.post("/convert", json=payload).json()["document_id"]

        for prefix in ("/api/pdf", "/pdf"):
            response = client.get(f"{prefix}/{document_id}")
            assert response.status_code == 200
            assert response.headers["content-type"] == "application/pdf"
            assert response.content.startswith(b"%PDF")

    def test_download_missing_pdf(self, client):
        response = client.get("/api/pdf/doc_missing")
        assert response.status_code == 404

    def test_download_rejects_unsafe_identifier(self, client):
        response = client.get("/pdf/doc..missing")
        assert response.status_code == 400


class TestUploads:
    """Tests for the /uploads/images endpoint."""

    def test_upload_image(self, client, press_config):
        response = client.post(
            "/uploads/images",
            files={"image": ("carte.png", BytesIO(b"png bytes"), "image/png")},
            headers={"X-Session-Id": "session-42"},
        )
        assert response.status_code == 201

        data = response.json()
        assert data["filename"] == "carte.png"
        assert data["session_id"] == "session-42"
        assert (press_config.uploads_root / data["stored_name"]).read_bytes() == b"png bytes"

    def test_upload_rejects_non_images(self, client):
        response = client.post(
            "/uploads/images",
            files={"image": ("notes.txt", BytesIO(b"text"), "text/plain")},
        )
        assert response.status_code == 400
        assert "Unsupported image type" in response.json()["detail"]["message"]

    def test_uploaded_image_reaches_the_build(self, client, press_config, payload):
        client.post(
            "/uploads/images",
            files={"image": ("carte.png", BytesIO(b"png bytes"), "image/png")},
            headers={"X-Session-Id": "session-42"},
        )

        response = client.post("/convert", json=payload, headers={"X-Session-Id": "session-42"})
        assert response.status_code == 200

        images = press_config.workspace_root / response.json()["document_id"] / "images"
        assert (images / "carte.png").read_bytes() == b"png bytes"


class TestTemplates:
    """Tests for template listing and cover variables."""

    def test_list_templates(self, client):
        response = client.get("/templates")
        assert response.status_code == 200

        data = response.json()
        assert [template["name"] for template in data["layouts"]] == ["Garamond-a5-layout"]
        assert [template["name"] for template in data["imposes"]] == ["A5-4signature", "A5-4spread"]

    def test_list_templates_rejects_unsafe_user(self, client):
        response = client.get("/templates", params={"user_id": "../admin"})
        assert response.status_code == 400

    def test_cover_variables(self, client):
        response = client.get("/cover-variables/Garamond-a5")
        assert response.status_code == 200
        assert response.json()["cover"] == "Garamond-a5-cover-A4"

    def test_cover_variables_unknown_cover(self, client):
        response = client.get("/cover-variables/Inconnu")
        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "cover"


class TestCORS:
    """Tests for CORS configuration."""

    def test_cors_preflight(self, client):
        response = client.options(
            "/healthz",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "GET",
            },
        )
        assert response.status_code == 200
        assert "access-control-allow-origin" in response.headers
