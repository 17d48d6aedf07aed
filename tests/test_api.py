# -*- coding: utf-8 -*-
"""
Tests for the FastAPI API.
"""
import io
import zipfile

import pytest

from content_platform import __version__
from content_platform.config import settings

PAGE = (
    "<html><head><title>Quiz</title></head><body>"
    "<form><input type='text' name='answer'><button>Submit</button></form>"
    "</body></html>"
)


def _upload_page(client, **data):
    form = {"content_type": "raw_html", "title": "Phishing quiz", "html_content": PAGE}
    form.update(data)
    response = client.post("/api/upload", data=form)
    assert response.status_code == 200, response.text
    return response.json()


def _launch_link(client, content_id, recipient_id="r-1"):
    response = client.post(
        "/api/launch-link",
        json={"recipient_id": recipient_id, "content_id": content_id, "email": "r1@example.com"},
    )
    assert response.status_code == 200, response.text
    return response.json()


def _zip_bytes(members: dict[str, str]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, text in members.items():
            archive.writestr(name, text)
    return buffer.getvalue()


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_returns_status(self, client):
        """Health endpoint should return status and version."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {
            "status": "healthy",
            "version": __version__,
            "database_ready": True,
        }

    def test_request_id_header(self, client):
        """A request ID is generated, or echoed back when supplied."""
        generated = client.get("/health")
        assert generated.headers[settings.REQUEST_ID_HEADER]

        echoed = client.get("/health", headers={settings.REQUEST_ID_HEADER: "abc-123"})
        assert echoed.headers[settings.REQUEST_ID_HEADER] == "abc-123"


class TestUploadEndpoint:
    """Tests for /api/upload."""

    def test_raw_html(self, client, api_services):
        """Markup is annotated, stored and given a preview link."""
        data = _upload_page(client)

        assert data["success"] is True
        assert data["content_type"] == "raw_html"
        assert data["tags"] == ["phishing-awareness"]
        assert data["cues"] == []
        assert data["path"] == f"{data['content_id']}/index.html"
        assert "/launch?tid=" in data["preview_url"]
        assert "persist" in data["steps_applied"]
        assert (api_services.content_dir / data["path"]).exists()

    def test_email_with_attachment(self, client, api_services):
        response = client.post(
            "/api/upload",
            data={
                "content_type": "email",
                "title": "Password expiry",
                "email_html": "<html><body><p>Reset now</p></body></html>",
                "email_subject": "Action required",
                "email_from": "helpdesk@example.com",
            },
            files={"attachment": ("notice.pdf", b"%PDF-1.4", "application/pdf")},
        )

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["tags"] == []
        assert data["cues"] == ["language:urgency-tactic"]
        assert data["difficulty"] == 3
        assert data["attachment_filename"] == "notice.pdf"
        assert data["attachment_size"] == 8
        assert (api_services.content_dir / data["content_id"] / "notice.pdf").exists()

    def test_html_archive(self, client, upload_dir):
        archive = _zip_bytes({"course/index.html": PAGE, "course/app.js": "console.log(1)"})

        response = client.post(
            "/api/upload",
            data={"content_type": "html", "title": "Course"},
            files={"file": ("course.zip", archive, "application/zip")},
        )

        assert response.status_code == 200, response.text
        assert response.json()["path"].endswith("/course/index.html")
        assert list(upload_dir.iterdir()) == []

    def test_archive_without_entry_document(self, client, upload_dir):
        archive = _zip_bytes({"readme.txt": "hello"})

        response = client.post(
            "/api/upload",
            data={"content_type": "html"},
            files={"file": ("site.zip", archive, "application/zip")},
        )

        assert response.status_code == 422
        assert response.json()["error"] == "structural_error"
        assert list(upload_dir.iterdir()) == []

    def test_video(self, client, api_services):
        response = client.post(
            "/api/upload",
            data={"content_type": "video", "title": "Intro"},
            files={"file": ("intro.webm", b"\x1a\x45\xdf\xa3", "video/webm")},
        )

        assert response.status_code == 200, response.text
        data = response.json()
        assert data["path"] == f"{data['content_id']}/video.webm"
        assert (api_services.content_dir / data["path"]).read_bytes() == b"\x1a\x45\xdf\xa3"

    @pytest.mark.parametrize(
        "data, files",
        [
            ({}, None),
            ({"content_type": "pdf"}, None),
            ({"content_type": "raw_html"}, None),
            ({"content_type": "email"}, None),
            ({"content_type": "scorm"}, None),
            ({"content_type": "html"}, {"file": ("site.txt", b"x", "text/plain")}),
            ({"content_type": "video"}, {"file": ("clip.avi", b"RIFF", "video/x-msvideo")}),
        ],
    )
    def test_validation_errors(self, client, upload_dir, data, files):
        """Invalid uploads get a structured 400 and leave nothing staged."""
        response = client.post("/api/upload", data=data, files=files)

        assert response.status_code == 400
        assert response.json() == {"error": "validation_error", "message": "Invalid request"}
        assert list(upload_dir.iterdir()) == []

    def test_annotation_failure(self, client, api_services):
        api_services.pipeline.annotator.fail = True

        response = client.post(
            "/api/upload", data={"content_type": "landing", "html_content": PAGE}
        )

        assert response.status_code == 502
        assert response.json()["error"] == "external_service_error"

    def test_debug_exposes_error_detail(self, client, monkeypatch):
        monkeypatch.setattr(settings, "DEBUG", True)

        response = client.post("/api/upload", data={"content_type": "raw_html"})

        assert response.status_code == 400
        assert response.json()["message"] == "html_content is required"


class TestLaunch:
    """Tests for /api/launch-link and /launch."""

    def test_issue_link(self, client):
        content = _upload_page(client)

        data = _launch_link(client, content["content_id"])

        assert data["launch_url"] == f"{settings.BASE_URL}/launch?tid={data['tracking_link_id']}"
        assert data["content"] == {
            "id": content["content_id"],
            "title": "Phishing quiz",
            "type": "raw_html",
        }

    def test_issue_link_unknown_content(self, client):
        response = client.post(
            "/api/launch-link", json={"recipient_id": "r-1", "content_id": "missing"}
        )
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_launch_redirects_to_content(self, client):
        content = _upload_page(client)
        tid = _launch_link(client, content["content_id"])["tracking_link_id"]

        response = client.get("/launch", params={"tid": tid}, follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"] == f"/content/{content['path']}?tid={tid}"

    def test_launch_unknown_link(self, client):
        response = client.get("/launch", params={"tid": "missing"}, follow_redirects=False)
        assert response.status_code == 404

    def test_launch_requires_tid(self, client):
        response = client.get("/launch", follow_redirects=False)
        assert response.status_code == 400


class TestContentFiles:
    """Tests for the static content route."""

    def test_serves_succeeded_content(self, client):
        content = _upload_page(client)

        response = client.get(f"/content/{content['path']}")

        assert response.status_code == 200
        assert "<script>" in response.text
        assert 'data-tag="phishing-awareness"' in response.text

    def test_processing_content_is_hidden(self, client, api_services):
        content_root = api_services.content_dir / "c-processing"
        content_root.mkdir()
        (content_root / "index.html").write_text("<p>partial</p>")
        client.portal.call(
            api_services.db.insert,
            "content",
            {
                "id": "c-processing",
                "company_id": "acme",
                "title": "In progress",
                "content_type": "raw_html",
                "status": "processing",
            },
        )

        assert client.get("/content/c-processing/index.html").status_code == 404

    def test_unknown_content_directory_is_hidden(self, client, api_services):
        (api_services.content_dir / "stray").mkdir()
        (api_services.content_dir / "stray" / "index.html").write_text("<p>stray</p>")

        assert client.get("/content/stray/index.html").status_code == 404


class TestTrackingEndpoints:
    """Tests for the view, interaction and score endpoints."""

    @pytest.fixture
    def tid(self, client):
        content = _upload_page(client)
        return _launch_link(client, content["content_id"])["tracking_link_id"]

    def test_track_view(self, client, tid):
        response = client.post("/api/track-view", json={"tracking_link_id": tid})
        assert response.status_code == 200
        assert response.json() == {"success": True, "message": "View tracked (viewed)"}

    def test_track_interaction(self, client, tid):
        response = client.post(
            "/api/track-interaction",
            json={
                "tracking_link_id": tid,
                "tag_name": "phishing-awareness",
                "interaction_type": "click",
                "success": True,
            },
        )
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_record_score_publishes(self, client, api_services, tid):
        client.post("/api/track-view", json={"tracking_link_id": tid})

        response = client.post(
            "/api/record-score",
            json={"tracking_link_id": tid, "score": 85, "interactions": [{"tag": "x"}]},
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "score": 85,
            "status": "passed",
            "published": True,
        }
        assert len(api_services.publisher.calls) == 1
        assert api_services.publisher.calls[0]["final_score"] == 85

    def test_record_score_out_of_range(self, client, tid):
        response = client.post("/api/record-score", json={"tracking_link_id": tid, "score": 150})
        assert response.status_code == 400

    def test_publish_failure(self, client, api_services, tid):
        api_services.publisher.fail = True

        response = client.post("/api/record-score", json={"tracking_link_id": tid, "score": 40})

        assert response.status_code == 502
        assert response.json()["error"] == "external_service_error"

    @pytest.mark.parametrize(
        "path, body",
        [
            ("/api/track-view", {"tracking_link_id": "missing"}),
            (
                "/api/track-interaction",
                {"tracking_link_id": "missing", "tag_name": "x", "interaction_type": "click"},
            ),
            ("/api/record-score", {"tracking_link_id": "missing", "score": 50}),
        ],
    )
    def test_unknown_link(self, client, path, body):
        response = client.post(path, json=body)
        assert response.status_code == 404
        assert response.json() == {"error": "not_found", "message": "Resource not found"}

    def test_label_scores_after_pass(self, client, tid):
        client.post("/api/record-score", json={"tracking_link_id": tid, "score": 100})

        response = client.get("/api/recipients/r-1/tag-scores")

        assert response.status_code == 200
        assert response.json() == [
            {
                "recipient_id": "r-1",
                "tag_name": "phishing-awareness",
                "score_count": 1,
                "total_attempts": 1,
            }
        ]


class TestLabelsEndpoint:
    """Tests for /api/content/{content_id}/tags."""

    def test_lists_labels(self, client):
        content = _upload_page(client)

        response = client.get(f"/api/content/{content['content_id']}/tags")

        assert response.status_code == 200
        assert response.json() == [
            {"tag_name": "phishing-awareness", "tag_type": "interaction-tag", "confidence_score": 1.0}
        ]

    def test_unknown_content(self, client):
        response = client.get("/api/content/missing/tags")
        assert response.status_code == 404
