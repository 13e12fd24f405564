import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from newsdesk.security.validation.input_sanitizer import (
    contains_suspicious_patterns,
    sanitize_filename,
    sanitize_object,
    sanitize_text,
    sanitize_url,
)
from newsdesk.security.validation.schema_validator import (
    ArticleCreate,
    SearchQuery,
    validate_payload,
    validate_schema,
    validate_upload,
    verify_file_content,
)
from newsdesk.utils.error_handler import (
    ErrorHandlingMiddleware,
    ErrorResponder,
    InputValidationError,
    UploadError,
)

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16
PDF = b"%PDF-1.7\n%\xe2\xe3\xcf\xd3\n"


def _article(**overrides):
    data = {"title": "Council approves budget", "content": {"type": "doc", "content": []}}
    data.update(overrides)
    return data


class TestSanitizers:
    def test_sanitize_text_escapes_and_strips_control_chars(self):
        cleaned = sanitize_text("  <b>Budget</b>\x00 vote  ")
        assert cleaned == "&lt;b&gt;Budget&lt;/b&gt; vote"
        assert sanitize_text(None) is None
        assert len(sanitize_text("x" * 50, max_length=10)) == 10

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("annual report.pdf", "annual_report.pdf"),
            ("../../etc/passwd", "_._etc_passwd"),
            ("...hidden..", "hidden"),
            ("photo (1).JPG", "photo__1_.JPG"),
        ],
    )
    def test_sanitize_filename(self, raw, expected):
        assert sanitize_filename(raw) == expected

    def test_sanitize_filename_caps_length(self):
        assert len(sanitize_filename("a" * 400 + ".png")) == 255

    def test_sanitize_url_allows_only_http(self):
        assert sanitize_url("https://news.example/story?id=1") == "https://news.example/story?id=1"
        assert sanitize_url("javascript:alert(1)") is None
        assert sanitize_url("ftp://files.example/x") is None
        assert sanitize_url("/relative/path") is None
        assert sanitize_url("http://[::1") is None

    def test_sanitize_object_walks_keys_and_values(self):
        cleaned = sanitize_object({"<k>": ["<i>x</i>", 3, {"n": None}]})
        assert cleaned == {"&lt;k&gt;": ["&lt;i&gt;x&lt;/i&gt;", 3, {"n": None}]}

    def test_sanitize_object_rejects_deep_nesting(self):
        value = "leaf"
        for _ in range(40):
            value = [value]
        with pytest.raises(InputValidationError):
            sanitize_object(value)

    @pytest.mark.parametrize(
        "text",
        [
            "<script>alert(1)</script>",
            "javascript:void(0)",
            '<img onerror="x">',
            "SELECT name FROM users",
            "exec xp_cmdshell",
            "rm -rf / ; echo",
            "$(whoami)",
        ],
    )
    def test_suspicious_patterns_flagged(self, text):
        assert contains_suspicious_patterns(text)

    def test_plain_text_is_not_suspicious(self):
        assert not contains_suspicious_patterns("Council approves the 2025 budget")


class TestSchemas:
    def test_article_is_sanitized(self):
        article = validate_payload(_article(title=" <em>Budget</em> ", excerpt="  "), ArticleCreate)
        assert article.title == "&lt;em&gt;Budget&lt;/em&gt;"
        assert article.excerpt is None
        assert article.status == "draft"

    def test_article_errors_are_listed(self):
        with pytest.raises(InputValidationError) as exc_info:
            validate_payload(
                _article(title="   ", content={"type": "html"}, tags=["ok", "not ok"]), ArticleCreate
            )
        errors = exc_info.value.details["errors"]
        assert {e.split(":")[0] for e in errors} == {"title", "content", "tags"}

    def test_article_content_size_limit(self):
        big = {"type": "doc", "content": [{"text": "x" * 100_001}]}
        ok, errors = validate_schema(_article(content=big), ArticleCreate)
        assert not ok
        assert "Content too large" in errors[0]

    def test_screening_rejects_markup_before_the_model(self):
        with pytest.raises(InputValidationError, match="malicious"):
            validate_payload(_article(title="<script>x</script>"), ArticleCreate, screen=True)

    def test_search_query_coerces_and_bounds(self):
        query = validate_payload({"q": "budget vote", "page": "2"}, SearchQuery)
        assert (query.q, query.page, query.limit) == ("budget vote", 2, 10)

        ok, _ = validate_schema({"q": "budget; drop", "limit": 51}, SearchQuery)
        assert not ok


class TestUploads:
    def test_magic_bytes_must_match_declared_type(self):
        assert verify_file_content(PNG, "image/png")
        assert verify_file_content(PDF, "application/pdf")
        assert verify_file_content(b"RIFF\x00\x00\x00\x00WEBPVP8 ", "image/webp")
        assert verify_file_content(b"name,count\nbudget,3\n", "text/csv")
        assert not verify_file_content(PDF, "image/png")
        assert not verify_file_content(b"MZ\x90\x00", "application/pdf")
        assert not verify_file_content(b"a\x00b", "text/plain")
        assert not verify_file_content(PNG, "application/zip")

    def test_valid_upload_returns_safe_filename(self):
        upload = validate_upload("front page.png", PNG, "image/png; charset=binary")
        assert upload.filename == "front_page.png"
        assert upload.mime_type == "image/png"
        assert upload.size == len(PNG)

    @pytest.mark.parametrize(
        "filename,content,mime_type",
        [
            ("payload.exe", PNG, "image/png"),
            ("notes.png", PNG, "application/x-msdownload"),
            ("empty.png", b"", "image/png"),
            ("...", PNG, "image/png"),
        ],
    )
    def test_bad_metadata_rejected(self, filename, content, mime_type):
        with pytest.raises(UploadError) as exc_info:
            validate_upload(filename, content, mime_type)
        assert exc_info.value.details["errors"]

    def test_disguised_file_rejected(self):
        with pytest.raises(UploadError, match="does not match"):
            validate_upload("invoice.pdf", PNG, "application/pdf")

    def test_rejected_upload_becomes_envelope_and_event(self, monitor):
        app = FastAPI()
        app.add_middleware(ErrorHandlingMiddleware, responder=ErrorResponder(monitor))

        @app.post("/api/upload")
        async def upload(request: Request):
            upload = validate_upload(
                request.headers.get("x-filename", ""),
                await request.body(),
                request.headers.get("content-type", ""),
            )
            return {"filename": upload.filename}

        client = TestClient(app)
        response = client.post(
            "/api/upload",
            content=PNG,
            headers={"content-type": "application/pdf", "x-filename": "invoice.pdf"},
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "UPLOAD_ERROR"
        assert monitor.get_metrics()["events_by_type"]["upload_rejected"] == 1

        response = client.post(
            "/api/upload", content=PNG, headers={"content-type": "image/png", "x-filename": "a.png"}
        )
        assert response.json() == {"filename": "a.png"}
