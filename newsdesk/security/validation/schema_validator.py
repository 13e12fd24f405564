"""
Payload validation for editorial input.

Pydantic models describe the accepted shape of articles, searches and
upload metadata; free-text fields are sanitized as they validate. Failures
are raised as `InputValidationError` / `UploadError`, which the error
middleware renders as 400 envelopes and records as security events.
"""

from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Literal, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel, Field, ValidationError, field_validator

from newsdesk.security.validation.input_sanitizer import (
    contains_suspicious_patterns,
    sanitize_filename,
    sanitize_text,
)
from newsdesk.utils.error_handler import InputValidationError, UploadError
from newsdesk.utils.logger import get_logger

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

MAX_CONTENT_CHARS = 100_000
MAX_UPLOAD_BYTES = 10 * 1024 * 1024

TAG_PATTERN = re.compile(r"^[A-Za-z0-9-]{1,30}$")
SEARCH_PATTERN = re.compile(r"^[A-Za-z0-9\s\-_'\"]+$")
BLOCKED_EXTENSIONS = re.compile(
    r"\.(exe|bat|cmd|scr|pif|com|dll|vbs|js|jar|php|asp|jsp)$", re.IGNORECASE
)

ALLOWED_UPLOAD_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "application/pdf",
        "text/plain",
        "text/csv",
    }
)

MAGIC_NUMBERS: Dict[str, Tuple[bytes, ...]] = {
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/png": (b"\x89PNG",),
    "image/gif": (b"GIF87a", b"GIF89a"),
    "application/pdf": (b"%PDF",),
}

ArticleStatus = Literal["draft", "published", "archived"]


class ArticleCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    content: Dict[str, Any]
    excerpt: Optional[str] = Field(default=None, max_length=300)
    tags: List[str] = Field(default_factory=list, max_length=10)
    status: ArticleStatus = "draft"

    @field_validator("title")
    @classmethod
    def _clean_title(cls, value: str) -> str:
        cleaned = sanitize_text(value, max_length=200)
        if not cleaned:
            raise ValueError("Title required")
        return cleaned

    @field_validator("excerpt")
    @classmethod
    def _clean_excerpt(cls, value: Optional[str]) -> Optional[str]:
        return sanitize_text(value, max_length=300) or None

    @field_validator("content")
    @classmethod
    def _check_document(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        if value.get("type") != "doc" or not isinstance(value.get("content"), list):
            raise ValueError("Content must be a document")
        if len(json.dumps(value)) > MAX_CONTENT_CHARS:
            raise ValueError("Content too large")
        return value

    @field_validator("tags")
    @classmethod
    def _check_tags(cls, value: List[str]) -> List[str]:
        for tag in value:
            if not TAG_PATTERN.match(tag):
                raise ValueError("Tags may only contain letters, digits and dashes")
        return value


class SearchQuery(BaseModel):
    q: str = Field(min_length=1, max_length=100)
    page: int = Field(default=1, ge=1, le=1000)
    limit: int = Field(default=10, ge=1, le=50)

    @field_validator("q")
    @classmethod
    def _check_query(cls, value: str) -> str:
        if not SEARCH_PATTERN.match(value):
            raise ValueError("Search contains invalid characters")
        return sanitize_text(value, max_length=100)


class FileUpload(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    size: int = Field(gt=0, le=MAX_UPLOAD_BYTES)
    mime_type: str

    @field_validator("filename")
    @classmethod
    def _check_filename(cls, value: str) -> str:
        if BLOCKED_EXTENSIONS.search(value):
            raise ValueError("File type not allowed")
        cleaned = sanitize_filename(value)
        if not cleaned:
            raise ValueError("Filename required")
        return cleaned

    @field_validator("mime_type")
    @classmethod
    def _check_mime_type(cls, value: str) -> str:
        value = value.split(";")[0].strip().lower()
        if value not in ALLOWED_UPLOAD_TYPES:
            raise ValueError("File type not allowed")
        return value


def format_errors(error: ValidationError) -> List[str]:
    messages = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"])
        messages.append(f"{location}: {err['msg']}" if location else err["msg"])
    return messages


def validate_schema(data: Dict[str, Any], model: Type[ModelT]) -> Tuple[bool, Any]:
    try:
        obj = model.model_validate(data)
        return True, obj
    except ValidationError as e:
        return False, format_errors(e)


def validate_payload(data: Any, model: Type[ModelT], *, screen: bool = False) -> ModelT:
    """
    Validate `data` against `model` or raise `InputValidationError`.

    With `screen=True` the serialized payload is also checked against the
    strict suspicious-pattern list before the model runs.
    """
    if screen and contains_suspicious_patterns(json.dumps(data, default=str)):
        logger.warning("payload_screen_rejected", model=model.__name__)
        raise InputValidationError("Input contains potentially malicious content.")

    ok, result = validate_schema(data, model)
    if not ok:
        raise InputValidationError(details={"errors": result})
    return result


def verify_file_content(content: bytes, mime_type: str) -> bool:
    """Check the leading bytes of an upload against its declared type."""
    if mime_type == "image/webp":
        return content[:4] == b"RIFF" and content[8:12] == b"WEBP"
    if mime_type in ("text/plain", "text/csv"):
        if b"\x00" in content:
            return False
        try:
            content.decode("utf-8")
        except UnicodeDecodeError:
            return False
        return True
    signatures = MAGIC_NUMBERS.get(mime_type)
    if not signatures:
        return False
    return any(content.startswith(signature) for signature in signatures)


def validate_upload(filename: str, content: bytes, mime_type: str) -> FileUpload:
    """Validate upload metadata and content; returns the metadata with a safe filename."""
    ok, result = validate_schema(
        {"filename": filename, "size": len(content), "mime_type": mime_type}, FileUpload
    )
    if not ok:
        logger.warning("upload_rejected", reason="metadata", errors=result)
        raise UploadError(details={"errors": result})

    if not verify_file_content(content, result.mime_type):
        logger.warning("upload_rejected", reason="content_mismatch", mime_type=result.mime_type)
        raise UploadError("File content does not match its declared type.")
    return result
