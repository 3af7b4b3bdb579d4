from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import NotFoundError, RemoteApiError, SizeValidationError, TransientRemoteError


class ApiError(BaseModel):
    """Structured failure returned by the client instead of raising."""

    model_config = ConfigDict(frozen=True)

    code: int = 0
    message: str = ""

    @property
    def transient(self) -> bool:
        return self.code == 0 or self.code >= 500

    def to_exception(self) -> RemoteApiError:
        if self.transient:
            return TransientRemoteError(self.code, self.message)
        if self.code == 404:
            return NotFoundError(self.code, self.message)
        return RemoteApiError(self.code, self.message)

    def raise_for_error(self):
        raise self.to_exception()


class _ApiModel(BaseModel):
    # Imageshop answers with PascalCase keys; unknown fields are ignored.
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")


class Rendition(_ApiModel):
    version_name: str = Field(default="", alias="VersionName")
    is_original: bool = Field(default=False, alias="IsOriginal")
    width: int = Field(default=0, alias="Width")
    height: int = Field(default=0, alias="Height")
    path: str = Field(default="", alias="SubDocumentPath")
    file_size: int = Field(default=0, alias="FileSize")

    @field_validator("width", "height", "file_size", mode="before")
    @classmethod
    def _none_as_zero(cls, value):
        return 0 if value in (None, "") else value

    @field_validator("version_name", "path", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return "" if value is None else value

    @field_validator("is_original", mode="before")
    @classmethod
    def _none_as_false(cls, value):
        return False if value is None else value

    @property
    def has_dimensions(self) -> bool:
        return self.width > 0 and self.height > 0

    def with_dimensions(self, width: int, height: int) -> "Rendition":
        return self.model_copy(update={"width": int(width), "height": int(height)})


class DocumentInterface(_ApiModel):
    id: int = Field(default=0, alias="InterfaceID")
    name: str = Field(default="", alias="InterfaceName")


class Document(_ApiModel):
    id: int = Field(alias="DocumentID")
    name: str = Field(default="", alias="Name")
    description: str = Field(default="", alias="Description")
    credits: str = Field(default="", alias="Credits")
    rights: str = Field(default="", alias="Rights")
    tags: list[str] = Field(default_factory=list, alias="Tags")
    language: str = Field(default="", alias="Language")
    created_at: str = Field(default="", alias="Created")
    file_name: str = Field(default="", alias="FileName")
    code: str = Field(default="", alias="Code")
    is_image: bool = Field(default=False, alias="IsImage")
    is_video: bool = Field(default=False, alias="IsVideo")
    renditions: list[Rendition] = Field(default_factory=list, alias="SubDocumentList")
    interfaces: list[DocumentInterface] = Field(default_factory=list, alias="InterfaceList")

    @field_validator("tags", mode="before")
    @classmethod
    def _split_tags(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [t.strip() for t in value.split(",") if t.strip()]
        return value

    @field_validator(
        "name", "description", "credits", "rights", "language", "created_at", "file_name", "code",
        mode="before",
    )
    @classmethod
    def _none_as_empty(cls, value):
        return "" if value is None else value

    @field_validator("renditions", "interfaces", mode="before")
    @classmethod
    def _none_as_list(cls, value):
        return [] if value is None else value

    @field_validator("is_image", "is_video", mode="before")
    @classmethod
    def _none_as_false(cls, value):
        return False if value is None else value

    def original(self) -> Optional[Rendition]:
        flagged: Optional[Rendition] = None
        fallbacks: list[Rendition] = []
        for rendition in self.renditions:
            # The version name of an original is not consistent, but generally prefixed with "Original".
            if rendition.version_name.lower().startswith("original"):
                fallbacks.append(rendition)
            if rendition.is_original:
                flagged = rendition
        if flagged is not None:
            return flagged
        return fallbacks[0] if fallbacks else None

    @property
    def interface_name(self) -> str:
        return self.interfaces[0].name if self.interfaces else ""


class SearchResult(BaseModel):
    documents: list[Document] = Field(default_factory=list)
    total_count: int = 0

    @classmethod
    def from_api(cls, payload: dict[str, Any]) -> "SearchResult":
        docs_raw = payload.get("DocumentList") or []
        documents = [Document.model_validate(d) for d in docs_raw if isinstance(d, dict) and d.get("DocumentID")]
        total = payload.get("NumberOfDocuments")
        return cls(documents=documents, total_count=int(total or 0))


class ResolvedSize(BaseModel):
    width: int
    height: int
    url: str
    file: str = ""

    @property
    def is_empty(self) -> bool:
        return self.width == 0 and self.height == 0


class MediaDetails(BaseModel):
    sizes: dict[str, ResolvedSize] = Field(default_factory=dict)
    width: int = 0
    height: int = 0
    file: str = ""
    caption: Optional[str] = None
    credits: str = ""


class SizeSpec(BaseModel):
    """A requested target: a named size, a literal box, or the original."""

    model_config = ConfigDict(frozen=True)

    width: int = 0
    height: int = 0
    crop: bool = False
    slug: Optional[str] = None
    is_original: bool = False

    @classmethod
    def box(cls, width: int, height: int, crop: bool = False, slug: Optional[str] = None) -> "SizeSpec":
        return cls(width=int(width), height=int(height), crop=bool(crop), slug=slug)

    @classmethod
    def original(cls) -> "SizeSpec":
        return cls(slug="original", is_original=True)

    @classmethod
    def named(cls, slug: str, table: dict) -> Optional["SizeSpec"]:
        if slug in ("original", "full"):
            return cls.original()
        size = table.get(slug)
        if size is None:
            return None
        return cls.box(size.width, size.height, size.crop, slug=slug)

    @classmethod
    def parse(cls, value: str, table: dict) -> "SizeSpec":
        """Parse ``original``, a registered slug, or ``WxH`` with an optional ``c`` crop suffix."""
        raw = (value or "").strip()
        if not raw:
            raise SizeValidationError("size_missing")
        named = cls.named(raw, table)
        if named is not None:
            return named
        match = re.fullmatch(r"(\d+)x(\d+)(c?)", raw)
        if not match:
            raise SizeValidationError(f"size_unknown: {raw}")
        width, height = int(match.group(1)), int(match.group(2))
        if width == 0 and height == 0:
            raise SizeValidationError("size_zero_box: width and height cannot both be 0")
        return cls.box(width, height, crop=bool(match.group(3)))


class Attachment(BaseModel):
    local_id: int
    title: str = ""
    file_path: str = ""
    mime_type: str = ""
    created_at: str = ""
    remote_document_id: Optional[int] = None

    @property
    def file_name(self) -> str:
        return Path(self.file_path).name if self.file_path else self.title


class ImageSource(BaseModel):
    """What a rendering caller receives for one size request."""

    url: str
    width: int
    height: int
    is_intermediate: bool = True
