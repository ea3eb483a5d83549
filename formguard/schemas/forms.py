"""Schemas for form definitions and public submission responses."""

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from formguard.db.enums import FieldType


class FieldSpec(BaseModel):
    """One field of a form schema.

    Stored form configs use camelCase keys (``minLength``, ``allowedTypes``,
    ``maxSizeMB``); both spellings are accepted.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str = Field(min_length=1, max_length=100, pattern=r"^[A-Za-z0-9_\-]+$")
    type: FieldType
    label: str = ""
    required: bool = False

    min_length: int | None = Field(default=None, alias="minLength", ge=0)
    max_length: int | None = Field(default=None, alias="maxLength", ge=0)
    pattern: str | None = None
    pattern_error: str | None = Field(default=None, alias="patternError")

    min: float | str | None = None
    max: float | str | None = None
    integer_only: bool = Field(default=False, alias="integerOnly")

    options: list[str] = Field(default_factory=list)

    allowed_types: list[str] = Field(default_factory=list, alias="allowedTypes")
    max_size_mb: float | None = Field(default=None, alias="maxSizeMB", gt=0)

    @field_validator("options", mode="before")
    @classmethod
    def _normalize_options(cls, value):
        # Options may be plain strings or {"label", "value"} objects
        if not value:
            return []
        normalized = []
        for item in value:
            if isinstance(item, dict):
                item = item.get("value", item.get("label"))
            if item is not None:
                normalized.append(str(item))
        return normalized

    @property
    def display_label(self) -> str:
        return self.label or self.id

    @property
    def is_file(self) -> bool:
        return self.type.is_file


class FormSchema(BaseModel):
    fields: list[FieldSpec]

    @model_validator(mode="after")
    def _unique_ids(self):
        seen: set[str] = set()
        for field in self.fields:
            if field.id in seen:
                raise ValueError(f"Duplicate field id: {field.id}")
            seen.add(field.id)
        return self

    @property
    def value_fields(self) -> list[FieldSpec]:
        return [f for f in self.fields if not f.is_file]

    @property
    def file_fields(self) -> list[FieldSpec]:
        return [f for f in self.fields if f.is_file]


class FormPublicRead(BaseModel):
    id: str
    title: str
    description: str | None = None
    fields: list[FieldSpec]


class CsrfTokenResponse(BaseModel):
    csrf_token: str
    field_name: str


class StagedUploadResponse(BaseModel):
    success: bool = True
    temp_id: str
    temp_name: str
    original_name: str
    size: int
    mime: str
    preview_url: str


class SubmissionAcceptedResponse(BaseModel):
    success: bool = True
    submission_id: str
    message: str
    warnings: list[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    success: bool = False
    error: str
    errors: dict[str, str] = Field(default_factory=dict)
