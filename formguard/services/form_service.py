"""Form lookup and creation."""

import secrets
from typing import Any

from sqlalchemy.orm import Session

from formguard.core.config import settings
from formguard.db.models import Form
from formguard.schemas.forms import FieldSpec, FormSchema


def parse_schema(schema_json: dict[str, Any] | list[Any]) -> FormSchema:
    # Older configs store the bare field list
    if isinstance(schema_json, list):
        schema_json = {"fields": schema_json}
    return FormSchema.model_validate(schema_json)


def get_form(db: Session, form_id: str) -> Form | None:
    form = db.get(Form, form_id)
    if not form or not form.is_active:
        return None
    return form


def get_form_by_share_link(db: Session, share_link: str) -> Form | None:
    return (
        db.query(Form)
        .filter(Form.share_link == share_link, Form.is_active.is_(True))
        .first()
    )


def create_form(
    db: Session,
    title: str,
    fields: list[dict[str, Any]],
    description: str | None = None,
    form_settings: dict[str, Any] | None = None,
) -> Form:
    """Validate the field list and persist a new active form."""
    schema = parse_schema({"fields": fields})
    form = Form(
        title=title,
        description=description,
        schema_json=schema.model_dump(mode="json", by_alias=True, exclude_none=True),
        settings_json=form_settings or {},
        share_link=secrets.token_urlsafe(16),
    )
    db.add(form)
    db.flush()
    return form


def success_message(form: Form) -> str:
    return (form.settings_json or {}).get("success_message") or settings.SUCCESS_MESSAGE


def max_file_size_bytes(form: Form, field: FieldSpec | None = None) -> int:
    """Per-field maxSizeMB, then the form's setting, then the global default."""
    if field is not None and field.max_size_mb:
        return int(field.max_size_mb * 1024 * 1024)
    form_mb = (form.settings_json or {}).get("max_file_size_mb")
    if form_mb:
        return int(float(form_mb) * 1024 * 1024)
    return settings.default_max_file_size_bytes
