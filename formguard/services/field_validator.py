"""Field validation and sanitization for untrusted submission values.

Every string goes through the same baseline first (NUL bytes stripped, trimmed,
checked against XSS/SQL signatures, HTML-encoded on output), then through the
rule for its field type. Results are returned, not raised.
"""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from datetime import date, time as dt_time
from typing import Any, Callable, Iterable
from urllib.parse import urlparse

from pydantic import EmailStr, TypeAdapter, ValidationError

from formguard.core.security import contains_malicious_pattern
from formguard.db.enums import FieldType
from formguard.schemas.forms import FieldSpec, FormSchema

GENERIC_INVALID_INPUT = "Invalid input detected. Please check your entry and try again."

REASON_MALICIOUS = "malicious_input"
REASON_PATTERN = "pattern_mismatch"

_AADHAR_LENGTH = 12
_PHONE_MIN_DIGITS = 10
_PHONE_MAX_DIGITS = 12
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
# Decimal or exponent notation; no underscores, hex, inf or nan
_NUMBER_RE = re.compile(r"^[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?$")

_email_adapter = TypeAdapter(EmailStr)


@dataclass(frozen=True)
class FieldResult:
    valid: bool
    value: Any = None
    error: str | None = None
    # Machine-readable cause for rejections worth auditing (never the value itself)
    reason: str | None = None

    @classmethod
    def ok(cls, value: Any) -> "FieldResult":
        return cls(valid=True, value=value)

    @classmethod
    def fail(cls, error: str, reason: str | None = None) -> "FieldResult":
        return cls(valid=False, error=error, reason=reason)


@dataclass(frozen=True)
class FlaggedField:
    field_id: str
    field_type: str
    reason: str


@dataclass
class ValidationReport:
    values: dict[str, Any] = field(default_factory=dict)
    errors: dict[str, str] = field(default_factory=dict)
    flagged: list[FlaggedField] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def clean_text(value: Any) -> str:
    """Strip NUL bytes and surrounding whitespace."""
    return str(value).replace("\x00", "").strip()


def encode_html(value: str) -> str:
    return html.escape(value, quote=True)


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple)):
        return all(is_empty(item) for item in value)
    return clean_text(value) == ""


def format_aadhar(digits: str) -> str:
    return f"{digits[0:4]} {digits[4:8]} {digits[8:12]}"


def mask_aadhar(value: str) -> str:
    """Show only the last four digits: ``XXXX XXXX 1234``."""
    digits = re.sub(r"\s+", "", value or "")
    if len(digits) != _AADHAR_LENGTH:
        return "XXXX XXXX XXXX"
    return f"XXXX XXXX {digits[8:]}"


def _format_bound(bound: float) -> str:
    return str(int(bound)) if float(bound).is_integer() else str(bound)


class FieldValidator:
    """Validate raw values against field types and constraints."""

    def __init__(self, disposable_domains: Iterable[str] = ()):
        self.disposable_domains = {d.strip().lower() for d in disposable_domains if d.strip()}
        self._rules: dict[FieldType, Callable[[str, Any, FieldSpec], FieldResult]] = {
            FieldType.TEXT: self._validate_text,
            FieldType.TEXTAREA: self._validate_text,
            FieldType.EMAIL: self._validate_email,
            FieldType.NUMBER: self._validate_number,
            FieldType.AADHAR: self._validate_aadhar,
            FieldType.PHONE: self._validate_phone,
            FieldType.URL: self._validate_url,
            FieldType.DATE: self._validate_date,
            FieldType.TIME: self._validate_time,
            FieldType.SELECT: self._validate_choice,
            FieldType.RADIO: self._validate_choice,
            FieldType.CHECKBOX: self._validate_checkbox,
        }
        missing = {t for t in FieldType if not t.is_file} - set(self._rules)
        if missing:
            raise RuntimeError(f"No validation rule for field types: {sorted(missing)}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def validate(
        self,
        field_type: FieldType | str,
        raw_value: Any,
        constraints: FieldSpec | dict[str, Any] | None = None,
    ) -> FieldResult:
        """Validate one non-empty value. Unknown types raise ValueError."""
        field_type = FieldType(field_type)
        if field_type.is_file:
            raise ValueError(f"{field_type.value} fields are resolved from uploads")
        spec = self._coerce_spec(field_type, constraints)

        if field_type == FieldType.CHECKBOX:
            return self._validate_checkbox("", raw_value, spec)

        if isinstance(raw_value, (list, tuple, dict)):
            return FieldResult.fail(GENERIC_INVALID_INPUT)
        cleaned = clean_text(raw_value)
        if contains_malicious_pattern(cleaned):
            return FieldResult.fail(GENERIC_INVALID_INPUT, REASON_MALICIOUS)
        return self._rules[field_type](cleaned, raw_value, spec)

    def validate_field(self, spec: FieldSpec, raw_value: Any) -> FieldResult:
        """Apply required/optional handling, then type rules."""
        if is_empty(raw_value):
            if spec.required:
                return FieldResult.fail(f"{spec.display_label} is required.")
            return FieldResult.ok([] if spec.type == FieldType.CHECKBOX else None)

        result = self.validate(spec.type, raw_value, spec)
        if (
            result.valid
            and spec.type == FieldType.CHECKBOX
            and spec.required
            and not result.value
        ):
            return FieldResult.fail("Please select at least one option.")
        return result

    def validate_fields(self, schema: FormSchema, raw_values: dict[str, Any]) -> ValidationReport:
        """Validate every non-file field of the schema."""
        report = ValidationReport()
        for spec in schema.value_fields:
            result = self.validate_field(spec, raw_values.get(spec.id))
            if result.valid:
                report.values[spec.id] = result.value
                continue
            report.errors[spec.id] = result.error or GENERIC_INVALID_INPUT
            if result.reason:
                report.flagged.append(FlaggedField(spec.id, spec.type.value, result.reason))
        return report

    # ------------------------------------------------------------------
    # Type rules
    # ------------------------------------------------------------------

    @staticmethod
    def _coerce_spec(field_type: FieldType, constraints) -> FieldSpec:
        if isinstance(constraints, FieldSpec):
            return constraints
        data = dict(constraints or {})
        data.setdefault("id", "value")
        data["type"] = field_type
        return FieldSpec.model_validate(data)

    def _validate_text(self, cleaned: str, raw: Any, spec: FieldSpec) -> FieldResult:
        if spec.min_length is not None and len(cleaned) < spec.min_length:
            return FieldResult.fail(f"Minimum length is {spec.min_length} characters.")
        if spec.max_length is not None and len(cleaned) > spec.max_length:
            return FieldResult.fail(f"Maximum length is {spec.max_length} characters.")
        if spec.pattern:
            try:
                matched = re.fullmatch(spec.pattern, cleaned) is not None
            except re.error:
                matched = False
            if not matched:
                return FieldResult.fail(spec.pattern_error or "Invalid format.", REASON_PATTERN)
        return FieldResult.ok(encode_html(cleaned))

    def _validate_email(self, cleaned: str, raw: Any, spec: FieldSpec) -> FieldResult:
        try:
            address = _email_adapter.validate_python(cleaned)
        except ValidationError:
            return FieldResult.fail("Please enter a valid email address.")
        address = str(address).lower()
        domain = address.rsplit("@", 1)[-1]
        if domain in self.disposable_domains:
            return FieldResult.fail("Temporary email addresses are not allowed.")
        return FieldResult.ok(encode_html(address))

    def _validate_number(self, cleaned: str, raw: Any, spec: FieldSpec) -> FieldResult:
        if isinstance(raw, bool) or not _NUMBER_RE.match(cleaned):
            return FieldResult.fail("Please enter a valid number.")
        try:
            number = float(cleaned)
        except ValueError:
            return FieldResult.fail("Please enter a valid number.")
        if number != number or number in (float("inf"), float("-inf")):
            return FieldResult.fail("Please enter a valid number.")

        minimum = _as_float(spec.min)
        maximum = _as_float(spec.max)
        if minimum is not None and number < minimum:
            return FieldResult.fail(f"Value must be at least {_format_bound(minimum)}.")
        if maximum is not None and number > maximum:
            return FieldResult.fail(f"Value must be no more than {_format_bound(maximum)}.")
        if spec.integer_only:
            if not number.is_integer():
                return FieldResult.fail("Please enter a whole number.")
            return FieldResult.ok(int(number))
        return FieldResult.ok(number)

    def _validate_aadhar(self, cleaned: str, raw: Any, spec: FieldSpec) -> FieldResult:
        digits = re.sub(r"\s+", "", cleaned)
        if not digits.isdigit() or not digits.isascii():
            return FieldResult.fail("Aadhar number must contain only digits.")
        if len(digits) != _AADHAR_LENGTH:
            return FieldResult.fail("Aadhar number must be exactly 12 digits.")
        if len(set(digits)) == 1 or digits[0] in "01":
            return FieldResult.fail("Invalid Aadhar number format.")
        return FieldResult.ok(format_aadhar(digits))

    def _validate_phone(self, cleaned: str, raw: Any, spec: FieldSpec) -> FieldResult:
        if not re.fullmatch(r"\+?[\d\s\-().]+", cleaned):
            return FieldResult.fail("Please enter a valid phone number.")
        digits = re.sub(r"\D", "", cleaned)
        if not _PHONE_MIN_DIGITS <= len(digits) <= _PHONE_MAX_DIGITS:
            return FieldResult.fail("Please enter a valid phone number.")
        return FieldResult.ok(digits)

    def _validate_url(self, cleaned: str, raw: Any, spec: FieldSpec) -> FieldResult:
        parsed = urlparse(cleaned)
        if parsed.scheme not in ("http", "https") or not parsed.netloc or " " in cleaned:
            return FieldResult.fail("Please enter a valid URL.")
        return FieldResult.ok(encode_html(cleaned))

    def _validate_date(self, cleaned: str, raw: Any, spec: FieldSpec) -> FieldResult:
        if not _DATE_RE.match(cleaned):
            return FieldResult.fail("Please enter a valid date (YYYY-MM-DD).")
        try:
            value = date.fromisoformat(cleaned)
        except ValueError:
            return FieldResult.fail("Please enter a valid date (YYYY-MM-DD).")
        minimum = _as_date(spec.min)
        maximum = _as_date(spec.max)
        if minimum and value < minimum:
            return FieldResult.fail(f"Date must be on or after {minimum.isoformat()}.")
        if maximum and value > maximum:
            return FieldResult.fail(f"Date must be on or before {maximum.isoformat()}.")
        return FieldResult.ok(value.isoformat())

    def _validate_time(self, cleaned: str, raw: Any, spec: FieldSpec) -> FieldResult:
        match = _TIME_RE.match(cleaned)
        if not match:
            return FieldResult.fail("Please enter a valid time (HH:MM).")
        value = dt_time(int(match.group(1)), int(match.group(2)))
        return FieldResult.ok(value.strftime("%H:%M"))

    def _validate_choice(self, cleaned: str, raw: Any, spec: FieldSpec) -> FieldResult:
        if cleaned not in spec.options:
            return FieldResult.fail("Please select a valid option.")
        return FieldResult.ok(encode_html(cleaned))

    def _validate_checkbox(self, cleaned: str, raw: Any, spec: FieldSpec) -> FieldResult:
        items = raw if isinstance(raw, (list, tuple)) else [raw]
        allowed = set(spec.options)
        selected: list[str] = []
        for item in items:
            if item is None or isinstance(item, (list, tuple, dict)):
                continue
            value = clean_text(item)
            if contains_malicious_pattern(value):
                return FieldResult.fail(GENERIC_INVALID_INPUT, REASON_MALICIOUS)
            if value in allowed and value not in selected:
                selected.append(value)
        return FieldResult.ok([encode_html(v) for v in selected])


def _as_float(bound: float | str | None) -> float | None:
    if bound is None or bound == "":
        return None
    try:
        return float(bound)
    except (TypeError, ValueError):
        return None


def _as_date(bound: float | str | None) -> date | None:
    if not isinstance(bound, str) or not bound:
        return None
    try:
        return date.fromisoformat(bound)
    except ValueError:
        return None
