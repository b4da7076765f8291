"""
Shared validation helpers for Chronicle services.
"""

from __future__ import annotations

import json
from typing import Iterable, Optional, Sequence

from chronicle.config import (
    MAX_EMBEDDING_TEXT_LENGTH,
    MAX_METADATA_BYTES,
)
from chronicle.errors import ValidationError


def validate_required_text(value: str, field: str, max_len: int) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} must be a non-empty string", field=field, error_type="required")
    if len(value) > max_len:
        raise ValidationError(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_optional_text(value: Optional[str], field: str, max_len: int) -> None:
    if value is None:
        return
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", field=field, error_type="invalid_type")
    if len(value) > max_len:
        raise ValidationError(f"{field} exceeds max length {max_len}", field=field, error_type="max_length")


def validate_choice(value, field: str, choices: Iterable[str]) -> None:
    allowed = list(choices)
    if value not in allowed:
        raise ValidationError(
            f"{field} must be one of: {'|'.join(allowed)}",
            field=field,
            error_type="invalid_choice",
        )


def validate_limit(value: int, field: str, max_value: int) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field} must be an integer", field=field, error_type="invalid_type")
    if value <= 0 or value > max_value:
        raise ValidationError(f"{field} must be between 1 and {max_value}", field=field, error_type="out_of_range")


def validate_string_list(
    values: Optional[Sequence[str]],
    field: str,
    max_items: int,
    max_item_length: int,
) -> None:
    if values is None:
        return
    if not isinstance(values, (list, tuple)):
        raise ValidationError(f"{field} must be a list", field=field, error_type="invalid_type")
    if len(values) > max_items:
        raise ValidationError(f"{field} exceeds max items {max_items}", field=field, error_type="max_items")
    for item in values:
        if not isinstance(item, str):
            raise ValidationError(f"{field} must contain only strings", field=field, error_type="invalid_type")
        if len(item) > max_item_length:
            raise ValidationError(
                f"{field} item exceeds max length {max_item_length}",
                field=field,
                error_type="max_length",
            )


def validate_metadata(metadata: Optional[dict], field: str) -> None:
    if metadata is None:
        return
    if not isinstance(metadata, dict):
        raise ValidationError(f"{field} must be an object", field=field, error_type="invalid_type")
    try:
        size = len(json.dumps(metadata))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be JSON-serializable", field=field, error_type="invalid_type") from exc
    if size > MAX_METADATA_BYTES:
        raise ValidationError(
            f"{field} exceeds max size {MAX_METADATA_BYTES} bytes",
            field=field,
            error_type="max_bytes",
        )


def validate_allowed_keys(payload: dict, field: str, allowed: Iterable[str]) -> None:
    if not isinstance(payload, dict):
        raise ValidationError(f"{field} must be an object", field=field, error_type="invalid_type")
    unknown = sorted(set(payload) - set(allowed))
    if unknown:
        raise ValidationError(
            f"{field} contains unsupported fields: {unknown}",
            field=field,
            error_type="unknown_field",
            data={"unknown": unknown},
        )


def validate_embedding_text(text: str) -> None:
    validate_required_text(text, "text", MAX_EMBEDDING_TEXT_LENGTH)
