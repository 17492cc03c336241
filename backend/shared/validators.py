"""Shared validation helpers for service settings."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic_settings import EnvSettingsSource

if TYPE_CHECKING:
    from pydantic.fields import FieldInfo


def parse_string_list(value: str | list[str], *, allow_empty: bool = False) -> list[str]:
    """Parse a string list from an environment variable or config value.

    Accepts a list of strings, a JSON array string ('["a","b"]') or a
    comma-separated string ('a,b'). Raises ValueError for blank input or
    malformed JSON, and for empty results unless allow_empty is set.
    """
    if isinstance(value, list):
        if not allow_empty and not value:
            raise ValueError("String list value must not be empty")
        return value

    stripped = value.strip()
    if not stripped:
        if allow_empty:
            return []
        raise ValueError("String list value must not be empty")

    if stripped.startswith("["):
        try:
            parsed = json.loads(stripped)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON array: {e}") from e
        if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
            raise ValueError("JSON value must be an array of strings")
        result = parsed
    else:
        result = [item.strip() for item in stripped.split(",") if item.strip()]

    if not allow_empty and not result:
        raise ValueError("String list value must not be empty")
    return result


class StringListEnvSettingsSource(EnvSettingsSource):
    """Env settings source that hands string-list fields to validators as raw strings.

    pydantic-settings JSON-decodes list-typed fields from env vars before
    validators run, which rejects the CSV form. Fields named in
    ``string_list_fields`` skip that step so parse_string_list sees them.
    """

    string_list_fields: ClassVar[frozenset[str]] = frozenset({"cors_origins"})

    def prepare_field_value(
        self,
        field_name: str,
        field: FieldInfo,
        value: Any,  # noqa: ANN401
        value_is_complex: bool,  # noqa: FBT001
    ) -> Any:  # noqa: ANN401
        if field_name in self.string_list_fields and isinstance(value, str):
            return value
        return super().prepare_field_value(field_name, field, value, value_is_complex)
