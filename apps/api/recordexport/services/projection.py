from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from recordexport.services.forms import PropertySpec

# module_id -> form name -> field names
PermittedKeys = Mapping[str, Mapping[str, Iterable[str]]]
# module_id -> form name -> {field name -> descriptor}
PermittedProperties = dict[str, dict[str, dict[str, PropertySpec | None]]]


def flatten_permitted_fields(fields_by_form: Mapping[str, Iterable[str]]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for names in fields_by_form.values():
        for name in names:
            seen.setdefault(name, None)
    return tuple(seen)


class PermissionProjector:
    """Strips records down to the fields the job's owner may see.

    The allowed field set is flattened once per module when the projector is
    built, so projecting a record is a lookup plus a filter.
    """

    def __init__(self, permitted_keys: PermittedKeys) -> None:
        self._allowed = {module_id: flatten_permitted_fields(forms) for module_id, forms in permitted_keys.items()}

    def allowed_fields(self, module_id: str | None) -> tuple[str, ...]:
        if module_id is None:
            return ()
        return self._allowed.get(module_id, ())

    def project(self, record: Mapping[str, Any]) -> dict[str, Any]:
        return {name: record[name] for name in self.allowed_fields(record.get("module_id")) if name in record}


def project(record: Mapping[str, Any], permitted_keys: PermittedKeys) -> dict[str, Any]:
    return PermissionProjector(permitted_keys).project(record)


def properties_by_module_to_keys(
    properties_by_module: Mapping[str, Mapping[str, Mapping[str, Any]]],
) -> dict[str, dict[str, list[str]]]:
    return {
        module_id: {form_name: list(fields) for form_name, fields in forms.items()}
        for module_id, forms in properties_by_module.items()
    }


def property_keys_by_module_to_properties(
    property_keys: PermittedKeys,
    live_properties: Mapping[str, PropertySpec],
) -> PermittedProperties:
    return {
        module_id: {form_name: {key: live_properties.get(key) for key in keys} for form_name, keys in forms.items()}
        for module_id, forms in property_keys.items()
    }


def ordered_properties(permitted: PermittedProperties) -> dict[str, PropertySpec | None]:
    """Flatten a permitted-properties map across modules, first occurrence wins."""
    ordered: dict[str, PropertySpec | None] = {}
    for forms in permitted.values():
        for properties in forms.values():
            for name, spec in properties.items():
                if name not in ordered or ordered[name] is None:
                    ordered[name] = spec
    return ordered
