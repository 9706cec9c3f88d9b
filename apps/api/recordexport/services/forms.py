"""Form-section to exported-property conversion.

A record type is described by its form sections. Each visible field expands
into zero or more exported properties; the permitted-field map captured on an
export job holds only property names, and the descriptors here are resolved
from the live form definitions at export time.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import StrEnum
from typing import assert_never

from pydantic import TypeAdapter

from recordexport.core.config import Settings, get_settings
from recordexport.schemas.form import FieldKind, FormField, FormSection

logger = logging.getLogger(__name__)

_SECTIONS_ADAPTER = TypeAdapter(list[FormSection])


class ValueType(StrEnum):
    STRING = "string"
    INTEGER = "integer"
    DATE = "date"
    BOOLEAN = "boolean"
    SUBFORM = "subform"
    ATTACHMENT = "attachment"


@dataclass(frozen=True)
class PropertySpec:
    name: str
    kind: FieldKind
    value_type: ValueType
    read_only: bool = False
    nested: tuple[PropertySpec, ...] = ()


def _spec(field: FormField, value_type: ValueType, name: str | None = None) -> PropertySpec:
    return PropertySpec(name=name or field.name, kind=field.type, value_type=value_type, read_only=not field.editable)


def properties_for_field(field: FormField) -> dict[str, PropertySpec]:
    match field.type:
        case (
            FieldKind.TEXT_FIELD
            | FieldKind.TEXTAREA
            | FieldKind.SELECT_BOX
            | FieldKind.RADIO_BUTTON
            | FieldKind.CHECK_BOXES
        ):
            return {field.name: _spec(field, ValueType.STRING)}
        case FieldKind.NUMERIC_FIELD:
            return {field.name: _spec(field, ValueType.INTEGER)}
        case FieldKind.DATE_FIELD:
            return {field.name: _spec(field, ValueType.DATE)}
        case FieldKind.TICK_BOX:
            return {field.name: _spec(field, ValueType.BOOLEAN)}
        case FieldKind.DATE_RANGE:
            specs = [
                _spec(field, ValueType.DATE, f"{field.name}_from"),
                _spec(field, ValueType.DATE, f"{field.name}_to"),
                _spec(field, ValueType.STRING, f"{field.name}_date_or_date_range"),
                _spec(field, ValueType.DATE),
            ]
            return {spec.name: spec for spec in specs}
        case FieldKind.SUBFORM:
            nested = tuple(properties_hash_for(field.subform).values()) if field.subform else ()
            return {
                field.name: PropertySpec(
                    name=field.name,
                    kind=field.type,
                    value_type=ValueType.SUBFORM,
                    read_only=not field.editable,
                    nested=nested,
                )
            }
        case FieldKind.PHOTO_UPLOAD_BOX | FieldKind.AUDIO_UPLOAD_BOX | FieldKind.DOCUMENT_UPLOAD_BOX:
            return {field.name: _spec(field, ValueType.ATTACHMENT)}
        case FieldKind.SEPARATOR:
            return {}
        case _:
            assert_never(field.type)


def properties_hash_for(section: FormSection) -> dict[str, PropertySpec]:
    properties: dict[str, PropertySpec] = {}
    for field in section.fields:
        if field.visible:
            properties.update(properties_for_field(field))
    return properties


class FormSchema:
    def __init__(self, sections: Iterable[FormSection] = ()) -> None:
        self._sections = sorted(sections, key=lambda section: section.order)

    def sections_for(self, record_type: str) -> list[FormSection]:
        return [s for s in self._sections if s.parent_form == record_type and not s.is_nested]

    def section_properties(self, record_type: str) -> dict[str, dict[str, PropertySpec]]:
        return {section.unique_id: properties_hash_for(section) for section in self.sections_for(record_type)}

    def properties(self, record_type: str) -> dict[str, PropertySpec]:
        merged: dict[str, PropertySpec] = {}
        for properties in self.section_properties(record_type).values():
            merged.update(properties)
        return merged


def parse_form_sections(raw: object) -> list[FormSection]:
    return _SECTIONS_ADAPTER.validate_python(raw)


def load_form_schema(settings: Settings | None = None) -> FormSchema:
    settings = settings or get_settings()
    path = settings.forms_path
    if not path.exists():
        logger.warning("Form definitions not found at %s; exporting without field descriptors", path)
        return FormSchema()
    sections = parse_form_sections(json.loads(path.read_text(encoding="utf-8")))
    logger.debug("Loaded %d form sections from %s", len(sections), path)
    return FormSchema(sections)
