from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field, model_validator


class FieldKind(StrEnum):
    TEXT_FIELD = "text_field"
    TEXTAREA = "textarea"
    SELECT_BOX = "select_box"
    RADIO_BUTTON = "radio_button"
    CHECK_BOXES = "check_boxes"
    NUMERIC_FIELD = "numeric_field"
    DATE_FIELD = "date_field"
    DATE_RANGE = "date_range"
    TICK_BOX = "tick_box"
    SUBFORM = "subform"
    SEPARATOR = "separator"
    PHOTO_UPLOAD_BOX = "photo_upload_box"
    AUDIO_UPLOAD_BOX = "audio_upload_box"
    DOCUMENT_UPLOAD_BOX = "document_upload_box"


class FormField(BaseModel):
    name: str = Field(min_length=1)
    type: FieldKind
    display_name: str | None = None
    visible: bool = True
    editable: bool = True
    subform: FormSection | None = None

    @model_validator(mode="after")
    def _subform_needs_section(self) -> "FormField":
        if self.type == FieldKind.SUBFORM and self.subform is None:
            raise ValueError(f"subform field '{self.name}' has no subform section")
        return self


class FormSection(BaseModel):
    unique_id: str = Field(min_length=1)
    parent_form: str = Field(min_length=1)
    name: str | None = None
    order: int = 0
    is_nested: bool = False
    fields: list[FormField] = Field(default_factory=list)


FormField.model_rebuild()
