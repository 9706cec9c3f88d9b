from __future__ import annotations

import csv
import io
import json
import logging
from collections.abc import Iterable, Mapping, Sequence
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from openpyxl import Workbook
from PIL import Image, ImageDraw, ImageFont

from recordexport.schemas.form import FieldKind
from recordexport.services.forms import PropertySpec, ValueType
from recordexport.services.projection import PermittedProperties, ordered_properties

logger = logging.getLogger(__name__)

DEFAULT_RECORD_TYPES = ("case", "incident", "tracing_request")
NO_PHOTOS_TEXT = "No photos available"


class UnsupportedFormat(ValueError):
    pass


def _attachment_name(attachment: Any) -> str:
    if isinstance(attachment, Mapping):
        return str(attachment.get("file_name") or Path(str(attachment.get("path") or "")).name)
    if isinstance(attachment, (str, Path)):
        return Path(attachment).name
    return "attachment"


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def json_value(spec: PropertySpec | None, value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    value_type = spec.value_type if spec is not None else None
    if value_type == ValueType.SUBFORM and isinstance(value, list):
        nested = {child.name: child for child in spec.nested}
        return [
            {key: json_value(nested.get(key), item) for key, item in row.items()} if isinstance(row, Mapping) else row
            for row in value
        ]
    if value_type == ValueType.ATTACHMENT:
        return [_attachment_name(item) for item in _as_list(value)]
    if value_type == ValueType.BOOLEAN and isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1"}
    return value


def flat_value(spec: PropertySpec | None, value: Any) -> Any:
    converted = json_value(spec, value)
    if isinstance(converted, list):
        if all(isinstance(item, (str, int, float, bool)) for item in converted):
            return "; ".join(str(item) for item in converted)
        return json.dumps(converted, ensure_ascii=False, default=str)
    if isinstance(converted, dict):
        return json.dumps(converted, ensure_ascii=False, default=str)
    return converted


def _json_default(obj: Any) -> str:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    return str(obj)


class BaseExporter:
    id: str = ""
    aliases: tuple[str, ...] = ()
    mime_type: str = "application/octet-stream"
    extension: str = "bin"
    # Streaming exporters accept one export_chunk call per page between
    # header() and footer(); batch exporters take the full set via export().
    streaming: bool = False

    def export(
        self,
        records: Sequence[Mapping[str, Any]],
        permitted_fields: PermittedProperties,
        owner: str,
        format_params: Mapping[str, Any] | None = None,
    ) -> bytes:
        if not self.streaming:
            raise NotImplementedError
        params = format_params or {}
        return b"".join(
            [
                self.header(permitted_fields, params),
                self.export_chunk(records, permitted_fields, owner, params, written=0),
                self.footer(written=len(records)),
            ]
        )

    def header(self, permitted_fields: PermittedProperties, format_params: Mapping[str, Any]) -> bytes:
        return b""

    def export_chunk(
        self,
        records: Sequence[Mapping[str, Any]],
        permitted_fields: PermittedProperties,
        owner: str,
        format_params: Mapping[str, Any],
        written: int,
    ) -> bytes:
        raise NotImplementedError

    def footer(self, written: int) -> bytes:
        return b""


class JSONExporter(BaseExporter):
    id = "json"
    mime_type = "application/json"
    extension = "json"
    streaming = True

    def header(self, permitted_fields: PermittedProperties, format_params: Mapping[str, Any]) -> bytes:
        return b"["

    def export_chunk(
        self,
        records: Sequence[Mapping[str, Any]],
        permitted_fields: PermittedProperties,
        owner: str,
        format_params: Mapping[str, Any],
        written: int,
    ) -> bytes:
        properties = ordered_properties(permitted_fields)
        parts: list[str] = []
        for index, record in enumerate(records):
            payload = {name: json_value(spec, record[name]) for name, spec in properties.items() if name in record}
            separator = "\n" if written + index == 0 else ",\n"
            parts.append(separator + json.dumps(payload, ensure_ascii=False, default=_json_default))
        return "".join(parts).encode("utf-8")

    def footer(self, written: int) -> bytes:
        return b"\n]\n" if written else b"]\n"


class CSVExporter(BaseExporter):
    id = "csv"
    mime_type = "text/csv"
    extension = "csv"
    streaming = True

    @staticmethod
    def _write_rows(rows: Iterable[list[Any]]) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer)
        writer.writerows(rows)
        return buffer.getvalue().encode("utf-8")

    def header(self, permitted_fields: PermittedProperties, format_params: Mapping[str, Any]) -> bytes:
        return self._write_rows([list(ordered_properties(permitted_fields))])

    def export_chunk(
        self,
        records: Sequence[Mapping[str, Any]],
        permitted_fields: PermittedProperties,
        owner: str,
        format_params: Mapping[str, Any],
        written: int,
    ) -> bytes:
        properties = ordered_properties(permitted_fields)
        rows = []
        for record in records:
            row = []
            for name, spec in properties.items():
                value = flat_value(spec, record.get(name))
                row.append("" if value is None else value)
            rows.append(row)
        return self._write_rows(rows)


class PhotoWallExporter(BaseExporter):
    id = "photowall"
    aliases = ("pdf",)
    mime_type = "application/pdf"
    extension = "pdf"

    page_size = (1240, 1754)
    margin = 60
    header_height = 110
    columns = 2
    rows = 2

    def export(
        self,
        records: Sequence[Mapping[str, Any]],
        permitted_fields: PermittedProperties,
        owner: str,
        format_params: Mapping[str, Any] | None = None,
    ) -> bytes:
        photo_fields = [
            name
            for name, spec in ordered_properties(permitted_fields).items()
            if spec is not None and spec.kind == FieldKind.PHOTO_UPLOAD_BOX
        ]
        tiles = self.collect_photos(records, photo_fields)

        pages: list[Image.Image] = []
        if not tiles:
            page = self._new_page(owner)
            self._draw_placeholder(page)
            pages.append(page)
        per_page = self.columns * self.rows
        for start in range(0, len(tiles), per_page):
            page = self._new_page(owner)
            for slot, (caption, photo) in enumerate(tiles[start : start + per_page]):
                self._paste_photo(page, photo, caption, slot)
            pages.append(page)

        output = io.BytesIO()
        pages[0].save(output, format="PDF", save_all=True, append_images=pages[1:], resolution=150.0)
        return output.getvalue()

    def collect_photos(
        self, records: Sequence[Mapping[str, Any]], photo_fields: Sequence[str]
    ) -> list[tuple[str, Image.Image]]:
        tiles: list[tuple[str, Image.Image]] = []
        for record in records:
            caption = str(record.get("name") or record.get("short_id") or record.get("id") or "")
            photo = self._first_photo(record, photo_fields)
            if photo is not None:
                tiles.append((caption, photo))
        return tiles

    def _first_photo(self, record: Mapping[str, Any], photo_fields: Sequence[str]) -> Image.Image | None:
        for name in photo_fields:
            value = record.get(name)
            if not value:
                continue
            for attachment in _as_list(value):
                try:
                    return _open_image(attachment)
                except (OSError, ValueError) as exc:
                    logger.warning("Skipping unreadable photo %s: %s", _attachment_name(attachment), exc)
        return None

    def _new_page(self, owner: str) -> Image.Image:
        page = Image.new("RGB", self.page_size, color=(255, 255, 255))
        draw = ImageDraw.Draw(page)
        draw.text((self.margin, self.margin // 2), f"Photo wall: {owner}", fill=(20, 20, 20), font=ImageFont.load_default())
        return page

    def _draw_placeholder(self, page: Image.Image) -> None:
        draw = ImageDraw.Draw(page)
        draw.text((self.margin, self.header_height + self.margin), NO_PHOTOS_TEXT, fill=(80, 80, 80), font=ImageFont.load_default())

    def _paste_photo(self, page: Image.Image, photo: Image.Image, caption: str, slot: int) -> None:
        width, height = self.page_size
        cell_w = (width - 2 * self.margin) // self.columns
        cell_h = (height - self.header_height - self.margin) // self.rows
        left = self.margin + (slot % self.columns) * cell_w
        top = self.header_height + (slot // self.columns) * cell_h

        thumb = photo.copy()
        thumb.thumbnail((cell_w - 20, cell_h - 60), Image.Resampling.BICUBIC)
        page.paste(thumb, (left + (cell_w - thumb.width) // 2, top + 10))
        ImageDraw.Draw(page).text((left + 10, top + cell_h - 40), caption, fill=(20, 20, 20), font=ImageFont.load_default())


def _open_image(attachment: Any) -> Image.Image:
    if isinstance(attachment, Mapping):
        attachment = attachment.get("content") or attachment.get("path")
    if isinstance(attachment, (bytes, bytearray)):
        source: Any = io.BytesIO(attachment)
    elif isinstance(attachment, (str, Path)):
        source = Path(attachment)
    else:
        raise ValueError(f"unsupported attachment value {type(attachment).__name__}")
    with Image.open(source) as image:
        return image.convert("RGB")


class CustomExporter(BaseExporter):
    """Spreadsheet of user-selected forms and fields.

    ``format_params`` may carry ``forms`` (form names) and ``fields`` (field
    names). Only selections that are also permitted are exported; anything else
    is dropped without comment. With no selection every permitted field is used.
    """

    id = "custom"
    mime_type = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    extension = "xlsx"

    @staticmethod
    def selected_properties(
        permitted_fields: PermittedProperties, format_params: Mapping[str, Any] | None
    ) -> dict[str, PropertySpec | None]:
        params = format_params or {}
        forms = set(params.get("forms") or [])
        fields = set(params.get("fields") or [])
        if not forms and not fields:
            return ordered_properties(permitted_fields)

        chosen: dict[str, PropertySpec | None] = {}
        for module_forms in permitted_fields.values():
            for form_name, properties in module_forms.items():
                for name, spec in properties.items():
                    if form_name in forms or name in fields:
                        chosen.setdefault(name, spec)
        return chosen

    def export(
        self,
        records: Sequence[Mapping[str, Any]],
        permitted_fields: PermittedProperties,
        owner: str,
        format_params: Mapping[str, Any] | None = None,
    ) -> bytes:
        properties = self.selected_properties(permitted_fields, format_params)
        workbook = Workbook(write_only=True)
        try:
            sheet = workbook.create_sheet(title="Export")
            sheet.append(list(properties))
            for record in records:
                sheet.append([_cell_value(flat_value(spec, record.get(name))) for name, spec in properties.items()])
            output = io.BytesIO()
            workbook.save(output)
            return output.getvalue()
        finally:
            workbook.close()


def _cell_value(value: Any) -> Any:
    if isinstance(value, datetime) and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class ExporterRegistry:
    def __init__(self) -> None:
        self._exporters: dict[str, dict[str, BaseExporter]] = {}

    def register(self, record_type: str, exporter: BaseExporter) -> None:
        by_id = self._exporters.setdefault(record_type, {})
        for key in (exporter.id, *exporter.aliases):
            by_id[key] = exporter

    def resolve(self, record_type: str, format_id: str) -> BaseExporter:
        exporter = self._exporters.get(record_type, {}).get(str(format_id).strip().lower())
        if exporter is None:
            raise UnsupportedFormat(f"Unsupported export format '{format_id}' for record type '{record_type}'")
        return exporter

    def formats_for(self, record_type: str) -> list[str]:
        return sorted({exporter.id for exporter in self._exporters.get(record_type, {}).values()})


def build_default_registry(record_types: Iterable[str] = DEFAULT_RECORD_TYPES) -> ExporterRegistry:
    registry = ExporterRegistry()
    shared = [JSONExporter(), CSVExporter(), CustomExporter()]
    photo_wall = PhotoWallExporter()
    for record_type in record_types:
        for exporter in shared:
            registry.register(record_type, exporter)
        if record_type == "case":
            registry.register(record_type, photo_wall)
    return registry
