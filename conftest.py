from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from recordexport.core.config import Settings
from recordexport.db.session import Base
from recordexport.models import ExportJob  # noqa: F401
from recordexport.schemas import AccessScope, ExportJobCreate
from recordexport.services.exporters import ExporterRegistry, build_default_registry
from recordexport.services.forms import FormSchema, parse_form_sections
from recordexport.services.packaging import ensure_export_dir
from recordexport.services.search import InMemorySearchBackend

CP_MODULE = "primeromodule-cp"

CASE_FORMS = [
    {
        "unique_id": "basic_identity",
        "parent_form": "case",
        "order": 1,
        "fields": [
            {"name": "name", "type": "text_field"},
            {"name": "sex", "type": "select_box"},
            {"name": "age", "type": "numeric_field"},
            {"name": "status", "type": "select_box"},
            {"name": "registration_date", "type": "date_range"},
            {"name": "photos", "type": "photo_upload_box"},
            {"name": "identity_separator", "type": "separator"},
            {"name": "internal_note", "type": "textarea", "visible": False},
        ],
    },
    {
        "unique_id": "protection_concerns",
        "parent_form": "case",
        "order": 2,
        "fields": [
            {"name": "protection_concerns", "type": "check_boxes"},
            {"name": "urgent", "type": "tick_box"},
            {
                "name": "family_details",
                "type": "subform",
                "subform": {
                    "unique_id": "family_details_section",
                    "parent_form": "case",
                    "is_nested": True,
                    "fields": [
                        {"name": "relation_name", "type": "text_field"},
                        {"name": "relation", "type": "select_box"},
                    ],
                },
            },
        ],
    },
]


def make_case(index: int, **overrides) -> dict:
    record = {
        "id": f"case-{index:03d}",
        "module_id": CP_MODULE,
        "owned_by": "user1",
        "name": f"Child {index}",
        "sex": "female" if index % 2 else "male",
        "age": 5 + index,
        "status": "open",
        "protection_concerns": ["separated"],
        "urgent": index % 2 == 0,
        "internal_note": "not for export",
    }
    record.update(overrides)
    return record


@pytest.fixture
def settings(tmp_path) -> Settings:
    settings = Settings(
        export_dir=tmp_path / "export",
        forms_path=tmp_path / "forms.json",
        archive_kdf_iterations=1_000,
        search_backend="memory",
        export_page_size=2,
        export_run_max_retries=0,
    )
    ensure_export_dir(settings)
    return settings


@pytest.fixture
def db() -> Session:
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def forms() -> FormSchema:
    return FormSchema(parse_form_sections(CASE_FORMS))


@pytest.fixture
def registry() -> ExporterRegistry:
    return build_default_registry()


@pytest.fixture
def case_records() -> list[dict]:
    records = [make_case(i, owned_by="user1" if i % 2 else "user2") for i in range(1, 6)]
    records.append(make_case(6, status="closed"))
    records.append(make_case(7, owned_by="stranger"))
    return records


@pytest.fixture
def backend(case_records) -> InMemorySearchBackend:
    return InMemorySearchBackend({"case": case_records})


@pytest.fixture
def scope() -> AccessScope:
    return AccessScope(
        user_name="user1",
        managed_user_names=["user1", "user2"],
        permitted_properties={
            CP_MODULE: {
                "basic_identity": {"name": {}, "sex": {}, "status": {}, "photos": {}},
                "protection_concerns": {"urgent": {}, "family_details": {}},
            }
        },
    )


@pytest.fixture
def open_cases_request() -> ExportJobCreate:
    return ExportJobCreate(
        record_type="case",
        format="json",
        filters={"status": {"type": "single", "value": "open"}},
        password="s3cret",
    )
