from recordexport.schemas.export import AccessScope, ExportJobCreate, ExportJobResponse, FilterPredicate, SortOrder
from recordexport.schemas.form import FieldKind, FormField, FormSection

__all__ = [
    "AccessScope",
    "ExportJobCreate",
    "ExportJobResponse",
    "FieldKind",
    "FilterPredicate",
    "FormField",
    "FormSection",
    "SortOrder",
]
