from recordexport.models.entities import TERMINAL_STATUSES, ExportJob, ExportStatusEnum

__all__ = ["ExportJob", "ExportStatusEnum", "TERMINAL_STATUSES"]
