from src.models.base import Base
from src.models.export_job import ExportJob

__all__ = [
    "Base",
    "ExportJob",
]
