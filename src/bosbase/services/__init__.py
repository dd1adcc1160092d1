"""REST services — thin request builders over BosBase.send()."""

from bosbase.services.base import BaseCrudService, BaseService
from bosbase.services.batch_service import BatchService, SubBatchService
from bosbase.services.file_service import FileService
from bosbase.services.health_service import HealthService
from bosbase.services.record_service import RecordService

__all__ = [
    "BaseCrudService",
    "BaseService",
    "BatchService",
    "SubBatchService",
    "FileService",
    "HealthService",
    "RecordService",
]
