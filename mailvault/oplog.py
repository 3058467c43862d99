#!/usr/bin/env python3

"""
oplog.py

Audit trail for orchestrated operations. An entry is opened in `processing`
and closed exactly once with its terminal status.
"""

from __future__ import annotations

import traceback
from typing import Any, Dict, Optional

from mailvault import db
from mailvault.config import Settings
from mailvault.logger import get_logger
from mailvault.models import OperationStatus, OperationType


class OperationLog:

    def __init__(self, settings: Settings, operation: OperationType, details: Optional[Dict[str, Any]] = None):
        self.settings = settings
        self.operation = operation
        self.logger = get_logger(__name__)
        self.id = db.insert_sync_log(settings.db_path, operation.value, details or {})
        self.finished = False
        self.logger.info(f"Started {operation.value} (log #{self.id})")

    def finish(self, status: OperationStatus, details: Dict[str, Any], error: Optional[BaseException] = None) -> None:
        if self.finished:
            self.logger.debug(f"Log #{self.id} already finished; ignoring {status.value}")
            return
        error_message = None
        if error is not None:
            details = dict(details)
            details["error"] = str(error)
            details["traceback"] = "".join(traceback.format_exception(type(error), error, error.__traceback__))
            error_message = str(error)
        db.finish_sync_log(self.settings.db_path, self.id, status.value, details, error_message)
        self.finished = True
        self.logger.info(f"Finished {self.operation.value} (log #{self.id}): {status.value}")

    def complete(self, details: Dict[str, Any], failed: int = 0) -> OperationStatus:
        status = OperationStatus.COMPLETED_WITH_ERRORS if failed else OperationStatus.COMPLETED
        self.finish(status, details)
        return status

    def fail(self, error: BaseException, details: Optional[Dict[str, Any]] = None) -> None:
        self.logger.error(f"{self.operation.value} failed: {error}")
        self.finish(OperationStatus.FAILED, details or {}, error)
