#!/usr/bin/env python3

"""
locks.py

Advisory per-mailbox leases stored in SQLite. A lease expires after its TTL so
a crashed operation cannot block a mailbox forever.
"""

from __future__ import annotations

import os
import socket
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, List, Optional

from mailvault import db
from mailvault.config import Settings
from mailvault.errors import MailboxLocked
from mailvault.logger import get_logger


def default_owner(operation: str = "op") -> str:
    return f"{operation}@{socket.gethostname()}:{os.getpid()}:{threading.get_ident()}:{uuid.uuid4().hex[:8]}"


class MailboxLock:

    def __init__(self, settings: Settings, clock: Callable[[], float] = time.time):
        self.settings = settings
        self.clock = clock
        self.logger = get_logger(__name__)

    def acquire(self, mailbox: str, owner: str, ttl: Optional[int] = None) -> bool:
        ttl = ttl if ttl is not None else self.settings.lock_ttl
        ok = db.acquire_lock(self.settings.db_path, mailbox, owner, self.clock(), ttl)
        if ok:
            self.logger.debug(f"Lease on {mailbox} acquired by {owner} for {ttl}s")
        return ok

    def release(self, mailbox: str, owner: str) -> bool:
        released = db.release_lock(self.settings.db_path, mailbox, owner)
        if released:
            self.logger.debug(f"Lease on {mailbox} released by {owner}")
        return released

    def holder(self, mailbox: str) -> Optional[str]:
        row = db.get_lock(self.settings.db_path, mailbox)
        if row is None or row["expires_at"] <= self.clock():
            return None
        return row["owner"]

    @contextmanager
    def hold(self, mailboxes: Iterable[str], owner: str, ttl: Optional[int] = None) -> Iterator[List[str]]:
        """
        Hold leases on every mailbox for the duration of the block.
        Raises MailboxLocked, after releasing what it took, if any lease is held elsewhere.
        """
        acquired: List[str] = []
        try:
            for mailbox in sorted(set(mailboxes)):
                if not self.acquire(mailbox, owner, ttl):
                    raise MailboxLocked(mailbox, self.holder(mailbox))
                acquired.append(mailbox)
            yield acquired
        finally:
            for mailbox in acquired:
                self.release(mailbox, owner)
