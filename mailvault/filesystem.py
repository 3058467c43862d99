#!/usr/bin/env python3

"""
filesystem.py

Mail server filesystem access. Each directory directly under the mail root is a
mailbox; every regular file below it is a backup candidate.
"""

from __future__ import annotations

import datetime
import os
from pathlib import Path
from typing import List, Optional

from mailvault.logger import get_logger
from mailvault.models import FileDescriptor
from mailvault.utils import from_timestamp


class FileEnumerator:

    def __init__(self, mail_root: Path):
        self.mail_root = mail_root
        self.logger = get_logger(__name__)

    def mailboxes(self) -> List[str]:
        if not self.mail_root.is_dir():
            raise FileNotFoundError(f"Mail root not found: {self.mail_root}")
        return sorted(p.name for p in self.mail_root.iterdir() if p.is_dir())

    def mailbox_path(self, mailbox: str) -> Path:
        path = self.mail_root / mailbox
        if not path.is_dir():
            raise FileNotFoundError(f"Mailbox directory not found: {path}")
        return path

    def list(self, mailbox: str, since: Optional[datetime.datetime] = None) -> List[FileDescriptor]:
        """List files of a mailbox, optionally only those modified after `since`."""
        files = []
        for root, _dirs, names in os.walk(self.mailbox_path(mailbox)):
            for name in names:
                path = Path(root) / name
                try:
                    st = path.stat()
                except FileNotFoundError:
                    # Delivered mail can be moved between new/ and cur/ while we walk
                    continue
                fd = FileDescriptor(path=path, size=st.st_size, modified_time=from_timestamp(st.st_mtime),
                                    mailbox=mailbox)
                if since is None or fd.modified_time > since:
                    files.append(fd)
        files.sort(key=lambda f: str(f.path))
        return files

    def older_than(self, mailbox: str, cutoff: datetime.datetime) -> List[FileDescriptor]:
        return [f for f in self.list(mailbox) if f.modified_time < cutoff]

    def mailbox_size(self, mailbox: str) -> int:
        return sum(f.size for f in self.list(mailbox))

    def delete(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            self.logger.warning(f"File already gone: {path}")
            return False
        except OSError as e:
            self.logger.error(f"Failed to delete {path}: {e}")
            return False
        self.logger.debug(f"Deleted local file {path}")
        return True
