#!/usr/bin/env python3

"""
config.py

Configuration loading for the mailvault package.

Supports:
- TOML (preferred) using stdlib tomllib (Python 3.11+) or the tomli package
- INI using configparser

Precedence:
1. CLI --config <path>
2. ./mailvault.toml
3. ./mailvault.ini
4. ~/.config/mailvault.toml
5. ~/.config/mailvault.ini
6. /etc/mailvault.toml
7. /etc/mailvault.ini

Settings are immutable once loaded and are passed explicitly to every component.
"""

from __future__ import annotations

import configparser
import fnmatch
import json
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

MIB = 1024 * 1024
# Graph upload sessions accept chunks in multiples of 320 KiB
CHUNK_MULTIPLE = 320 * 1024

GRAPH_SCOPES = (
    "https://graph.microsoft.com/Files.ReadWrite "
    "https://graph.microsoft.com/User.Read "
    "offline_access"
)


@dataclass(frozen=True)
class Settings:
    # Core paths
    mail_root: Path
    db_path: Path
    log_path: Path
    restore_dir: Path

    # OAuth
    client_id: str
    client_secret: str
    tenant_id: str
    redirect_uri: str
    scopes: str
    backup_principal: str
    token_skew: int

    # Cloud
    api_base: str
    cloud_base_path: str

    # Upload
    chunk_size: int
    small_upload_threshold: int
    max_retry_attempts: int
    retry_delay: float
    request_timeout: int
    checksum_algorithm: str

    # Purge
    retention_days: int

    # Alerts
    default_threshold_mb: int
    warning_pct: float
    critical_pct: float
    mailbox_thresholds: Tuple[Tuple[str, int], ...] = ()
    alert_recipients: Tuple[str, ...] = ()
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = "mailvault@localhost"
    smtp_starttls: bool = True

    # Performance
    max_batch_workers: int = 2
    task_retries: int = 2
    task_retry_delay: float = 60.0
    lock_ttl: int = 7200

    # Logging
    log_level: str = "INFO"
    rotate_by_time: bool = True
    max_log_files: int = 7
    max_log_size: int = 10 * MIB
    status_interval: int = 300

    @property
    def authorize_url(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token"

    def threshold_for(self, mailbox: str) -> int:
        """Return the size threshold in MB for a mailbox (first matching pattern wins)."""
        for pattern, mb in self.mailbox_thresholds:
            if fnmatch.fnmatch(mailbox, pattern):
                return mb
        return self.default_threshold_mb


DEFAULT_LOCATIONS = [
    Path("./mailvault.toml"),
    Path("./mailvault.ini"),
    Path(os.path.expanduser("~/.config/mailvault.toml")),
    Path(os.path.expanduser("~/.config/mailvault.ini")),
    Path("/etc/mailvault.toml"),
    Path("/etc/mailvault.ini"),
]


def _load_toml(path: Path) -> Dict[str, Any]:
    if sys.version_info >= (3, 11):
        import tomllib
    else:
        import tomli as tomllib

    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data


def _load_ini(path: Path) -> Dict[str, Any]:
    cp = configparser.ConfigParser()
    cp.read(path)
    data: Dict[str, Any] = {}

    section = "mailvault"
    if section not in cp:
        raise RuntimeError(f"INI config {path} must have a [{section}] section")

    sec = cp[section]
    for k in sec:
        data[k] = sec[k]
    return data


def _coerce_bool(v: Any, default: bool) -> bool:
    if v is None:
        return default
    if isinstance(v, bool):
        return v
    s = str(v).strip().lower()
    if s in ("1", "true", "yes", "on"):
        return True
    if s in ("0", "false", "no", "off"):
        return False
    return default


def _coerce_int(v: Any, default: int) -> int:
    if v is None:
        return default
    try:
        return int(v)
    except (TypeError, ValueError):
        return default


def _coerce_float(v: Any, default: float) -> float:
    if v is None:
        return default
    try:
        return float(v)
    except (TypeError, ValueError):
        return default


def _coerce_thresholds(v: Any) -> Tuple[Tuple[str, int], ...]:
    # TOML gives a table, INI gives a JSON string like {"ceo@*": 5000}
    if not v:
        return ()
    if isinstance(v, str):
        try:
            v = json.loads(v)
        except ValueError:
            return ()
    if not isinstance(v, dict):
        return ()
    out = []
    for pattern, mb in v.items():
        try:
            out.append((str(pattern), int(mb)))
        except (TypeError, ValueError):
            continue
    return tuple(out)


def _coerce_list(v: Any) -> Tuple[str, ...]:
    if not v:
        return ()
    if isinstance(v, str):
        return tuple(s.strip() for s in v.split(",") if s.strip())
    return tuple(str(s) for s in v)


def load_settings(config_path: Optional[Path] = None) -> Settings:
    data: Dict[str, Any] = {}

    source_path: Optional[Path] = None

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        source_path = config_path
    else:
        for p in DEFAULT_LOCATIONS:
            if p.exists():
                source_path = p
                break

    if source_path is None:
        sys.stderr.write("Warning: no config file found. Using built-in defaults.\n")
    elif source_path.suffix.lower() == ".toml":
        data = _load_toml(source_path)
    else:
        data = _load_ini(source_path)

    # Accept either flat keys or [section] key
    def pick(*keys: str, default: Any = None) -> Any:
        for k in keys:
            if k in data:
                return data[k]
        for k in keys:
            parts = k.split(".")
            if len(parts) == 2:
                top, sub = parts
                if top in data and isinstance(data[top], dict):
                    if sub in data[top]:
                        return data[top][sub]
        return default

    mail_root = Path(pick("mail_root", "paths.mail_root", default="/var/mail"))
    db_path = Path(pick("db_path", "paths.db_path", default="/var/lib/mailvault/state.db"))
    log_path = Path(pick("log_path", "paths.log_path", default="/var/log/mailvault/mailvault.log"))
    restore_dir = Path(pick("restore_dir", "paths.restore_dir", default="/var/lib/mailvault/restored"))

    client_id = str(pick("client_id", "oauth.client_id", default=""))
    client_secret = str(pick("client_secret", "oauth.client_secret", default=""))
    tenant_id = str(pick("tenant_id", "oauth.tenant_id", default="common"))
    redirect_uri = str(pick("redirect_uri", "oauth.redirect_uri", default="http://localhost:8000/auth/callback"))
    scopes = str(pick("scopes", "oauth.scopes", default=GRAPH_SCOPES))
    backup_principal = str(pick("backup_principal", "oauth.backup_principal", default="backup"))
    token_skew = _coerce_int(pick("token_skew", "oauth.token_skew", default=0), 0)

    api_base = str(pick("api_base", "cloud.api_base", default="https://graph.microsoft.com/v1.0")).rstrip("/")
    cloud_base_path = str(pick("base_path", "cloud.base_path", default="ISP-Email-Backups")).strip("/")

    chunk_size = _coerce_int(pick("chunk_size", "upload.chunk_size", default=10 * MIB), 10 * MIB)
    if chunk_size <= 0 or chunk_size % CHUNK_MULTIPLE:
        raise ValueError(f"chunk_size must be a positive multiple of {CHUNK_MULTIPLE} bytes: {chunk_size}")
    small_upload_threshold = _coerce_int(
        pick("small_upload_threshold", "upload.small_upload_threshold", default=4 * MIB), 4 * MIB)
    max_retry_attempts = _coerce_int(pick("max_retry_attempts", "upload.max_retry_attempts", default=3), 3)
    retry_delay = _coerce_float(pick("retry_delay", "upload.retry_delay", default=5), 5.0)
    request_timeout = _coerce_int(pick("request_timeout", "upload.request_timeout", default=60), 60)
    checksum_algorithm = str(pick("checksum_algorithm", "upload.checksum_algorithm", default="sha1")).lower()
    if checksum_algorithm not in ("sha1", "sha256"):
        raise ValueError(f"Unsupported checksum_algorithm: {checksum_algorithm}")

    retention_days = _coerce_int(pick("retention_days", "purge.retention_days", default=30), 30)

    default_threshold_mb = _coerce_int(
        pick("default_threshold_mb", "alerts.default_threshold_mb", default=1000), 1000)
    warning_pct = _coerce_float(pick("warning_pct", "alerts.warning_pct", default=80), 80.0)
    critical_pct = _coerce_float(pick("critical_pct", "alerts.critical_pct", default=95), 95.0)
    mailbox_thresholds = _coerce_thresholds(pick("mailbox_thresholds", "alerts.mailbox_thresholds"))
    alert_recipients = _coerce_list(pick("recipients", "alerts.recipients"))
    smtp_host = str(pick("smtp_host", "alerts.smtp_host", default=""))
    smtp_port = _coerce_int(pick("smtp_port", "alerts.smtp_port", default=587), 587)
    smtp_user = str(pick("smtp_user", "alerts.smtp_user", default=""))
    smtp_password = str(pick("smtp_password", "alerts.smtp_password", default=""))
    smtp_from = str(pick("smtp_from", "alerts.smtp_from", default="mailvault@localhost"))
    smtp_starttls = _coerce_bool(pick("smtp_starttls", "alerts.smtp_starttls", default=True), True)

    max_batch_workers = _coerce_int(pick("max_batch_workers", "performance.max_batch_workers", default=2), 2)
    lock_ttl = _coerce_int(pick("lock_ttl", "performance.lock_ttl", default=7200), 7200)
    task_retries = _coerce_int(pick("task_retries", "performance.task_retries", default=2), 2)
    task_retry_delay = _coerce_float(pick("task_retry_delay", "performance.task_retry_delay", default=60), 60.0)

    log_level = str(pick("log_level", "logging.log_level", default="INFO")).upper()
    rotate_by_time = _coerce_bool(pick("rotate_by_time", "logging.rotate_by_time", default=True), True)
    max_log_files = _coerce_int(pick("max_log_files", "logging.max_log_files", default=7), 7)
    max_log_size = _coerce_int(pick("max_log_size", "logging.max_log_size", default=10 * MIB), 10 * MIB)
    status_interval = _coerce_int(pick("status_interval", "logging.status_interval", default=300), 300)

    return Settings(
        mail_root=mail_root,
        db_path=db_path,
        log_path=log_path,
        restore_dir=restore_dir,
        client_id=client_id,
        client_secret=client_secret,
        tenant_id=tenant_id,
        redirect_uri=redirect_uri,
        scopes=scopes,
        backup_principal=backup_principal,
        token_skew=token_skew,
        api_base=api_base,
        cloud_base_path=cloud_base_path,
        chunk_size=chunk_size,
        small_upload_threshold=small_upload_threshold,
        max_retry_attempts=max_retry_attempts,
        retry_delay=retry_delay,
        request_timeout=request_timeout,
        checksum_algorithm=checksum_algorithm,
        retention_days=retention_days,
        default_threshold_mb=default_threshold_mb,
        warning_pct=warning_pct,
        critical_pct=critical_pct,
        mailbox_thresholds=mailbox_thresholds,
        alert_recipients=alert_recipients,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_user=smtp_user,
        smtp_password=smtp_password,
        smtp_from=smtp_from,
        smtp_starttls=smtp_starttls,
        max_batch_workers=max_batch_workers,
        lock_ttl=lock_ttl,
        task_retries=task_retries,
        task_retry_delay=task_retry_delay,
        log_level=log_level,
        rotate_by_time=rotate_by_time,
        max_log_files=max_log_files,
        max_log_size=max_log_size,
        status_interval=status_interval,
    )
