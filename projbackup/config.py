"""
Run configuration for projbackup.

Settings are read once from a dotenv-style ``KEY=value`` file and frozen into a
``BackupConfig`` instance that is passed explicitly to every component.
"""

import os
import shlex
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

from dotenv import dotenv_values


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '.env'
CONFIG_ENV_VAR = 'PROJBACKUP_CONFIG'

SUPPORTED_COMPRESSORS = ('zstd', 'xz')


class BackupError(Exception):
    """Base class for errors that end a backup run."""

    exit_code = 1


class ConfigError(BackupError):
    """Raised when a required setting is missing or invalid."""
    pass


def _is_yes(value: Optional[str]) -> bool:
    return (value or '').strip().lower() in ('yes', 'y')


def _as_int(settings: Dict[str, str], key: str, default: Optional[int]) -> Optional[int]:
    raw = (settings.get(key) or '').strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}")


@dataclass(frozen=True)
class BackupConfig:
    """Immutable settings for a single backup run."""

    project_name: str
    source_dir: Path
    backup_dir: Path

    compressor: Optional[str] = None
    excludes: Tuple[str, ...] = ()

    enable_gpg: bool = False
    gpg_recipient: str = ''

    enable_db_backup: bool = False
    db_name: str = ''
    db_user: str = 'root'
    db_pass: str = field(default='', repr=False)
    db_host: str = ''
    db_port: str = ''
    db_socket: str = ''
    db_extra_opts: Tuple[str, ...] = ()

    split_size_mb: int = 1950
    retain_days: Optional[int] = None

    nice_level: int = 10
    ionice_class: int = 2
    ionice_priority: int = 7

    tg_bot_token: str = field(default='', repr=False)
    tg_chat_id: str = ''

    s3_bucket: str = ''
    s3_region: str = 'us-east-1'
    s3_prefix: str = ''
    aws_access_key_id: str = field(default='', repr=False)
    aws_secret_access_key: str = field(default='', repr=False)

    log_level: str = 'INFO'

    @property
    def telegram_enabled(self) -> bool:
        return bool(self.tg_bot_token and self.tg_chat_id)

    @property
    def s3_enabled(self) -> bool:
        return bool(self.s3_bucket)

    @property
    def project_root(self) -> Path:
        """Directory holding every run of this project."""
        return self.backup_dir / self.project_name

    @classmethod
    def from_mapping(cls, settings: Dict[str, Optional[str]]) -> 'BackupConfig':
        """
        Build a configuration from raw key/value settings.

        Args:
            settings: Mapping of setting names to string values

        Returns:
            BackupConfig instance

        Raises:
            ConfigError: If a required setting is missing or malformed
        """
        settings = {k: (v or '') for k, v in settings.items()}

        for key in ('PROJECT_NAME', 'SOURCE_DIR', 'BACKUP_DIR'):
            if not settings.get(key, '').strip():
                raise ConfigError(f"Missing required setting: {key}")

        compressor = settings.get('COMPRESSOR', '').strip() or None
        if compressor and compressor not in SUPPORTED_COMPRESSORS:
            logger.warning(f"Unknown COMPRESSOR '{compressor}', disabling compression.")
            compressor = None

        enable_gpg = _is_yes(settings.get('ENABLE_GPG'))
        gpg_recipient = settings.get('GPG_RECIPIENT', '').strip()
        if enable_gpg and not gpg_recipient:
            raise ConfigError("ENABLE_GPG is set but GPG_RECIPIENT is empty")

        split_size_mb = _as_int(settings, 'SPLIT_SIZE_MB', 1950)
        if split_size_mb <= 0:
            raise ConfigError(f"SPLIT_SIZE_MB must be positive, got {split_size_mb}")

        retain_days = _as_int(settings, 'RETAIN_DAYS', None)
        if retain_days is not None and retain_days < 0:
            raise ConfigError(f"RETAIN_DAYS must not be negative, got {retain_days}")

        return cls(
            project_name=settings['PROJECT_NAME'].strip(),
            source_dir=Path(settings['SOURCE_DIR'].strip()).expanduser(),
            backup_dir=Path(settings['BACKUP_DIR'].strip().rstrip('/') or '/').expanduser(),
            compressor=compressor,
            excludes=tuple(settings.get('EXCLUDES', '').split()),
            enable_gpg=enable_gpg,
            gpg_recipient=gpg_recipient,
            enable_db_backup=_is_yes(settings.get('ENABLE_DB_BACKUP')),
            db_name=settings.get('DB_NAME', '').strip(),
            db_user=settings.get('DB_USER', '').strip() or 'root',
            db_pass=settings.get('DB_PASS', ''),
            db_host=settings.get('DB_HOST', '').strip(),
            db_port=settings.get('DB_PORT', '').strip(),
            db_socket=settings.get('DB_SOCKET', '').strip(),
            db_extra_opts=tuple(shlex.split(settings.get('DB_EXTRA_OPTS', ''))),
            split_size_mb=split_size_mb,
            retain_days=retain_days,
            nice_level=_as_int(settings, 'NICE_LEVEL', 10),
            ionice_class=_as_int(settings, 'IONICE_CLASS', 2),
            ionice_priority=_as_int(settings, 'IONICE_PRIORITY', 7),
            tg_bot_token=settings.get('TG_BOT_TOKEN', '').strip(),
            tg_chat_id=settings.get('TG_CHAT_ID', '').strip(),
            s3_bucket=settings.get('S3_BUCKET', '').strip(),
            s3_region=settings.get('S3_REGION', '').strip() or 'us-east-1',
            s3_prefix=settings.get('S3_PREFIX', '').strip().strip('/'),
            aws_access_key_id=settings.get('AWS_ACCESS_KEY_ID', '').strip(),
            aws_secret_access_key=settings.get('AWS_SECRET_ACCESS_KEY', '').strip(),
            log_level=settings.get('LOG_LEVEL', '').strip().upper() or 'INFO',
        )

    @classmethod
    def from_env_file(cls, path: Optional[str] = None) -> 'BackupConfig':
        """
        Load configuration from a dotenv file.

        Args:
            path: Config file path (default: $PROJBACKUP_CONFIG or .env)

        Returns:
            BackupConfig instance

        Raises:
            ConfigError: If the file is unreadable or incomplete
        """
        path = path or os.environ.get(CONFIG_ENV_VAR) or DEFAULT_CONFIG_PATH

        if not os.path.isfile(path) or not os.access(path, os.R_OK):
            raise ConfigError(f"Missing config file: {path}")

        return cls.from_mapping(dotenv_values(path))
