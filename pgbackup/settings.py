"""
Backup configuration.

The configuration file is JSON and is loaded once at startup into an
immutable Settings value that is passed to every executor, storage backend
and scheduled job:

    {
        "postgres": {"host": "db", "port": 5432, "user": "app", "password": "...", "database": "app"},
        "storage": {
            "s3": {"endpoint": "s3.example.com", "access_key": "...", "secret_key": "...",
                   "bucket": "backups", "prefix": "app", "retention_period": "30 days"},
            "local": {"directory": "/data/backups", "retention_count": 7}
        },
        "compress": {"algorithm": "zstd", "level": 3},
        "schedule": ["0 3 * * *"],
        "restore_schedule": [{"cron": "0 5 * * 0", "target_database": "app_check"}]
    }
"""

import json
import os
import re
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple


DEFAULT_CONFIG_LOCATION = '/etc/pgbackup/config.json'

SUPPORTED_ALGORITHMS = ('zstd', 'gzip')
DEFAULT_COMPRESS_LEVELS = {
    'zstd': 3,
    'gzip': 6
}

# Inclusive level bounds accepted by each encoder
COMPRESS_LEVEL_RANGES = {
    'zstd': (1, 22),
    'gzip': (0, 9)
}

SELECTION_STRATEGIES = ('latest', 'pattern', 'specific')

_PERIOD_ALIASES = {
    'hourly': 1,
    'daily': 1,
    'weekly': 7,
    'monthly': 30,
    'yearly': 365
}

_PERIOD_PATTERN = re.compile(
    r'^(\d+)\s*(h|hr|hrs|hour|hours|d|day|days|w|week|weeks|m|month|months|y|year|years)$'
)


class ConfigurationError(Exception):
    """Raised when the backup configuration is missing or invalid."""
    pass


def parse_retention_period(period: str) -> int:
    """
    Convert a retention period string to a number of days.

    Accepts the named periods (hourly, daily, weekly, monthly, yearly) and
    '<number> <unit>' strings such as '7 days', '12h' or '2 weeks'. Hours are
    rounded up to whole days, months count as 30 days and years as 365.

    Args:
        period: Retention period string

    Returns:
        Number of days (always >= 1)

    Raises:
        ConfigurationError: If the period cannot be parsed
    """
    if not period or not period.strip():
        raise ConfigurationError("Retention period cannot be empty")

    normalized = period.strip().lower()

    if normalized in _PERIOD_ALIASES:
        return _PERIOD_ALIASES[normalized]

    match = _PERIOD_PATTERN.match(normalized)
    if not match:
        raise ConfigurationError(
            f"Unsupported retention period format '{period}'. "
            f"Use one of {list(_PERIOD_ALIASES.keys())} or '<number> <unit>' "
            f"where unit is h/hour(s), d/day(s), w/week(s), m/month(s) or y/year(s)"
        )

    value = int(match.group(1))
    if value <= 0:
        raise ConfigurationError(f"Retention period value must be positive, got {value}")

    unit = match.group(2)

    if unit in ('h', 'hr', 'hrs', 'hour', 'hours'):
        return max(1, (value + 23) // 24)
    if unit in ('d', 'day', 'days'):
        return value
    if unit in ('w', 'week', 'weeks'):
        return value * 7
    if unit in ('m', 'month', 'months'):
        return value * 30
    return value * 365


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Bounds on how old and how many backups a storage backend keeps.

    Both limits are optional; with neither set the policy is disabled.
    """

    max_age_days: Optional[int] = None
    max_count: Optional[int] = None

    def __post_init__(self):
        if self.max_age_days is not None and self.max_age_days <= 0:
            raise ConfigurationError(f"Retention days must be positive, got {self.max_age_days}")
        if self.max_count is not None and self.max_count <= 0:
            raise ConfigurationError(f"Retention count must be positive, got {self.max_count}")

    @property
    def enabled(self) -> bool:
        return self.max_age_days is not None or self.max_count is not None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], label: str) -> 'RetentionPolicy':
        """
        Build a policy from a storage block.

        Args:
            data: Storage configuration block
            label: Backend name used in error messages

        Returns:
            RetentionPolicy instance
        """
        period = data.get('retention_period')
        days = data.get('retention_days')
        count = data.get('retention_count')

        if period is not None and days is not None:
            raise ConfigurationError(f"{label}: set either retention_period or retention_days, not both")

        try:
            if period is not None:
                days = parse_retention_period(str(period))
            elif days is not None:
                days = int(days)
            if count is not None:
                count = int(count)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"{label}: invalid retention value: {e}")

        try:
            return cls(max_age_days=days, max_count=count)
        except ConfigurationError as e:
            raise ConfigurationError(f"{label}: {e}")


@dataclass(frozen=True)
class PostgresSettings:
    """Connection parameters for pg_dump and pg_restore."""

    host: str = 'localhost'
    port: Optional[int] = None
    user: Optional[str] = None
    password: Optional[str] = None
    database: Optional[str] = None
    dump_binary: str = 'pg_dump'
    restore_binary: str = 'pg_restore'

    def __repr__(self):
        return f'<PostgresSettings host={self.host} database={self.database}>'


@dataclass(frozen=True)
class S3Settings:
    """S3-compatible object storage target."""

    bucket: str
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    endpoint: Optional[str] = None
    region: Optional[str] = None
    prefix: Optional[str] = None
    secure: bool = True
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)

    @property
    def endpoint_url(self) -> Optional[str]:
        """Endpoint as a URL for boto3, or None to use AWS defaults."""
        if not self.endpoint:
            return None
        if '://' in self.endpoint:
            return self.endpoint
        scheme = 'https' if self.secure else 'http'
        return f"{scheme}://{self.endpoint}"

    def __repr__(self):
        return f'<S3Settings bucket={self.bucket} prefix={self.prefix}>'


@dataclass(frozen=True)
class LocalSettings:
    """Local filesystem target."""

    directory: str
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)


@dataclass(frozen=True)
class CompressSettings:
    """Stream compression applied to dumps before upload."""

    algorithm: str
    level: int


@dataclass(frozen=True)
class RestoreScheduleEntry:
    """A cron-triggered restore of a selected backup into a target database."""

    cron: str
    target_database: str
    selection: str = 'latest'
    pattern: Optional[str] = None
    backup_id: Optional[str] = None
    include_s3: bool = True
    include_local: bool = True
    enabled: bool = True


@dataclass(frozen=True)
class Settings:
    """Resolved backup configuration. Read-only after load."""

    postgres: PostgresSettings = field(default_factory=PostgresSettings)
    s3: Optional[S3Settings] = None
    local: Optional[LocalSettings] = None
    compress: Optional[CompressSettings] = None
    schedule: Tuple[str, ...] = ()
    restore_schedule: Tuple[RestoreScheduleEntry, ...] = ()
    retention_cron: Optional[str] = None
    verbose: bool = False

    @property
    def has_storage(self) -> bool:
        return self.s3 is not None or self.local is not None

    @property
    def compression_algorithm(self) -> Optional[str]:
        return self.compress.algorithm if self.compress else None

    @property
    def database_name(self) -> str:
        """Configured database, or 'postgres' when none is set."""
        return self.postgres.database or 'postgres'

    def require_storage(self):
        """
        Ensure at least one storage backend is configured.

        Raises:
            ConfigurationError: If neither S3 nor local storage is configured
        """
        if not self.has_storage:
            raise ConfigurationError("No storage backends configured (storage.s3 or storage.local)")

    def validate(self):
        """
        Validate cross-field constraints.

        Raises:
            ConfigurationError: If any setting is invalid
        """
        if not self.postgres.host:
            raise ConfigurationError("postgres.host is required")

        if self.compress is not None and self.compress.algorithm not in SUPPORTED_ALGORITHMS:
            raise ConfigurationError(
                f"compress.algorithm: unsupported algorithm '{self.compress.algorithm}'. "
                f"Valid options: {list(SUPPORTED_ALGORITHMS)}"
            )

        if self.compress is not None:
            low, high = COMPRESS_LEVEL_RANGES[self.compress.algorithm]
            if not low <= self.compress.level <= high:
                raise ConfigurationError(
                    f"compress.level: {self.compress.level} is out of range for "
                    f"{self.compress.algorithm} ({low}-{high})"
                )

        if self.s3 is not None and not self.s3.bucket:
            raise ConfigurationError("storage.s3.bucket is required")

        if self.local is not None and not self.local.directory:
            raise ConfigurationError("storage.local.directory is required")

        for index, entry in enumerate(self.restore_schedule):
            label = f"restore_schedule[{index}]"
            if not entry.cron:
                raise ConfigurationError(f"{label}.cron is required")
            if not entry.target_database:
                raise ConfigurationError(f"{label}.target_database is required")
            if entry.selection not in SELECTION_STRATEGIES:
                raise ConfigurationError(
                    f"{label}.selection must be one of {list(SELECTION_STRATEGIES)}, got '{entry.selection}'"
                )
            if entry.selection == 'pattern' and not entry.pattern:
                raise ConfigurationError(f"{label}.pattern is required for pattern selection")
            if entry.selection == 'specific' and not entry.backup_id:
                raise ConfigurationError(f"{label}.backup_id is required for specific selection")
            if not entry.include_s3 and not entry.include_local:
                raise ConfigurationError(f"{label} must include at least one storage backend")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Settings':
        """
        Build and validate Settings from a parsed configuration document.

        Args:
            data: Parsed JSON configuration

        Returns:
            Validated Settings instance

        Raises:
            ConfigurationError: If the document is invalid
        """
        if not isinstance(data, dict):
            raise ConfigurationError("Configuration root must be an object")

        postgres_data = data.get('postgres') or {}
        try:
            postgres = PostgresSettings(
                host=postgres_data.get('host', 'localhost'),
                port=int(postgres_data['port']) if postgres_data.get('port') is not None else None,
                user=postgres_data.get('user'),
                password=postgres_data.get('password'),
                database=postgres_data.get('database'),
                dump_binary=postgres_data.get('dump_binary', 'pg_dump'),
                restore_binary=postgres_data.get('restore_binary', 'pg_restore')
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"postgres: invalid value: {e}")

        storage_data = data.get('storage') or {}

        s3 = None
        s3_data = storage_data.get('s3')
        if s3_data is not None:
            s3 = S3Settings(
                bucket=s3_data.get('bucket', ''),
                access_key=s3_data.get('access_key'),
                secret_key=s3_data.get('secret_key'),
                endpoint=s3_data.get('endpoint'),
                region=s3_data.get('region'),
                prefix=(s3_data.get('prefix') or '').strip('/') or None,
                secure=bool(s3_data.get('secure', True)),
                retention=RetentionPolicy.from_dict(s3_data, 'storage.s3')
            )

        local = None
        local_data = storage_data.get('local')
        if local_data is not None:
            local = LocalSettings(
                directory=local_data.get('directory', ''),
                retention=RetentionPolicy.from_dict(local_data, 'storage.local')
            )

        compress = None
        compress_data = data.get('compress')
        if compress_data is not None:
            algorithm = str(compress_data.get('algorithm', '')).lower()
            level = compress_data.get('level', compress_data.get('compress_level'))
            if level is None:
                level = DEFAULT_COMPRESS_LEVELS.get(algorithm, 0)
            try:
                compress = CompressSettings(algorithm=algorithm, level=int(level))
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"compress.level: invalid value: {e}")

        restore_schedule = tuple(
            RestoreScheduleEntry(
                cron=item.get('cron', ''),
                target_database=item.get('target_database', ''),
                selection=item.get('selection', 'latest'),
                pattern=item.get('pattern'),
                backup_id=item.get('backup_id'),
                include_s3=bool(item.get('include_s3', True)),
                include_local=bool(item.get('include_local', True)),
                enabled=bool(item.get('enabled', True))
            )
            for item in data.get('restore_schedule') or []
        )

        settings = cls(
            postgres=postgres,
            s3=s3,
            local=local,
            compress=compress,
            schedule=tuple(data.get('schedule') or []),
            restore_schedule=restore_schedule,
            retention_cron=data.get('retention_cron'),
            verbose=bool(data.get('verbose', False))
        )
        settings.validate()
        return settings


def load_settings(location: Optional[str] = None) -> Settings:
    """
    Load settings from a JSON configuration file.

    Args:
        location: Path to the configuration file. Defaults to the
            CONFIG_LOCATION environment variable, then /etc/pgbackup/config.json

    Returns:
        Validated Settings instance

    Raises:
        ConfigurationError: If the file cannot be read or is invalid
    """
    path = location or os.environ.get('CONFIG_LOCATION') or DEFAULT_CONFIG_LOCATION

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in configuration file {path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to read configuration file {path}: {e}")

    return Settings.from_dict(data)
