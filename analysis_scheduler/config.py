"""
Scheduler configuration management.

All settings come from the environment, with defaults that match a local
development stack (PostgreSQL via pgbouncer on 6432, RabbitMQ on 5672,
the API on port 3000). A ``.env`` file is honoured when python-dotenv is
installed.
"""

import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, List, Any, Mapping
from urllib.parse import quote

from sqlalchemy.engine import make_url

# Load .env file if python-dotenv is available
try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = Path.home() / ".analysis_scheduler"


def _get(env: Mapping[str, str], key: str, default: str) -> str:
    """Return an environment value, treating empty strings as unset."""
    value = env.get(key)
    if value:
        return value
    return default


def _get_float(env: Mapping[str, str], key: str, default: float, errors: List[str]) -> float:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        errors.append(f"{key} must be a number, got '{raw}'")
        return default


def _get_int(env: Mapping[str, str], key: str, default: int, errors: List[str]) -> int:
    raw = env.get(key)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        errors.append(f"{key} must be an integer, got '{raw}'")
        return default


@dataclass
class DatabaseConfig:
    """PostgreSQL connection settings."""
    host: str = "localhost"
    port: str = "6432"
    user: str = "postgres"
    password: str = "password"
    name: str = "codeclarity"
    url: Optional[str] = None  # Full SQLAlchemy URL, overrides the fields above

    @property
    def dsn(self) -> str:
        if self.url:
            return self.url
        return (
            f"postgresql+psycopg2://{quote(self.user, safe='')}:{quote(self.password, safe='')}"
            f"@{self.host}:{self.port}/{self.name}?sslmode=disable"
        )


@dataclass
class AmqpConfig:
    """RabbitMQ connection and queue settings."""
    protocol: str = "amqp"
    host: str = "localhost"
    port: str = "5672"
    user: str = "guest"
    password: str = "guest"
    queue: str = "api_request"
    connect_timeout: float = 10.0
    io_timeout: float = 10.0  # Socket read/write timeout once connected

    @property
    def url(self) -> str:
        return (
            f"{self.protocol}://{quote(self.user, safe='')}:{quote(self.password, safe='')}"
            f"@{self.host}:{self.port}//"
        )


@dataclass
class ApiConfig:
    """Settings for the execution-creation API."""
    base_url: str = "http://localhost:3000"
    connect_timeout: float = 5.0
    read_timeout: float = 30.0


@dataclass
class LoggingConfig:
    """Logging configuration."""
    level: str = "INFO"
    file: Optional[str] = None


@dataclass
class SchedulerConfig:
    """
    Complete scheduler configuration.

    Build it with :meth:`from_env`; the dataclass defaults describe a
    local development setup.
    """
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    amqp: AmqpConfig = field(default_factory=AmqpConfig)
    api: ApiConfig = field(default_factory=ApiConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    claim_lease_seconds: int = 600
    poll_second: int = 0  # Second of every minute at which the poll fires
    data_dir: Path = DEFAULT_DATA_DIR
    parse_errors: List[str] = field(default_factory=list, repr=False)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> 'SchedulerConfig':
        """
        Load configuration from environment variables.

        Args:
            env: Mapping to read from (defaults to ``os.environ``)

        Returns:
            SchedulerConfig instance. Values that could not be parsed are
            reported by :meth:`validate`.
        """
        if env is None:
            env = os.environ
        errors: List[str] = []

        database = DatabaseConfig(
            host=_get(env, 'PG_DB_HOST', "localhost"),
            port=_get(env, 'PG_DB_PORT', "6432"),
            user=_get(env, 'PG_DB_USER', "postgres"),
            password=_get(env, 'PG_DB_PASSWORD', "password"),
            name=_get(env, 'PG_DB_NAME', "codeclarity"),
            url=env.get('DATABASE_URL') or None,
        )
        amqp = AmqpConfig(
            protocol=_get(env, 'AMQP_PROTOCOL', "amqp"),
            host=_get(env, 'AMQP_HOST', "localhost"),
            port=_get(env, 'AMQP_PORT', "5672"),
            user=_get(env, 'AMQP_USER', "guest"),
            password=_get(env, 'AMQP_PASSWORD', "guest"),
            queue=_get(env, 'AMQP_ANALYSES_QUEUE', "api_request"),
            connect_timeout=_get_float(env, 'AMQP_CONNECT_TIMEOUT', 10.0, errors),
            io_timeout=_get_float(env, 'AMQP_IO_TIMEOUT', 10.0, errors),
        )
        api = ApiConfig(
            base_url=_get(env, 'API_BASE_URL', "http://localhost:3000").rstrip('/'),
            connect_timeout=_get_float(env, 'API_CONNECT_TIMEOUT', 5.0, errors),
            read_timeout=_get_float(env, 'API_READ_TIMEOUT', 30.0, errors),
        )
        logging_config = LoggingConfig(
            level=_get(env, 'SCHEDULER_LOG_LEVEL', "INFO").upper(),
            file=env.get('SCHEDULER_LOG_FILE') or None,
        )

        data_dir = env.get('SCHEDULER_DATA_DIR')

        config = cls(
            database=database,
            amqp=amqp,
            api=api,
            logging=logging_config,
            claim_lease_seconds=_get_int(env, 'SCHEDULER_CLAIM_LEASE_SECONDS', 600, errors),
            poll_second=_get_int(env, 'SCHEDULER_POLL_SECOND', 0, errors),
            data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR,
            parse_errors=errors,
        )
        for error in errors:
            logger.warning(f"Invalid configuration value: {error}")
        logger.debug(f"Loaded {config!r} from environment")
        return config

    def validate(self) -> List[str]:
        """
        Validate configuration.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = list(self.parse_errors)

        for name, port in (('PG_DB_PORT', self.database.port), ('AMQP_PORT', self.amqp.port)):
            if not str(port).isdigit():
                errors.append(f"{name} must be numeric, got '{port}'")

        if not self.amqp.queue.strip():
            errors.append("AMQP_ANALYSES_QUEUE cannot be empty")

        if not self.api.base_url.startswith(('http://', 'https://')):
            errors.append(f"API_BASE_URL must be an http(s) URL, got '{self.api.base_url}'")

        if self.api.connect_timeout <= 0 or self.api.read_timeout <= 0:
            errors.append("API timeouts must be positive")
        if self.amqp.connect_timeout <= 0:
            errors.append("AMQP_CONNECT_TIMEOUT must be positive")
        if self.amqp.io_timeout <= 0:
            errors.append("AMQP_IO_TIMEOUT must be positive")

        if self.claim_lease_seconds <= 0:
            errors.append("SCHEDULER_CLAIM_LEASE_SECONDS must be positive")
        elif self.claim_lease_seconds <= self.worst_case_dispatch_seconds():
            errors.append(
                f"SCHEDULER_CLAIM_LEASE_SECONDS ({self.claim_lease_seconds}) must exceed the "
                f"combined API and AMQP timeouts ({self.worst_case_dispatch_seconds():g}s)"
            )

        if not 0 <= self.poll_second <= 59:
            errors.append("SCHEDULER_POLL_SECOND must be between 0 and 59")

        if self.logging.level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            errors.append(f"Unknown log level '{self.logging.level}'")

        return errors

    def worst_case_dispatch_seconds(self) -> float:
        """Sum of the API and broker timeouts a single item can wait on."""
        return (
            self.api.connect_timeout + self.api.read_timeout
            + self.amqp.connect_timeout + self.amqp.io_timeout
        )

    def describe(self) -> Dict[str, Any]:
        """Return the configuration as a dict with passwords masked."""
        data = asdict(self)
        data.pop('parse_errors')
        data['database']['password'] = '****'
        data['database']['dsn'] = make_url(self.database.dsn).render_as_string(hide_password=True)
        if data['database']['url']:
            data['database']['url'] = data['database']['dsn']
        data['amqp']['password'] = '****'
        data['amqp']['url'] = (
            f"{self.amqp.protocol}://{self.amqp.user}:***@{self.amqp.host}:{self.amqp.port}//"
        )
        data['data_dir'] = str(self.data_dir)
        return data

    def __repr__(self):
        return (
            f"SchedulerConfig(db={self.database.host}:{self.database.port}/{self.database.name}, "
            f"queue={self.amqp.queue}, api={self.api.base_url})"
        )
