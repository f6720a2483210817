#!/usr/bin/env python3
"""
Hadoop Exporter

Description:
---------------------

A Prometheus exporter for Hadoop daemons supporting:
- NameNode, DataNode, ResourceManager and YARN application metrics
- HA-aware target resolution from the Hadoop site configuration
- Scrape-time failover between redundant masters
- Pull-triggered collection (one introspection request per scrape)
- Liveness gauges that survive endpoint and payload failures
- Health check endpoint and systemd integration

Usage:
---------------------
1. Optionally create a YAML settings file next to the script (hadoop_exporter.yml)
2. Point the exporter at the daemon's site configuration (hdfs-site.xml / yarn-site.xml)
3. Run one exporter process per daemon type on the daemon's host
4. Scrape metrics at http://localhost:9070/metrics (namenode default port)

Configuration:
---------------------

exporter:
    daemon: namenode            # namenode | datanode | resourcemanager | applications
    listen_address: ":9070"     # Exposition listen address (per-daemon default)
    metrics_path: /metrics      # Exposition path
    health_port: 9072           # Optional JSON health endpoint
    site_config: /etc/hadoop/conf/hdfs-site.xml
    request_timeout_sec: 5      # Introspection request timeout
    verify_tls: true            # Verify certificates when HTTPS_ONLY is configured
    failure_threshold: 3        # Consecutive failed scrapes before unhealthy
    hostname: nn1.example.com   # Override for self identification
    logging:
        level: "INFO"
        file: null              # Defaults to hadoop_exporter.log beside the script
        file_level: "DEBUG"
        console_level: "INFO"
        journal_level: "WARNING"
        max_bytes: 10485760
        backup_count: 3
        format: "%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s"
        date_format: "%Y-%m-%d %H:%M:%S"

Command line flags override the settings file:
    --config PATH  --daemon TYPE  --web.listen-address ADDR  --web.telemetry-path PATH
    --site.path PATH  --get.timeout-seconds N  --health-port PORT  --hostname NAME

Scrape Cycle:
---------------------
Every inbound scrape runs one cycle: the target tracker supplies the endpoint
currently assumed to be active, the scrape engine issues a single GET with the
configured timeout, and the payload is normalized into a metric set. When the
endpoint cannot be reached the tracker fails over to the next configured peer
and the request is retried once. The ServerActive gauge (and isActive for HA
masters) is always emitted.

Dependencies:
---------------------
- Python 3.9+
- prometheus_client
- requests
- pyyaml
- cysystemd (for systemd integration)

Notes:
---------------------
- All timestamps are in UTC
- Site configuration is read once at start-up; changes require a restart
- Configuration errors terminate the process before any server starts
- Scrape errors never terminate the process
"""

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Imports
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

# Standard library imports
import argparse
import asyncio
import json
import logging
import os
import re
import signal
import socket
import string
import sys
import threading
import time
import xml.etree.ElementTree as ElementTree
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from logging.handlers import RotatingFileHandler
from pathlib import Path
from socketserver import ThreadingMixIn
from typing import (
    Any, Callable, Dict, Iterator, List, Mapping, Optional,
    Sequence, Tuple, Union
)
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

# Third party imports
import requests
import yaml
from cysystemd import journal
from cysystemd.daemon import Notification, notify
from prometheus_client import CollectorRegistry, make_wsgi_app
from prometheus_client.core import GaugeMetricFamily

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Exceptions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricError(Exception):
    """Base class for metric-related errors."""
    pass

class MetricConfigurationError(MetricError):
    """Unrecoverable configuration error; the process cannot start."""
    pass

class MetricCollectionError(MetricError):
    """Error during a single scrape cycle."""
    pass

class EndpointUnreachableError(MetricCollectionError):
    """Network failure or non-success status from an introspection request."""

    def __init__(self, endpoint: 'Endpoint', message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.endpoint = endpoint
        self.status_code = status_code

class EndpointStandbyError(MetricCollectionError):
    """Endpoint answered with a redirect to the active member of its group."""

    def __init__(self, endpoint: 'Endpoint', location: str = ''):
        super().__init__(
            f"Endpoint {endpoint.url} is standby (redirected to {location or 'unknown'})"
        )
        self.endpoint = endpoint
        self.location = location

class PayloadShapeError(MetricCollectionError):
    """Introspection payload lacks the expected top-level structure."""
    pass

class MetricValidationError(MetricError):
    """Error during metric validation."""
    pass

class FieldExtractionMiss(MetricValidationError):
    """An expected field is absent or not numeric on an otherwise valid record."""

    def __init__(self, key: str, record_name: str = ''):
        super().__init__(f"Field '{key}' missing or not numeric in '{record_name}'")
        self.key = key
        self.record_name = record_name

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Core Enums and Data Classes
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

LOGGER_NAME = 'hadoop_exporter'
DEFAULT_TIMEOUT = 5
WILDCARD_HOSTS = ('', '0.0.0.0', '::', '[::]')


@dataclass(frozen=True)
class ProgramSource:
    """Program source and derived file configurations."""
    script_path: Path = field(default_factory=lambda: Path(sys.argv[0]).resolve())
    config_override: Optional[Path] = None

    @property
    def script_dir(self) -> Path:
        """Directory containing the script."""
        return self.script_path.parent

    @property
    def base_name(self) -> str:
        """Base name without extension."""
        return self.script_path.stem

    @property
    def logger_name(self) -> str:
        """Logger name shared by all exporter components."""
        return LOGGER_NAME

    @property
    def config_path(self) -> Path:
        """Full path to the YAML settings file."""
        if self.config_override is not None:
            return self.config_override
        return self.script_dir / f"{self.base_name}.yml"

    @property
    def log_path(self) -> Path:
        """Default path to the log file."""
        return self.script_dir / f"{self.base_name}.log"

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class Protocol(Enum):
    """Introspection protocol, valued by URL scheme."""
    HTTP = "http"
    HTTPS = "https"

class PayloadShape(Enum):
    """Top-level shape of an introspection payload."""
    BEANS = "beans"   # JMX servlet: {"beans": [{...}, ...]}
    APPS = "apps"     # RM REST API: {"apps": {"app": [{...}, ...]}}

class EndpointState(Enum):
    """Per-cycle state of a scraped endpoint."""
    UNKNOWN = "unknown"
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"
    STANDBY = "standby"

class DaemonType(Enum):
    """Hadoop daemon types served by an exporter instance."""
    NAMENODE = "namenode"
    DATANODE = "datanode"
    RESOURCEMANAGER = "resourcemanager"
    APPLICATIONS = "applications"

    @classmethod
    def from_config(cls, value: Any) -> 'DaemonType':
        """Get daemon type from config."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise MetricConfigurationError(
                f"Invalid daemon type: {value}. "
                f"Must be one of: {[d.value for d in cls]}"
            )

    @property
    def profile(self) -> 'DaemonProfile':
        """Static description of how this daemon is resolved and scraped."""
        return DAEMON_PROFILES[self]

    @property
    def prefix(self) -> str:
        return self.profile.prefix

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class Endpoint:
    """One physical service instance."""
    host: str
    port: int
    protocol: Protocol = Protocol.HTTP
    member_id: str = ''

    @property
    def url(self) -> str:
        """Base URL of the daemon's web server."""
        return f"{self.protocol.value}://{self.host}:{self.port}"

    def __str__(self) -> str:
        if self.member_id:
            return f"{self.member_id}@{self.url}"
        return self.url


@dataclass
class ServiceTopology:
    """Resolved HA group of a daemon.

    Everything except ``active`` is fixed at start-up. ``active`` is owned by
    the TargetTracker and always refers to one of ``candidates``.
    """
    daemon: DaemonType
    peers: Tuple[Endpoint, ...]
    active: Endpoint
    self_endpoint: Optional[Endpoint] = None
    group_id: str = ''
    server_ip: str = ''
    hostname: str = ''
    rpc_port: str = ''
    data_port: str = ''

    def __post_init__(self):
        if not self.peers:
            raise MetricConfigurationError(
                f"No {self.daemon.value} endpoints could be resolved"
            )
        if self.active not in self.candidates:
            raise MetricConfigurationError(
                f"Active endpoint {self.active} is not a member of the topology"
            )

    @property
    def candidates(self) -> Tuple[Endpoint, ...]:
        """Peer endpoints plus the self endpoint."""
        if self.self_endpoint is None or self.self_endpoint in self.peers:
            return self.peers
        return self.peers + (self.self_endpoint,)

    @property
    def member_id(self) -> str:
        """HA member id of this host, empty when self identification failed."""
        return self.self_endpoint.member_id if self.self_endpoint else ''

    def assume_active(self, endpoint: Endpoint) -> None:
        """Replace the assumed-active endpoint."""
        if endpoint not in self.candidates:
            raise ValueError(f"{endpoint} is not a member of the topology")
        self.active = endpoint

    def label_values(self, endpoint: Optional[Endpoint] = None) -> Tuple[str, ...]:
        """Constant label values for daemon and liveness metrics."""
        if self.daemon is DaemonType.DATANODE:
            return (self.server_ip,)
        if self.daemon is DaemonType.APPLICATIONS:
            endpoint = endpoint or self.active
            return (endpoint.host, self.group_id, endpoint.member_id)
        return (self.server_ip, self.group_id, self.member_id)


@dataclass(frozen=True)
class LivenessState:
    """Reachability and HA role of the scraped endpoint for one cycle."""
    reachable: bool = False
    active: Optional[bool] = None  # None for daemons without an HA role

    @property
    def state(self) -> EndpointState:
        if not self.reachable:
            return EndpointState.UNREACHABLE
        if self.active is False:
            return EndpointState.STANDBY
        return EndpointState.REACHABLE


@dataclass(frozen=True)
class ExporterSettings:
    """Immutable process settings handed to every component."""
    daemon: DaemonType
    site_config: Path
    listen_host: str = ''
    listen_port: int = 9070
    metrics_path: str = '/metrics'
    health_port: Optional[int] = None
    request_timeout: int = DEFAULT_TIMEOUT
    verify_tls: bool = True
    failure_threshold: int = 3
    hostname: Optional[str] = None

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Program Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def parse_listen_address(address: str) -> Tuple[str, int]:
    """Split ``[host]:port`` into its parts."""
    host, sep, port = str(address).strip().rpartition(':')
    if not sep:
        host, port = '', port
    try:
        port_number = int(port)
    except ValueError:
        raise MetricConfigurationError(f"Invalid listen address {address!r}")
    if port_number < 1 or port_number > 65535:
        raise MetricConfigurationError(f"Invalid listen port {port_number}")
    return host.strip('[]'), port_number


class ProgramConfig:
    """Exporter settings loaded from YAML with defaults and CLI overrides."""

    DEFAULT_DAEMON = 'namenode'
    DEFAULT_METRICS_PATH = '/metrics'
    DEFAULT_REQUEST_TIMEOUT = DEFAULT_TIMEOUT
    DEFAULT_VERIFY_TLS = True
    DEFAULT_FAILURE_THRESHOLD = 3

    # Logging defaults
    DEFAULT_LOG_LEVEL = 'INFO'
    DEFAULT_LOG_FILE_LEVEL = 'DEBUG'
    DEFAULT_LOG_CONSOLE_LEVEL = 'INFO'
    DEFAULT_LOG_JOURNAL_LEVEL = 'WARNING'
    DEFAULT_LOG_MAX_BYTES = 10485760  # 10MB
    DEFAULT_LOG_BACKUP_COUNT = 3
    DEFAULT_LOG_FORMAT = '%(asctime)s [%(process)d] [%(threadName)s] [%(name)s.%(funcName)s] [%(levelname)s] %(message)s'
    DEFAULT_LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

    def __init__(
        self,
        source: ProgramSource,
        overrides: Optional[Dict[str, Any]] = None
    ):
        """Initialize configuration manager."""
        self._source = source
        self._overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        self._config = {'exporter': self._get_exporter_defaults()}
        self._settings: Optional[ExporterSettings] = None
        self._running_under_systemd = bool(os.getenv('INVOCATION_ID'))
        self._start_time = self.now_utc()
        self.logger = None

    def _get_exporter_defaults(self) -> Dict[str, Any]:
        """Get default exporter configuration."""
        return {
            'daemon': self.DEFAULT_DAEMON,
            'listen_address': None,
            'metrics_path': self.DEFAULT_METRICS_PATH,
            'health_port': None,
            'site_config': None,
            'request_timeout_sec': self.DEFAULT_REQUEST_TIMEOUT,
            'verify_tls': self.DEFAULT_VERIFY_TLS,
            'failure_threshold': self.DEFAULT_FAILURE_THRESHOLD,
            'hostname': None,
            'logging': {
                'level': self.DEFAULT_LOG_LEVEL,
                'file': None,
                'file_level': self.DEFAULT_LOG_FILE_LEVEL,
                'console_level': self.DEFAULT_LOG_CONSOLE_LEVEL,
                'journal_level': self.DEFAULT_LOG_JOURNAL_LEVEL,
                'max_bytes': self.DEFAULT_LOG_MAX_BYTES,
                'backup_count': self.DEFAULT_LOG_BACKUP_COUNT,
                'format': self.DEFAULT_LOG_FORMAT,
                'date_format': self.DEFAULT_LOG_DATE_FORMAT
            }
        }

    def load(self) -> ExporterSettings:
        """Load settings file, apply overrides and validate.

        Raises:
            MetricConfigurationError: If the file is unreadable or invalid
        """
        file_config = self._read_config_file()
        exporter = self._merge_with_defaults(
            self._get_exporter_defaults(),
            file_config.get('exporter') or {}
        )
        exporter = self._merge_with_defaults(exporter, self._overrides)

        self._validate_exporter_section(exporter)
        self._config = {'exporter': exporter}
        self._settings = self._build_settings(exporter)
        return self._settings

    def _read_config_file(self) -> Dict[str, Any]:
        """Read the YAML settings file; a missing default file means defaults."""
        path = self._source.config_path
        if not path.is_file():
            if self._source.config_override is not None:
                raise MetricConfigurationError(f"Config file {path} not found")
            return {}

        try:
            with open(path) as f:
                file_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise MetricConfigurationError(f"Failed to load config file {path}: {e}")

        if not isinstance(file_config, dict):
            raise MetricConfigurationError(f"Config file {path} must contain a mapping")
        return file_config

    def _merge_with_defaults(self, defaults: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Simple merge of override values with defaults."""
        result = dict(defaults)
        for key, value in override.items():
            if isinstance(value, dict) and isinstance(result.get(key), dict):
                result[key] = self._merge_with_defaults(result[key], value)
            else:
                result[key] = value
        return result

    def _validate_exporter_section(self, config: Dict[str, Any]) -> None:
        """Basic validation of exporter configuration."""
        daemon = DaemonType.from_config(config['daemon'])

        listen_address = config.get('listen_address') or daemon.profile.listen_address
        _, listen_port = parse_listen_address(listen_address)

        metrics_path = config.get('metrics_path')
        if not isinstance(metrics_path, str) or not metrics_path.startswith('/'):
            raise MetricConfigurationError(f"Invalid metrics_path {metrics_path!r}")

        timeout = config.get('request_timeout_sec')
        if isinstance(timeout, bool) or not isinstance(timeout, int) or timeout < 1:
            raise MetricConfigurationError(
                f"Invalid request_timeout_sec {timeout!r}: must be a positive whole number of seconds"
            )

        threshold = config.get('failure_threshold')
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
            raise MetricConfigurationError(f"Invalid failure_threshold {threshold!r}")

        health_port = config.get('health_port')
        if health_port is not None:
            if isinstance(health_port, bool) or not isinstance(health_port, int) \
                    or health_port < 1 or health_port > 65535:
                raise MetricConfigurationError(f"Invalid health_port {health_port}")
            if health_port == listen_port:
                raise MetricConfigurationError("listen port and health_port must be different")

        if not isinstance(config.get('logging'), dict):
            raise MetricConfigurationError("logging section must be a dictionary")

    def _build_settings(self, config: Dict[str, Any]) -> ExporterSettings:
        """Freeze validated configuration into ExporterSettings."""
        daemon = DaemonType.from_config(config['daemon'])
        listen_host, listen_port = parse_listen_address(
            config.get('listen_address') or daemon.profile.listen_address
        )
        return ExporterSettings(
            daemon=daemon,
            site_config=Path(config.get('site_config') or daemon.profile.site_config),
            listen_host=listen_host,
            listen_port=listen_port,
            metrics_path=config['metrics_path'],
            health_port=config.get('health_port'),
            request_timeout=config['request_timeout_sec'],
            verify_tls=bool(config.get('verify_tls', True)),
            failure_threshold=config['failure_threshold'],
            hostname=config.get('hostname') or None
        )

    @staticmethod
    def now_utc() -> datetime:
        """Get current UTC datetime."""
        return datetime.now(timezone.utc)

    def get_uptime_seconds(self) -> float:
        """Get service uptime in seconds."""
        return (self.now_utc() - self._start_time).total_seconds()

    @property
    def running_under_systemd(self) -> bool:
        """Check if running under systemd."""
        return self._running_under_systemd

    @property
    def settings(self) -> ExporterSettings:
        """Validated settings; loads on first access."""
        if self._settings is None:
            self.load()
        return self._settings

    @property
    def exporter(self) -> Dict[str, Any]:
        """Get exporter configuration."""
        return self._config['exporter']

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.exporter.get('logging', {})

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class ProgramLogger:
    """Manages logging configuration and setup."""

    # Verbose logging config
    VERBOSE_DEBUG = True
    VERBOSE_LEVEL = 15  # DEBUG 10, INFO 20

    class VerboseLogger(logging.Logger):
        """Enhanced Logger class adding verbose debugging capabilities"""

        def verbose(
            self,
            msg: Union[str, Callable[[], str]],
            *args: Any,
            **kwargs: Any
        ) -> None:
            """Log verbose debug messages with efficient deferred evaluation."""

            if not ProgramLogger.VERBOSE_DEBUG:
                return
            if not self.isEnabledFor(ProgramLogger.VERBOSE_LEVEL):
                return

            # Handle deferred evaluation of expensive computations
            if callable(msg):
                self.log(ProgramLogger.VERBOSE_LEVEL, msg(*args, **kwargs))
            # Handle string formatting
            elif args or kwargs:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg.format(*args, **kwargs))
            # Handle simple strings
            else:
                self.log(ProgramLogger.VERBOSE_LEVEL, msg)

    @classmethod
    def install(cls) -> None:
        """Register the VERBOSE level and make VerboseLogger the logger class."""
        logging.addLevelName(cls.VERBOSE_LEVEL, 'VERBOSE')
        logging.setLoggerClass(cls.VerboseLogger)

    def __init__(
        self,
        source: ProgramSource,
        config: ProgramConfig
    ):
        """Initialize logging configuration.

        Args:
            source: Program source information
            config: Program configuration
        """
        self.install()

        self.source = source
        self.config = config
        self._handlers: Dict[str, logging.Handler] = {}
        self._logger = self._setup_logging()

        # Attach logger to config after setup
        self.config.logger = self._logger

    @property
    def logger(self) -> logging.Logger:
        """Get the configured logger instance."""
        return self._logger

    @property
    def log_path(self) -> Path:
        """Configured log file path."""
        configured = self.config.logging.get('file')
        return Path(configured) if configured else self.source.log_path

    def _get_logging_config(self) -> Dict[str, Any]:
        """Complete logging configuration with ProgramConfig defaults filled in."""
        logging_config = self.config.logging
        return {
            'level': logging_config.get('level', self.config.DEFAULT_LOG_LEVEL),
            'file_level': logging_config.get('file_level', self.config.DEFAULT_LOG_FILE_LEVEL),
            'console_level': logging_config.get('console_level', self.config.DEFAULT_LOG_CONSOLE_LEVEL),
            'journal_level': logging_config.get('journal_level', self.config.DEFAULT_LOG_JOURNAL_LEVEL),
            'max_bytes': logging_config.get('max_bytes', self.config.DEFAULT_LOG_MAX_BYTES),
            'backup_count': logging_config.get('backup_count', self.config.DEFAULT_LOG_BACKUP_COUNT),
            'format': logging_config.get('format', self.config.DEFAULT_LOG_FORMAT),
            'date_format': logging_config.get('date_format', self.config.DEFAULT_LOG_DATE_FORMAT)
        }

    def _setup_logging(self) -> logging.Logger:
        """Set up logging with configuration from config file.

        Creates and configures:
        - Base logger
        - File handler with rotation
        - Console handler
        - Journal handler (if running under systemd)

        Note:
            A log file that cannot be opened is reported on stderr and
            logging continues on the console.
        """
        logger = logging.getLogger(self.source.logger_name)
        logger.handlers.clear()

        log_settings = self._get_logging_config()
        logger.setLevel(log_settings['level'])

        formatter = logging.Formatter(
            log_settings['format'],
            log_settings['date_format']
        )

        try:
            file_handler = RotatingFileHandler(
                self.log_path,
                maxBytes=log_settings['max_bytes'],
                backupCount=log_settings['backup_count']
            )
            file_handler.setLevel(log_settings['file_level'])
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
            self._handlers['file'] = file_handler
        except OSError as e:
            print(f"Failed to open log file {self.log_path}: {e}, logging to console only", file=sys.stderr)

        try:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(log_settings['console_level'])
            console_handler.setFormatter(formatter)
            logger.addHandler(console_handler)
            self._handlers['console'] = console_handler

            # Journal handler for systemd
            if self.config.running_under_systemd:
                journal_handler = journal.JournaldLogHandler()
                journal_handler.setLevel(log_settings['journal_level'])
                journal_handler.setFormatter(formatter)
                logger.addHandler(journal_handler)
                self._handlers['journal'] = journal_handler

        except Exception as e:
            # If handler setup fails, ensure we have at least a basic console handler
            if 'console' not in self._handlers:
                basic_handler = logging.StreamHandler(sys.stdout)
                basic_handler.setFormatter(logging.Formatter(self.config.DEFAULT_LOG_FORMAT))
                logger.addHandler(basic_handler)
                self._handlers['console'] = basic_handler
            print(f"Failed to setup handlers: {e}, using basic console handler", file=sys.stderr)

        return logger


ProgramLogger.install()


def get_logger() -> logging.Logger:
    """Logger used by components constructed without an explicit one."""
    return logging.getLogger(LOGGER_NAME)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Site Configuration
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def split_host_port(address: str) -> Tuple[str, str]:
    """Split ``host:port``; the port is whatever follows the last colon."""
    host, sep, port = (address or '').strip().rpartition(':')
    if not sep:
        return (address or '').strip(), ''
    return host, port


def resolve_address(host: str, resolver: Callable[[str], str] = socket.gethostbyname) -> str:
    """Resolve a hostname to an IP, keeping the literal host when resolution fails."""
    if not host:
        return ''
    try:
        return resolver(host)
    except (OSError, UnicodeError):
        get_logger().warning(f"Could not resolve host {host}, using it verbatim")
        return host


class SiteConfig(Mapping):
    """Flat name/value view of a Hadoop ``*-site.xml`` document."""

    def __init__(self, properties: Mapping[str, str], path: Optional[Path] = None):
        self._properties = dict(properties)
        self.path = path

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'SiteConfig':
        """Parse a site file.

        Raises:
            MetricConfigurationError: If the file cannot be opened, read or parsed
        """
        try:
            with open(path, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise MetricConfigurationError(f"Error opening site configuration {path}: {e}")
        return cls.from_string(data, Path(path))

    @classmethod
    def from_string(cls, data: Union[str, bytes], path: Optional[Path] = None) -> 'SiteConfig':
        """Parse site configuration XML text."""
        try:
            root = ElementTree.fromstring(data)
        except ElementTree.ParseError as e:
            raise MetricConfigurationError(f"Error parsing site configuration {path or ''}: {e}")

        if root.tag != 'configuration':
            raise MetricConfigurationError(
                f"Site configuration {path or ''} has root <{root.tag}>, expected <configuration>"
            )

        properties = {}
        for prop in root.iter('property'):
            name = (prop.findtext('name') or '').strip()
            if name:
                properties[name] = (prop.findtext('value') or '').strip()
        return cls(properties, path)

    def lookup(self, name: str, default: str = '') -> str:
        """Value of ``name``.

        Exact key first; otherwise the first property whose name contains
        ``name`` followed by the end of the key, a ``.`` or a ``:``. A
        member key ending in ``rm1`` therefore never picks up ``rm10``.
        """
        if not name:
            return default
        if name in self._properties:
            return self._properties[name]
        pattern = re.compile(re.escape(name) + r'(?=$|[.:])')
        for key, value in self._properties.items():
            if pattern.search(key):
                return value
        return default

    def __getitem__(self, key: str) -> str:
        return self._properties[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._properties)

    def __len__(self) -> int:
        return len(self._properties)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Daemon Profiles
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class AddressKeys:
    """Site configuration keys describing a daemon's members.

    ``{member}`` in a key is replaced by the member suffix (``.ns1.nn1`` for
    HDFS, ``.rm1`` for YARN, empty without HA).
    """
    http: str
    https: str
    policy: str
    http_port: int
    https_port: int
    ids: str = ''
    groups: Tuple[str, ...] = ()
    identity: str = ''
    hostname: str = ''
    rpc: str = ''
    data: str = ''
    scoped_by_group: bool = False

    def member_suffix(self, group: str, member_id: str) -> str:
        if not member_id:
            return ''
        if self.scoped_by_group and group:
            return f".{group}.{member_id}"
        return f".{member_id}"


@dataclass(frozen=True)
class HaRole:
    """Where a daemon reports its own HA role and host identity."""
    host_bean: str
    host_key: str
    state_bean: str = ''
    state_key: str = ''
    active_value: str = 'active'


@dataclass(frozen=True)
class DaemonProfile:
    """Static per-daemon behaviour: keys, payload, catalogue and labels."""
    prefix: str
    shape: PayloadShape
    path: str
    keys: AddressKeys
    site_config: str
    listen_address: str
    labels: Tuple[str, ...]
    beans: Mapping[str, Mapping[str, str]] = field(default_factory=dict)
    role: Optional[HaRole] = None
    fails_over_on_standby: bool = False

    @property
    def liveness_labels(self) -> Tuple[str, ...]:
        if self.shape is PayloadShape.APPS:
            return ('serverip', 'clusterid', 'resourcemanagerid')
        return self.labels


JMX_PATH = '/jmx'
APPS_PATH = '/ws/v1/cluster/apps?deSelects=resourceRequests&state=RUNNING,FINISHED,FAILED,KILLED'

# Bean catalogues: bean name template -> {metric name: dotted key in the bean}
RPC_ACTIVITY_METRICS = {
    'RpcQueueTimeNumOps': 'RpcQueueTimeNumOps',
    'RpcQueueTimeAvgTime': 'RpcQueueTimeAvgTime',
    'RpcProcessingTimeNumOps': 'RpcProcessingTimeNumOps',
    'RpcProcessingTimeAvgTime': 'RpcProcessingTimeAvgTime',
}

HEAP_MEMORY_METRICS = {
    'heapMemoryUsageCommitted': 'HeapMemoryUsage.committed',
    'heapMemoryUsageInit': 'HeapMemoryUsage.init',
    'heapMemoryUsageMax': 'HeapMemoryUsage.max',
    'heapMemoryUsageUsed': 'HeapMemoryUsage.used',
}

JVM_LOG_METRICS = {
    'LogFatal': 'LogFatal',
    'LogError': 'LogError',
    'LogWarn': 'LogWarn',
    'LogInfo': 'LogInfo',
}

OPERATING_SYSTEM_METRICS = {
    'SystemLoadAverage': 'SystemLoadAverage',
    'MaxFileDescriptorCount': 'MaxFileDescriptorCount',
    'OpenFileDescriptorCount': 'OpenFileDescriptorCount',
    'TotalPhysicalMemorySize': 'TotalPhysicalMemorySize',
    'FreePhysicalMemorySize': 'FreePhysicalMemorySize',
    'AvailableProcessors': 'AvailableProcessors',
}

NAMENODE_BEANS = {
    'Hadoop:service=NameNode,name=FSNamesystem': {
        'MissingBlocks': 'MissingBlocks',
        'CapacityTotal': 'CapacityTotal',
        'CapacityUsed': 'CapacityUsed',
        'CapacityRemaining': 'CapacityRemaining',
        'CapacityUsedNonDFS': 'CapacityUsedNonDFS',
        'BlocksTotal': 'BlocksTotal',
        'FilesTotal': 'FilesTotal',
        'CorruptBlocks': 'CorruptBlocks',
        'UnderReplicatedBlocks': 'UnderReplicatedBlocks',
        'ExcessBlocks': 'ExcessBlocks',
        'PendingDeletionBlocks': 'PendingDeletionBlocks',
        'NumActiveClients': 'NumActiveClients',
        'LastCheckpointTime': 'LastCheckpointTime',
    },
    'Hadoop:service=NameNode,name=FSNamesystemState': {
        'NumLiveDataNodes': 'NumLiveDataNodes',
        'NumDeadDataNodes': 'NumDeadDataNodes',
        'NumDecomLiveDataNodes': 'NumDecomLiveDataNodes',
        'NumDecomDeadDataNodes': 'NumDecomDeadDataNodes',
        'NumDecommissioningDataNodes': 'NumDecommissioningDataNodes',
        'VolumeFailuresTotal': 'VolumeFailuresTotal',
        'StaleDataNodes': 'NumStaleDataNodes',
    },
    'Hadoop:service=NameNode,name=RpcActivityForPort{rpc_port}': RPC_ACTIVITY_METRICS,
    'java.lang:type=GarbageCollector,name=ParNew': {
        'ParNew_CollectionCount': 'CollectionCount',
        'ParNew_CollectionTime': 'CollectionTime',
    },
    'java.lang:type=GarbageCollector,name=ConcurrentMarkSweep': {
        'ConcurrentMarkSweep_CollectionCount': 'CollectionCount',
        'ConcurrentMarkSweep_CollectionTime': 'CollectionTime',
    },
    'java.lang:type=Memory': HEAP_MEMORY_METRICS,
    'Hadoop:service=NameNode,name=JvmMetrics': JVM_LOG_METRICS,
    'java.lang:type=Runtime': {
        'Uptime': 'Uptime',
    },
    'java.lang:type=OperatingSystem': OPERATING_SYSTEM_METRICS,
    'Hadoop:service=NameNode,name=NameNodeStatus': {
        'LastHATransitionTime': 'LastHATransitionTime',
    },
}

DATANODE_BEANS = {
    'Hadoop:service=DataNode,name=DataNodeInfo': {
        'XceiverCount': 'XceiverCount',
    },
    'Hadoop:service=DataNode,name=FSDatasetState': {
        'CapacityTotal': 'Capacity',
        'CapacityUsed': 'DfsUsed',
        'CapacityRemaining': 'Remaining',
    },
    'Hadoop:service=DataNode,name=DataNodeActivity-{hostname}-{data_port}': {
        'VolumeFailures': 'VolumeFailures',
        'ReadBlockOpAvgTime': 'ReadBlockOpAvgTime',
        'WriteBlockOpAvgTime': 'WriteBlockOpAvgTime',
        'WritesFromRemoteClient': 'WritesFromRemoteClient',
        'WritesFromLocalClient': 'WritesFromLocalClient',
        'ReadsFromRemoteClient': 'ReadsFromRemoteClient',
        'ReadsFromLocalClient': 'ReadsFromLocalClient',
        'DatanodeNetworkErrors': 'DatanodeNetworkErrors',
    },
    'Hadoop:service=DataNode,name=RpcActivityForPort{rpc_port}': dict(
        RPC_ACTIVITY_METRICS,
        ReceivedBytes='ReceivedBytes',
        SentBytes='SentBytes',
        NumOpenConnections='NumOpenConnections',
    ),
    'java.lang:type=Memory': HEAP_MEMORY_METRICS,
    'java.lang:type=Runtime': {
        'StartTime': 'StartTime',
    },
    'java.lang:type=OperatingSystem': OPERATING_SYSTEM_METRICS,
}

RESOURCEMANAGER_BEANS = {
    'Hadoop:service=ResourceManager,name=ClusterMetrics': {
        'NumActiveNms': 'NumActiveNMs',
        'NumLostNMs': 'NumLostNMs',
        'NumDecommissioningNMs': 'NumDecommissioningNMs',
        'NumDecommissionedNMs': 'NumDecommissionedNMs',
        'NumUnhealthyNMs': 'NumUnhealthyNMs',
        'NumRebootedNMs': 'NumRebootedNMs',
        'NumShutdownNMs': 'NumShutdownNMs',
        'AMLaunchDelayNumOps': 'AMLaunchDelayNumOps',
        'AMLaunchDelayAvgTime': 'AMLaunchDelayAvgTime',
        'AMRegisterDelayNumOps': 'AMRegisterDelayNumOps',
        'AMRegisterDelayAvgTime': 'AMRegisterDelayAvgTime',
    },
    'Hadoop:service=ResourceManager,name=QueueMetrics,q0=root,q1=default': {
        name: name for name in (
            'AllocatedVCores', 'ReservedVCores', 'AvailableVCores', 'PendingVCores',
            'AllocatedMB', 'AvailableMB', 'PendingMB', 'ReservedMB',
            'AppsSubmitted', 'AppsRunning', 'AppsPending', 'AppsCompleted',
            'AppsKilled', 'AppsFailed',
            'running_0', 'running_60', 'running_300', 'running_1440',
        )
    },
    'Hadoop:service=ResourceManager,name=RpcActivityForPort{rpc_port}': RPC_ACTIVITY_METRICS,
    'java.lang:type=Memory': HEAP_MEMORY_METRICS,
    'Hadoop:service=ResourceManager,name=JvmMetrics': JVM_LOG_METRICS,
    'java.lang:type=Runtime': {
        'StartTime': 'StartTime',
        'Uptime': 'Uptime',
    },
    'java.lang:type=OperatingSystem': OPERATING_SYSTEM_METRICS,
}

HDFS_NAMENODE_KEYS = AddressKeys(
    http='dfs.namenode.http-address{member}',
    https='dfs.namenode.https-address{member}',
    policy='dfs.http.policy',
    http_port=9870,
    https_port=9871,
    ids='dfs.ha.namenodes.{group}',
    groups=('dfs.internal.nameservices', 'dfs.nameservices'),
    identity='dfs.namenode.rpc-address{member}',
    scoped_by_group=True,
)

HDFS_DATANODE_KEYS = AddressKeys(
    http='dfs.datanode.http.address',
    https='dfs.datanode.https.address',
    policy='dfs.http.policy',
    http_port=9864,
    https_port=9865,
    groups=('dfs.internal.nameservices', 'dfs.nameservices'),
    rpc='dfs.datanode.ipc.address',
    data='dfs.datanode.address',
)

YARN_RESOURCEMANAGER_KEYS = AddressKeys(
    http='yarn.resourcemanager.webapp.address{member}',
    https='yarn.resourcemanager.webapp.https.address{member}',
    policy='yarn.http.policy',
    http_port=8088,
    https_port=8090,
    ids='yarn.resourcemanager.ha.rm-ids',
    groups=('yarn.resourcemanager.cluster-id',),
    identity='yarn.resourcemanager.resource-tracker.address{member}',
    hostname='yarn.resourcemanager.hostname{member}',
)

DAEMON_PROFILES: Dict[DaemonType, DaemonProfile] = {
    DaemonType.NAMENODE: DaemonProfile(
        prefix='NameNode',
        shape=PayloadShape.BEANS,
        path=JMX_PATH,
        keys=HDFS_NAMENODE_KEYS,
        site_config='/etc/hadoop/conf/hdfs-site.xml',
        listen_address=':9070',
        labels=('serverip', 'nameservice', 'namenodeid'),
        beans=NAMENODE_BEANS,
        role=HaRole(
            host_bean='Hadoop:service=NameNode,name=NameNodeStatus',
            host_key='HostAndPort',
            state_bean='Hadoop:service=NameNode,name=NameNodeStatus',
            state_key='State',
        ),
    ),
    DaemonType.DATANODE: DaemonProfile(
        prefix='DataNode',
        shape=PayloadShape.BEANS,
        path=JMX_PATH,
        keys=HDFS_DATANODE_KEYS,
        site_config='/etc/hadoop/conf/hdfs-site.xml',
        listen_address=':9071',
        labels=('serverip',),
        beans=DATANODE_BEANS,
    ),
    DaemonType.RESOURCEMANAGER: DaemonProfile(
        prefix='ResourceManager',
        shape=PayloadShape.BEANS,
        path=JMX_PATH,
        keys=YARN_RESOURCEMANAGER_KEYS,
        site_config='/etc/hadoop/conf/yarn-site.xml',
        listen_address=':9075',
        labels=('serverip', 'clusterid', 'resourcemanagerid'),
        beans=RESOURCEMANAGER_BEANS,
        role=HaRole(
            host_bean='Hadoop:service=ResourceManager,name=ClusterMetrics',
            host_key='tag.Hostname',
        ),
    ),
    DaemonType.APPLICATIONS: DaemonProfile(
        prefix='application',
        shape=PayloadShape.APPS,
        path=APPS_PATH,
        keys=YARN_RESOURCEMANAGER_KEYS,
        site_config='/etc/hadoop/conf/yarn-site.xml',
        listen_address=':9077',
        labels=('applicationID', 'amContainer', 'applicationType', 'name', 'user'),
        fails_over_on_standby=True,
    ),
}

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Topology Resolution
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class _Member:
    """One configured HA member before it becomes an Endpoint."""
    member_id: str
    identity_address: str
    host: str
    port: str


class TopologyResolver:
    """Derives the ServiceTopology of a daemon from its site configuration.

    Runs once at start-up. Self identification prefers an exact host match
    (configured host equal to the hostname, its short form, or the local IP,
    or resolving to the local IP) and falls back to the hostname appearing
    anywhere in the member's address. The fallback
    can pick the wrong member when one hostname is a prefix of another.
    """

    def __init__(
        self,
        daemon: DaemonType,
        logger: Optional[logging.Logger] = None,
        resolve_host: Callable[[str], str] = socket.gethostbyname
    ):
        self.daemon = daemon
        self.keys = daemon.profile.keys
        self.logger = logger or get_logger()
        self._resolve_host = resolve_host

    def _resolve(self, host: str) -> str:
        return resolve_address(host, self._resolve_host)

    def resolve(self, site: SiteConfig, hostname: str) -> ServiceTopology:
        """Build the topology for this host.

        Raises:
            MetricConfigurationError: If no endpoint can be derived
        """
        local_ip = self._resolve(hostname)
        https_only = site.lookup(self.keys.policy).strip().upper() == 'HTTPS_ONLY'
        protocol = Protocol.HTTPS if https_only else Protocol.HTTP
        groups = self._group_ids(site)

        if self.daemon is DaemonType.DATANODE:
            group = groups[0] if groups else ''
            topology = self._resolve_worker(site, hostname, local_ip, protocol, group)
        else:
            topology = self._resolve_group(site, hostname, local_ip, protocol, groups)

        self.logger.info(
            f"Resolved {self.daemon.value} topology: group={topology.group_id or '-'} "
            f"self={topology.self_endpoint or '-'} "
            f"peers=[{', '.join(str(p) for p in topology.peers)}] "
            f"active={topology.active}"
        )
        if topology.self_endpoint is None:
            self.logger.warning(
                f"Host {hostname} did not match any configured {self.daemon.value}; "
                f"member labels will be empty"
            )
        return topology

    def _group_ids(self, site: SiteConfig) -> List[str]:
        """Every nameservice or cluster id listed by the first key that has any."""
        for key in self.keys.groups:
            ids = [group.strip() for group in site.lookup(key).split(',') if group.strip()]
            if ids:
                return ids
        return []

    def _member_ids(self, site: SiteConfig, group: str) -> List[str]:
        if not self.keys.ids:
            return []
        if '{group}' in self.keys.ids and not group:
            return []
        raw = site.lookup(self.keys.ids.format(group=group))
        return [member_id.strip() for member_id in raw.split(',') if member_id.strip()]

    def _web_key(self, protocol: Protocol) -> str:
        return self.keys.https if protocol is Protocol.HTTPS else self.keys.http

    def _default_port(self, protocol: Protocol) -> str:
        return str(self.keys.https_port if protocol is Protocol.HTTPS else self.keys.http_port)

    def _member(
        self,
        site: SiteConfig,
        group: str,
        member_id: str,
        protocol: Protocol
    ) -> _Member:
        suffix = self.keys.member_suffix(group, member_id)
        identity = site.lookup(self.keys.identity.format(member=suffix)) if self.keys.identity else ''
        web = site.lookup(self._web_key(protocol).format(member=suffix))
        named = site.lookup(self.keys.hostname.format(member=suffix)) if self.keys.hostname else ''

        web_host, web_port = split_host_port(web) if web else ('', '')
        identity_host, _ = split_host_port(identity) if identity else ('', '')

        host = ''
        for candidate in (web_host, identity_host, named):
            if candidate not in WILDCARD_HOSTS:
                host = candidate
                break

        return _Member(
            member_id=member_id,
            identity_address=identity or web or named,
            host=host,
            port=web_port if web_port.isdigit() else ''
        )

    def _identify_self(
        self,
        members: Sequence[_Member],
        hostname: str,
        local_ip: str,
        containment: bool = True
    ) -> Optional[_Member]:
        names = {hostname, hostname.split('.')[0], local_ip} - {''}

        for member in members:
            identity_host, _ = split_host_port(member.identity_address)
            for host in (identity_host, member.host):
                if host in names or (host not in WILDCARD_HOSTS and self._resolve(host) == local_ip):
                    return member

        if hostname and containment:
            for member in members:
                if hostname in member.identity_address:
                    self.logger.verbose(
                        f"Matched {member.member_id or 'member'} by hostname containment in "
                        f"{member.identity_address}"
                    )
                    return member
        return None

    def _group_members(
        self,
        site: SiteConfig,
        group: str,
        local_ip: str,
        protocol: Protocol
    ) -> List[_Member]:
        member_ids = self._member_ids(site, group) or ['']
        members = [self._member(site, group, member_id, protocol) for member_id in member_ids]

        # A single unnamed master bound to a wildcard address is this host
        if member_ids == [''] and not members[0].host and members[0].identity_address:
            members[0] = _Member('', members[0].identity_address, local_ip, members[0].port)
        return members

    def _select_group(
        self,
        site: SiteConfig,
        hostname: str,
        local_ip: str,
        protocol: Protocol,
        groups: Sequence[str]
    ) -> Tuple[str, List[_Member], Optional[_Member]]:
        """Pick the group this host belongs to.

        A federated cluster lists several nameservices; the one holding the
        self member wins, exact host matches before containment matches in
        any group. Without a match the first listed group is used.
        """
        candidates = [(group, self._group_members(site, group, local_ip, protocol))
                      for group in (groups or [''])]

        for containment in (False, True):
            for group, members in candidates:
                self_member = self._identify_self(members, hostname, local_ip, containment)
                if self_member is not None:
                    if len(candidates) > 1:
                        self.logger.verbose(f"Host {hostname} belongs to {self.daemon.value} group {group}")
                    return group, members, self_member

        group, members = candidates[0]
        return group, members, None

    def _resolve_group(
        self,
        site: SiteConfig,
        hostname: str,
        local_ip: str,
        protocol: Protocol,
        groups: Sequence[str]
    ) -> ServiceTopology:
        group, members, self_member = self._select_group(site, hostname, local_ip, protocol, groups)
        fallback_port = (self_member.port if self_member and self_member.port else '') \
            or next((m.port for m in members if m.port), '') \
            or self._default_port(protocol)

        peers = []
        self_endpoint = None
        for member in members:
            if not member.host:
                self.logger.warning(
                    f"No address configured for {self.daemon.value} member "
                    f"{member.member_id or '(default)'}, skipping"
                )
                continue
            endpoint = Endpoint(
                host=self._resolve(member.host),
                port=int(member.port or fallback_port),
                protocol=protocol,
                member_id=member.member_id
            )
            if endpoint not in peers:
                peers.append(endpoint)
            if member is self_member:
                self_endpoint = endpoint

        if not peers:
            raise MetricConfigurationError(
                f"No {self.daemon.value} web address found in site configuration "
                f"(key {self._web_key(protocol).format(member='')}...)"
            )

        rpc_port = ''
        if self_member is not None:
            _, rpc_port = split_host_port(self_member.identity_address)

        return ServiceTopology(
            daemon=self.daemon,
            peers=tuple(peers),
            active=self_endpoint or peers[0],
            self_endpoint=self_endpoint,
            group_id=group,
            server_ip=local_ip,
            hostname=hostname,
            rpc_port=rpc_port if rpc_port.isdigit() else ''
        )

    def _resolve_worker(
        self,
        site: SiteConfig,
        hostname: str,
        local_ip: str,
        protocol: Protocol,
        group: str
    ) -> ServiceTopology:
        _, port = split_host_port(site.lookup(self._web_key(protocol)))
        _, rpc_port = split_host_port(site.lookup(self.keys.rpc))
        _, data_port = split_host_port(site.lookup(self.keys.data))

        if not local_ip:
            raise MetricConfigurationError(f"Cannot determine local address of host {hostname!r}")

        endpoint = Endpoint(
            host=local_ip,
            port=int(port if port.isdigit() else self._default_port(protocol)),
            protocol=protocol
        )
        return ServiceTopology(
            daemon=self.daemon,
            peers=(endpoint,),
            active=endpoint,
            self_endpoint=endpoint,
            group_id=group,
            server_ip=local_ip,
            hostname=hostname,
            rpc_port=rpc_port if rpc_port.isdigit() else '',
            data_port=data_port if data_port.isdigit() else ''
        )

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Target Tracking
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class TargetTracker:
    """Owns the assumed-active endpoint of a topology and drives failover.

    No health history is kept: each cycle derives liveness from its own
    request outcome. Only the assumed-active endpoint carries over.
    """

    def __init__(
        self,
        topology: ServiceTopology,
        logger: Optional[logging.Logger] = None,
        resolve_host: Callable[[str], str] = socket.gethostbyname
    ):
        self._topology = topology
        self._lock = threading.Lock()
        self._resolve_host = resolve_host
        self.logger = logger or get_logger()

    @property
    def topology(self) -> ServiceTopology:
        return self._topology

    def current_endpoint(self) -> Endpoint:
        """Endpoint currently assumed to be active."""
        with self._lock:
            return self._topology.active

    def report_failure(self, endpoint: Endpoint) -> Endpoint:
        """Record that ``endpoint`` failed and select the next peer.

        The next peer after the failed one in configured order (wrapping) is
        selected; with two peers that is simply the other one. Reports about
        an endpoint that is no longer the assumed-active one are ignored.

        Returns:
            The assumed-active endpoint after the report
        """
        with self._lock:
            current = self._topology.active
            if endpoint != current:
                self.logger.verbose(
                    f"Ignoring failure of {endpoint}: active endpoint is already {current}"
                )
                return current

            peers = self._topology.peers
            try:
                index = peers.index(current)
            except ValueError:
                index = -1

            for offset in range(1, len(peers) + 1):
                candidate = peers[(index + offset) % len(peers)]
                if candidate != endpoint:
                    self._topology.assume_active(candidate)
                    self.logger.warning(f"Failing over from {endpoint} to {candidate}")
                    return candidate

            self.logger.verbose(f"No alternate endpoint for {endpoint}")
            return current

    def correct_liveness(self, liveness: LivenessState, reported_host: str) -> LivenessState:
        """Force ``active`` off when the payload comes from a different host."""
        if not reported_host or liveness.active is not True:
            return liveness

        host, _ = split_host_port(reported_host)
        expected = {self._topology.server_ip}
        if self._topology.self_endpoint is not None:
            expected.add(self._topology.self_endpoint.host)
        expected.discard('')

        if host in expected or resolve_address(host, self._resolve_host) in expected:
            return liveness

        self.logger.verbose(
            f"Payload reports host {reported_host}, not this host ({', '.join(sorted(expected))}); "
            f"marking not active"
        )
        return LivenessState(reachable=liveness.reachable, active=False)

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Scrape Engine
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class RawBean(Mapping):
    """One record of an introspection payload: a JMX bean or an application."""

    def __init__(self, data: Mapping[str, Any]):
        self._data = data

    @property
    def name(self) -> str:
        return self.text('name')

    def text(self, key: str, default: str = '') -> str:
        """String value of ``key``."""
        value = self._data.get(key)
        return default if value is None else str(value)

    def lookup(self, path: str) -> float:
        """Numeric value at a dotted path (``HeapMemoryUsage.used``).

        Raises:
            FieldExtractionMiss: If the path is absent or the value is not numeric
        """
        if path in self._data:
            value = self._data[path]
        else:
            value = self._data
            for key in path.split('.'):
                if not isinstance(value, Mapping) or key not in value:
                    raise FieldExtractionMiss(path, self.name or self.text('id'))
                value = value[key]

        if value is None or isinstance(value, (Mapping, list)):
            raise FieldExtractionMiss(path, self.name or self.text('id'))
        try:
            return float(value)
        except (TypeError, ValueError):
            raise FieldExtractionMiss(path, self.name or self.text('id'))

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)


@dataclass
class ScrapeResult:
    """Outcome of one successful introspection request."""
    endpoint: Endpoint
    records: List[RawBean]
    status_code: int = 200
    elapsed: float = 0


class ScrapeEngine:
    """Issues introspection requests and decodes their payloads."""

    APPLICATION_STATES = ('RUNNING', 'FINISHED', 'FAILED', 'KILLED')

    def __init__(
        self,
        daemon: DaemonType,
        logger: Optional[logging.Logger] = None,
        session: Optional[requests.Session] = None,
        verify_tls: bool = True
    ):
        self.daemon = daemon
        self.profile = daemon.profile
        self.logger = logger or get_logger()
        self.session = session or requests.Session()
        self.verify_tls = verify_tls

    def url_for(self, endpoint: Endpoint) -> str:
        return endpoint.url + self.profile.path

    def scrape(self, endpoint: Endpoint, timeout: int = DEFAULT_TIMEOUT) -> ScrapeResult:
        """GET the endpoint's introspection path and decode the records.

        Raises:
            EndpointUnreachableError: On network errors, timeouts or non-200 status
            EndpointStandbyError: On a 307 redirect to the active member
            PayloadShapeError: If the body lacks the expected structure
        """
        url = self.url_for(endpoint)
        self.logger.verbose(f"Requesting {url} (timeout {timeout}s)")
        started = time.monotonic()

        try:
            response = self.session.get(
                url,
                timeout=timeout,
                allow_redirects=False,
                verify=self.verify_tls,
                headers={'Accept': 'application/json'}
            )
        except requests.exceptions.RequestException as e:
            raise EndpointUnreachableError(endpoint, f"Request to {url} failed: {e}") from e

        elapsed = time.monotonic() - started

        if response.status_code == 307:
            raise EndpointStandbyError(endpoint, response.headers.get('Location', ''))
        if response.status_code != 200:
            raise EndpointUnreachableError(
                endpoint,
                f"Request to {url} returned HTTP {response.status_code}",
                status_code=response.status_code
            )

        try:
            document = response.json()
        except ValueError as e:
            raise PayloadShapeError(f"Response from {url} is not valid JSON: {e}")

        records = self.decode(document)
        self.logger.verbose(f"Decoded {len(records)} records from {url} in {elapsed:.3f}s")
        return ScrapeResult(endpoint, records, response.status_code, elapsed)

    def decode(self, document: Any) -> List[RawBean]:
        """Extract the record list from a decoded JSON document."""
        if not isinstance(document, dict):
            raise PayloadShapeError(
                f"Expected a JSON object, got {type(document).__name__}"
            )
        if self.profile.shape is PayloadShape.BEANS:
            return self._decode_beans(document)
        return self._decode_apps(document)

    def _decode_beans(self, document: Dict[str, Any]) -> List[RawBean]:
        beans = document.get('beans')
        if not isinstance(beans, list):
            raise PayloadShapeError("Payload has no 'beans' array")
        return [RawBean(bean) for bean in beans if isinstance(bean, dict)]

    def _decode_apps(self, document: Dict[str, Any]) -> List[RawBean]:
        if 'apps' not in document:
            raise PayloadShapeError("Payload has no 'apps' object")

        apps = document['apps']
        if apps is None:
            # The RM renders an empty application list as {"apps": null}
            return []
        if not isinstance(apps, dict) or not isinstance(apps.get('app'), list):
            raise PayloadShapeError("Payload has no 'apps.app' array")

        records = []
        for app in apps['app']:
            if not isinstance(app, dict):
                continue
            if str(app.get('state', '')).upper() not in self.APPLICATION_STATES:
                continue
            records.append(RawBean(app))
        return records

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metric Definitions
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class MetricDefinition:
    """Static description of one exported gauge."""
    name: str
    key: str
    description: str = ''
    label_names: Tuple[str, ...] = ()
    running_only: bool = False

    def full_name(self, prefix: str) -> str:
        """Daemon-prefixed metric name."""
        return f"{prefix}_{self.name}"


@dataclass(frozen=True)
class BeanSelector:
    """Matches JMX beans by exact name, or by pattern when no exact bean exists."""
    name: str
    pattern: Optional[str] = None

    # Placeholders whose runtime value may differ from what the host reports
    LOOSE_FIELDS = ('hostname',)

    @classmethod
    def from_template(cls, template: str, values: Mapping[str, str]) -> 'BeanSelector':
        """Resolve ``{placeholder}`` fields of a bean name template."""
        parsed = list(string.Formatter().parse(template))
        fields = {name for _, name, _, _ in parsed if name}
        if not fields:
            return cls(template)

        missing = {name for name in fields if not values.get(name)}
        name = '' if missing else template.format(**values)
        wildcard = missing | (fields & set(cls.LOOSE_FIELDS))
        if not wildcard:
            return cls(name)

        pattern = ''
        for literal, placeholder, _, _ in parsed:
            pattern += re.escape(literal)
            if placeholder:
                pattern += r'[^,]+' if placeholder in wildcard else re.escape(str(values[placeholder]))
        return cls(name, pattern)

    def matches(self, bean_name: str) -> bool:
        if self.name and bean_name == self.name:
            return True
        return bool(self.pattern) and re.fullmatch(self.pattern, bean_name) is not None


class BeanRegistry:
    """Bean selectors and their metric definitions, resolved once per topology."""

    def __init__(self, entries: Sequence[Tuple[BeanSelector, Tuple[MetricDefinition, ...]]]):
        self._entries = list(entries)

    @classmethod
    def for_topology(cls, topology: ServiceTopology) -> 'BeanRegistry':
        profile = topology.daemon.profile
        values = {
            'rpc_port': topology.rpc_port,
            'hostname': topology.hostname,
            'data_port': topology.data_port,
        }
        entries = []
        for template, metrics in profile.beans.items():
            selector = BeanSelector.from_template(template, values)
            definitions = tuple(
                MetricDefinition(name, key, key, profile.labels)
                for name, key in metrics.items()
            )
            entries.append((selector, definitions))
        return cls(entries)

    def select(self, selector: BeanSelector, beans: Sequence[RawBean]) -> List[RawBean]:
        """Beans for a selector: exact name matches, else pattern matches."""
        if selector.name:
            exact = [bean for bean in beans if bean.name == selector.name]
            if exact:
                return exact
        if selector.pattern:
            return [bean for bean in beans if selector.matches(bean.name)]
        return []

    def __iter__(self) -> Iterator[Tuple[BeanSelector, Tuple[MetricDefinition, ...]]]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


APPLICATION_LABELS = DAEMON_PROFILES[DaemonType.APPLICATIONS].labels

APPLICATION_STATE = MetricDefinition(
    'applicationState', 'state', 'The application state 0,1,2,3', APPLICATION_LABELS
)

APPLICATION_METRICS = (
    MetricDefinition('startedTime', 'startedTime', "The application's start time", APPLICATION_LABELS),
    MetricDefinition('finishedTime', 'finishedTime', "The application's finish time", APPLICATION_LABELS),
    MetricDefinition('elapsedTime', 'elapsedTime', "The application's elapsed time", APPLICATION_LABELS),
    MetricDefinition('memorySeconds', 'memorySeconds', "The application's memory seconds", APPLICATION_LABELS),
    MetricDefinition('vcoreSeconds', 'vcoreSeconds', "The application's vcore seconds", APPLICATION_LABELS),
    # Only reported for RUNNING applications
    MetricDefinition('allocatedMB', 'allocatedMB', "The application's allocated memory MB",
                     APPLICATION_LABELS, running_only=True),
    MetricDefinition('allocatedVCores', 'allocatedVCores', "The application's allocated vcores",
                     APPLICATION_LABELS, running_only=True),
    MetricDefinition('reservedMB', 'reservedMB', "The application's reserved memory MB",
                     APPLICATION_LABELS, running_only=True),
    MetricDefinition('reservedVCores', 'reservedVCores', "The application's reserved vcores",
                     APPLICATION_LABELS, running_only=True),
    MetricDefinition('runningContainers', 'runningContainers', "The application's running containers",
                     APPLICATION_LABELS, running_only=True),
    MetricDefinition('queueUsagePercentage', 'queueUsagePercentage', "The application's usage of queue",
                     APPLICATION_LABELS, running_only=True),
    MetricDefinition('clusterUsagePercentage', 'clusterUsagePercentage', "The application's usage of cluster",
                     APPLICATION_LABELS, running_only=True),
)


class ApplicationState(Enum):
    """Lifecycle state of a YARN application as exported."""
    SUCCEEDED = 0
    RUNNING = 1
    FAILED = 2
    KILLED = 3
    UNKNOWN = -1


def application_state(state: str, final_status: str) -> ApplicationState:
    """Map ``state``/``finalStatus`` to the exported lifecycle state.

    RUNNING wins over any final status; otherwise KILLED, then SUCCEEDED,
    then FAILED, looked up across both fields.
    """
    state = (state or '').upper()
    statuses = {state, (final_status or '').upper()}
    if state == 'RUNNING':
        return ApplicationState.RUNNING
    for candidate in (ApplicationState.KILLED, ApplicationState.SUCCEEDED, ApplicationState.FAILED):
        if candidate.name in statuses:
            return candidate
    return ApplicationState.UNKNOWN


def am_container(container_logs: str) -> str:
    """Container id from an ``amContainerLogs`` URL."""
    parts = (container_logs or '').split('/')
    return parts[5] if len(parts) > 5 else ''

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metric Set
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass(frozen=True)
class MetricSample:
    """One labelled value produced by a scrape cycle."""
    name: str
    description: str
    label_names: Tuple[str, ...]
    label_values: Tuple[str, ...]
    value: float


class MetricSet:
    """Samples of one scrape cycle, keyed by name and label values.

    Adding a sample with an existing name and label values replaces it.
    """

    def __init__(self, samples: Optional[Sequence[MetricSample]] = None):
        self._samples: Dict[Tuple[str, Tuple[str, ...]], MetricSample] = OrderedDict()
        for sample in samples or ():
            self.add(sample)

    def add(self, sample: MetricSample) -> None:
        self._samples[(sample.name, sample.label_values)] = sample

    def add_value(
        self,
        prefix: str,
        definition: MetricDefinition,
        label_values: Tuple[str, ...],
        value: float
    ) -> None:
        self.add(MetricSample(
            name=definition.full_name(prefix),
            description=definition.description or definition.name,
            label_names=definition.label_names,
            label_values=label_values,
            value=float(value)
        ))

    def get(self, name: str, label_values: Optional[Tuple[str, ...]] = None) -> Optional[float]:
        """Value of a sample; without label values, the first sample named ``name``."""
        if label_values is not None:
            sample = self._samples.get((name, tuple(label_values)))
            return sample.value if sample else None
        for sample in self._samples.values():
            if sample.name == name:
                return sample.value
        return None

    def names(self) -> List[str]:
        return list(OrderedDict.fromkeys(sample.name for sample in self._samples.values()))

    def to_families(self) -> List[GaugeMetricFamily]:
        """Render samples as prometheus_client gauge families."""
        families: Dict[str, GaugeMetricFamily] = OrderedDict()
        for sample in self._samples.values():
            family = families.get(sample.name)
            if family is None:
                family = GaugeMetricFamily(
                    sample.name,
                    sample.description,
                    labels=list(sample.label_names)
                )
                families[sample.name] = family
            family.add_metric(list(sample.label_values), sample.value)
        return list(families.values())

    def __iter__(self) -> Iterator[MetricSample]:
        return iter(list(self._samples.values()))

    def __len__(self) -> int:
        return len(self._samples)

    def __contains__(self, name: object) -> bool:
        return any(sample.name == name for sample in self._samples.values())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MetricSet):
            return NotImplemented
        return list(self._samples.items()) == list(other._samples.items())

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class MetricExtractor:
    """Turns one cycle's JMX beans into a MetricSet."""

    def __init__(
        self,
        topology: ServiceTopology,
        registry: Optional[BeanRegistry] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.topology = topology
        self.prefix = topology.daemon.prefix
        self.registry = registry or BeanRegistry.for_topology(topology)
        self.logger = logger or get_logger()

    def extract(self, records: Sequence[RawBean]) -> MetricSet:
        """Extract every defined metric; absent fields are skipped."""
        metric_set = MetricSet()
        label_values = self.topology.label_values()

        for selector, definitions in self.registry:
            for bean in self.registry.select(selector, records):
                for definition in definitions:
                    try:
                        value = bean.lookup(definition.key)
                    except FieldExtractionMiss as e:
                        self.logger.verbose(f"Skipping {definition.full_name(self.prefix)}: {e}")
                        continue
                    metric_set.add_value(self.prefix, definition, label_values, value)

        return metric_set


class ApplicationMetricExtractor:
    """Turns one cycle's application records into per-application samples."""

    def __init__(
        self,
        topology: ServiceTopology,
        logger: Optional[logging.Logger] = None
    ):
        self.topology = topology
        self.prefix = topology.daemon.prefix
        self.definitions = APPLICATION_METRICS
        self.logger = logger or get_logger()

    def extract(self, records: Sequence[RawBean]) -> MetricSet:
        """Emit the lifecycle state and counters of every application."""
        metric_set = MetricSet()

        for record in records:
            app_id = record.text('id')
            if not app_id:
                self.logger.verbose("Skipping application record without id")
                continue

            label_values = (
                app_id,
                am_container(record.text('amContainerLogs')),
                record.text('applicationType'),
                record.text('name'),
                record.text('user'),
            )
            state = record.text('state').upper()
            lifecycle = application_state(state, record.text('finalStatus'))
            metric_set.add_value(self.prefix, APPLICATION_STATE, label_values, lifecycle.value)

            for definition in self.definitions:
                if definition.running_only and state != 'RUNNING':
                    continue
                try:
                    value = record.lookup(definition.key)
                except FieldExtractionMiss as e:
                    self.logger.verbose(f"Skipping {definition.full_name(self.prefix)}: {e}")
                    continue
                metric_set.add_value(self.prefix, definition, label_values, value)

        return metric_set

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Metrics Collection
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

@dataclass
class ScrapeAttempt:
    """One request of a cycle and what it told us about the endpoint."""
    endpoint: Endpoint
    state: EndpointState = EndpointState.UNKNOWN
    result: Optional[ScrapeResult] = None
    error: Optional[MetricCollectionError] = None


@dataclass
class CollectionStats:
    """Statistics for scrape cycles, reported by the health check.

    Attributes:
        attempts (int): Total scrape cycles
        successful (int): Cycles that produced a payload
        errors (int): Cycles that ended without a payload
        failovers (int): Failovers performed
        consecutive_failures (int): Current streak of failed cycles
        last_collection_time (float): Duration of last cycle
        total_collection_time (float): Cumulative cycle time
        last_collection_datetime (datetime): Timestamp of last cycle
        last_state (EndpointState): Outcome of the last cycle
        last_endpoint (str): Endpoint used by the last cycle
    """
    attempts: int = 0
    successful: int = 0
    errors: int = 0
    failovers: int = 0
    consecutive_failures: int = 0
    last_collection_time: float = 0
    total_collection_time: float = 0
    last_collection_datetime: Optional[datetime] = None
    last_state: EndpointState = EndpointState.UNKNOWN
    last_endpoint: str = ''

    def record(self, attempt: ScrapeAttempt, duration: float, failed_over: bool) -> None:
        """Update statistics after a cycle."""
        self.attempts += 1
        if failed_over:
            self.failovers += 1
        if attempt.result is not None:
            self.successful += 1
            self.consecutive_failures = 0
        else:
            self.errors += 1
            self.consecutive_failures += 1
        self.last_collection_time = duration
        self.total_collection_time += duration
        self.last_collection_datetime = ProgramConfig.now_utc()
        self.last_state = attempt.state
        self.last_endpoint = attempt.endpoint.url

    def get_average_collection_time(self) -> float:
        """Calculate average cycle time."""
        return self.total_collection_time / self.attempts if self.attempts > 0 else 0

    def is_healthy(self, threshold: int) -> bool:
        """Determine if collection statistics indicate healthy operation."""
        return self.consecutive_failures < threshold


class HadoopCollector:
    """prometheus_client collector running one scrape cycle per collect().

    Cycles are serialized; the only state shared between them is the
    tracker's assumed-active endpoint (and the health statistics).
    """

    def __init__(
        self,
        settings: ExporterSettings,
        topology: ServiceTopology,
        logger: Optional[logging.Logger] = None,
        tracker: Optional[TargetTracker] = None,
        engine: Optional[ScrapeEngine] = None,
        resolve_host: Callable[[str], str] = socket.gethostbyname
    ):
        self.settings = settings
        self.topology = topology
        self.daemon = topology.daemon
        self.profile = topology.daemon.profile
        self.logger = logger or get_logger()
        self.tracker = tracker or TargetTracker(topology, self.logger, resolve_host)
        self.engine = engine or ScrapeEngine(
            self.daemon, self.logger, verify_tls=settings.verify_tls
        )
        if self.profile.shape is PayloadShape.APPS:
            self.extractor = ApplicationMetricExtractor(topology, self.logger)
        else:
            self.extractor = MetricExtractor(topology, logger=self.logger)
        self.stats = CollectionStats()
        self._cycle_lock = threading.Lock()

    def describe(self) -> List[GaugeMetricFamily]:
        # Prevents the registry from running a scrape cycle at registration
        return []

    def collect(self) -> Iterator[GaugeMetricFamily]:
        yield from self.run_cycle().to_families()

    def run_cycle(self) -> MetricSet:
        """Scrape, fail over at most once, extract and add liveness gauges."""
        with self._cycle_lock:
            started = time.monotonic()

            attempt = self._attempt(self.tracker.current_endpoint())
            failed_over = False
            if self._needs_failover(attempt):
                self.tracker.report_failure(attempt.endpoint)
                alternate = self.tracker.current_endpoint()
                if alternate != attempt.endpoint:
                    failed_over = True
                    self.logger.info(f"Retrying scrape against {alternate}")
                    attempt = self._attempt(alternate)

            metric_set = MetricSet()
            if attempt.result is not None:
                try:
                    metric_set = self.extractor.extract(attempt.result.records)
                except Exception as e:
                    self.logger.error(f"Failed to extract metrics from {attempt.endpoint}: {e}", exc_info=True)

            liveness = self._liveness(attempt)
            self._add_liveness(metric_set, liveness, attempt.endpoint)

            duration = time.monotonic() - started
            self.stats.record(attempt, duration, failed_over)
            self.logger.verbose(
                f"Scrape of {attempt.endpoint} finished in {duration:.3f}s: "
                f"{liveness.state.value}, {len(metric_set)} samples"
            )
            return metric_set

    def _attempt(self, endpoint: Endpoint) -> ScrapeAttempt:
        try:
            result = self.engine.scrape(endpoint, self.settings.request_timeout)
        except EndpointStandbyError as e:
            self.logger.info(str(e))
            return ScrapeAttempt(endpoint, EndpointState.STANDBY, error=e)
        except EndpointUnreachableError as e:
            self.logger.error(f"Endpoint {endpoint} unreachable: {e}")
            return ScrapeAttempt(endpoint, EndpointState.UNREACHABLE, error=e)
        except PayloadShapeError as e:
            self.logger.error(f"Unexpected payload from {endpoint}: {e}")
            return ScrapeAttempt(endpoint, EndpointState.REACHABLE, error=e)
        return ScrapeAttempt(endpoint, EndpointState.REACHABLE, result=result)

    def _needs_failover(self, attempt: ScrapeAttempt) -> bool:
        if attempt.state is EndpointState.UNREACHABLE:
            return True
        return attempt.state is EndpointState.STANDBY and self.profile.fails_over_on_standby

    def _liveness(self, attempt: ScrapeAttempt) -> LivenessState:
        role = self.profile.role
        if attempt.state is EndpointState.UNREACHABLE:
            return LivenessState(reachable=False, active=False if role else None)
        if role is None:
            return LivenessState(reachable=True)
        if attempt.state is EndpointState.STANDBY or attempt.result is None:
            return LivenessState(reachable=True, active=False)

        records = attempt.result.records
        active = True
        if role.state_bean:
            state_bean = self._find_bean(records, role.state_bean)
            active = state_bean is not None and \
                state_bean.text(role.state_key).lower() == role.active_value
        liveness = LivenessState(reachable=True, active=active)

        host_bean = self._find_bean(records, role.host_bean)
        if host_bean is not None:
            liveness = self.tracker.correct_liveness(liveness, host_bean.text(role.host_key))
        return liveness

    @staticmethod
    def _find_bean(records: Sequence[RawBean], name: str) -> Optional[RawBean]:
        for record in records:
            if record.name == name:
                return record
        return None

    def _add_liveness(self, metric_set: MetricSet, liveness: LivenessState, endpoint: Endpoint) -> None:
        prefix = self.profile.prefix
        label_names = self.profile.liveness_labels
        label_values = self.topology.label_values(endpoint)

        metric_set.add(MetricSample(
            name=f"{prefix}_ServerActive",
            description='1 if the daemon answered the last introspection request, 0 otherwise',
            label_names=label_names,
            label_values=label_values,
            value=1.0 if liveness.reachable else 0.0
        ))
        if self.profile.role is not None:
            metric_set.add(MetricSample(
                name=f"{prefix}_isActive",
                description='1 if the scraped daemon is the active member of its HA group',
                label_names=label_names,
                label_values=label_values,
                value=1.0 if liveness.active else 0.0
            ))

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Exposition and Health Check Endpoints
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """WSGI server handling each request in its own thread."""
    daemon_threads = True


class _QuietRequestHandler(WSGIRequestHandler):
    """Request handler logging through the exporter logger."""

    def log_message(self, format, *args):
        get_logger().verbose(f"{self.address_string()} {format % args}")


class WSGIEndpoint:
    """A WSGI app served from a background thread."""

    THREAD_NAME = "WSGIServer"

    def __init__(self, host: str, port: int, logger: logging.Logger):
        self.host = host
        self.port = port
        self.logger = logger
        self._server = None
        self._thread = None

    def create_app(self) -> Callable:
        raise NotImplementedError

    def start(self) -> bool:
        """Start the server in a separate thread."""
        try:
            self._server = make_server(
                self.host,
                self.port,
                self.create_app(),
                server_class=_ThreadingWSGIServer,
                handler_class=_QuietRequestHandler
            )
            self._thread = threading.Thread(
                target=self._server.serve_forever,
                name=self.THREAD_NAME,
                daemon=True
            )
            self._thread.start()
            self.logger.info(f"Started {self.THREAD_NAME} on {self.host or '*'}:{self.port}")
            return True
        except Exception as e:
            self.logger.error(f"Failed to start {self.THREAD_NAME} on port {self.port}: {e}")
            return False

    def stop(self) -> None:
        """Stop the server."""
        if not self._server:
            return

        try:
            self.logger.info(f"Stopping {self.THREAD_NAME}")
            self._server.shutdown()
            self._server.server_close()
            if self._thread and self._thread.is_alive():
                self._thread.join(timeout=5)
                if self._thread.is_alive():
                    self.logger.warning(f"{self.THREAD_NAME} thread failed to stop")
        except Exception as e:
            self.logger.error(f"Error stopping {self.THREAD_NAME}: {e}")
        finally:
            self._server = None
            self._thread = None


class ExpositionServer(WSGIEndpoint):
    """Serves the collector registry on the configured metrics path."""

    THREAD_NAME = "ExpositionServer"

    LANDING_PAGE = """<html>
<head><title>{title} Exporter</title></head>
<body>
<h1>{title} Exporter</h1>
<p><a href="{path}">Metrics</a></p>
</body>
</html>
"""

    def __init__(
        self,
        settings: ExporterSettings,
        registry: CollectorRegistry,
        logger: logging.Logger
    ):
        super().__init__(settings.listen_host, settings.listen_port, logger)
        self.settings = settings
        self.registry = registry

    def create_app(self) -> Callable:
        """Create WSGI application routing the metrics path to the registry."""
        metrics_app = make_wsgi_app(self.registry)
        metrics_path = self.settings.metrics_path.rstrip('/') or '/'
        landing = self.LANDING_PAGE.format(
            title=self.settings.daemon.prefix,
            path=self.settings.metrics_path
        ).encode()

        def app(environ, start_response):
            path = environ.get('PATH_INFO', '').rstrip('/') or '/'

            if path == metrics_path:
                return metrics_app(environ, start_response)
            if path == '/':
                start_response('200 OK', [('Content-Type', 'text/html; charset=utf-8')])
                return [landing]

            start_response('404 Not Found', [('Content-Type', 'text/plain')])
            return [b'Not Found']

        return app


class HealthCheck(WSGIEndpoint):
    """Health check endpoint implementation.

    Endpoints:
        GET /health: Exporter health and failover status

    Response Codes:
        200: Recent scrapes reached the daemon
        503: failure_threshold consecutive scrapes failed
        404: Invalid endpoint
    """

    THREAD_NAME = "HealthCheckServer"

    def __init__(
        self,
        config: ProgramConfig,
        collector: HadoopCollector,
        logger: logging.Logger
    ):
        settings = collector.settings
        super().__init__(settings.listen_host, settings.health_port, logger)
        self.config = config
        self.collector = collector

    def _create_error_response(self, status: str, message: str) -> bytes:
        """Create standardized error response."""
        response = {
            "status": status,
            "error": message,
            "timestamp_utc": self.config.now_utc().isoformat()
        }
        return json.dumps(response, indent=2).encode()

    def build_status(self) -> Tuple[bool, Dict[str, Any]]:
        """Health flag and JSON body."""
        settings = self.collector.settings
        stats = self.collector.stats
        topology = self.collector.topology
        is_healthy = stats.is_healthy(settings.failure_threshold)

        response = {
            "service": {
                "status": "healthy" if is_healthy else "unhealthy",
                "up": True,
                "daemon": settings.daemon.value,
                "current_datetime_utc": self.config.now_utc().isoformat(),
                "last_scrape_datetime_utc": (
                    stats.last_collection_datetime.isoformat()
                    if stats.last_collection_datetime else None
                ),
                "uptime_seconds": round(self.config.get_uptime_seconds(), 6),
                "process_id": os.getpid(),
                "systemd_managed": self.config.running_under_systemd
            },
            "stats": {
                "scrapes": {
                    "attempts": stats.attempts,
                    "successful": stats.successful,
                    "errors": stats.errors,
                    "failovers": stats.failovers,
                    "consecutive_failures": stats.consecutive_failures,
                    "failure_threshold": settings.failure_threshold,
                    "last_state": stats.last_state.value,
                    "last_endpoint": stats.last_endpoint,
                    "timing": {
                        "last_scrape_seconds": round(stats.last_collection_time, 3),
                        "average_scrape_seconds": round(stats.get_average_collection_time(), 3)
                    }
                },
                "configuration": {
                    "site_config": str(settings.site_config),
                    "metrics_path": settings.metrics_path,
                    "request_timeout_seconds": settings.request_timeout
                }
            },
            "topology": {
                "group_id": topology.group_id,
                "member_id": topology.member_id,
                "server_ip": topology.server_ip,
                "self": topology.self_endpoint.url if topology.self_endpoint else None,
                "active": self.collector.tracker.current_endpoint().url,
                "peers": [str(peer) for peer in topology.peers]
            }
        }
        return is_healthy, response

    def create_app(self) -> Callable:
        """Create WSGI application for health checks."""
        def app(environ, start_response):
            try:
                path = environ.get('PATH_INFO', '').rstrip('/')

                if path not in ['', '/health']:
                    start_response('404 Not Found', [('Content-Type', 'application/json')])
                    return [self._create_error_response("error", "Not Found")]

                is_healthy, response = self.build_status()
                status = '200 OK' if is_healthy else '503 Service Unavailable'
                headers = [
                    ('Content-Type', 'application/json'),
                    ('Cache-Control', 'no-cache, no-store, must-revalidate')
                ]
                start_response(status, headers)
                return [json.dumps(response, indent=2).encode()]

            except Exception as e:
                self.logger.error(f"Health check error: {e}", exc_info=True)
                start_response('500 Internal Server Error', [('Content-Type', 'application/json')])
                return [self._create_error_response("error", str(e))]

        return app

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~
# Main Service Class and Entry Point
#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

class HadoopExporter:
    """Main service class for the Hadoop exporter.

    Resolves the daemon topology, registers the collector and runs the
    exposition (and optional health check) servers until a shutdown signal.

    Raises:
        MetricConfigurationError: If the site configuration is unusable
    """

    def __init__(
        self,
        config: ProgramConfig,
        logger: logging.Logger,
        site: Optional[SiteConfig] = None
    ):
        self.config = config
        self.settings = config.settings
        self.logger = logger
        self.shutdown_event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._servers_started = False

        self.logger.info(f"Starting {self.settings.daemon.value} exporter initialization")

        try:
            site = site or SiteConfig.from_file(self.settings.site_config)
            hostname = self.settings.hostname or socket.gethostname()
            self.topology = TopologyResolver(self.settings.daemon, self.logger).resolve(site, hostname)
        except MetricConfigurationError as e:
            self.logger.error(f"Configuration error: {e}")
            raise

        self.collector = HadoopCollector(self.settings, self.topology, self.logger)
        self.registry = CollectorRegistry(auto_describe=False)
        self.registry.register(self.collector)

        self.exposition = ExpositionServer(self.settings, self.registry, self.logger)
        self.health_check = None
        if self.settings.health_port is not None:
            self.health_check = HealthCheck(self.config, self.collector, self.logger)

        self.logger.info("Hadoop exporter initialized")

    def _handle_signal(self, signum, frame):
        """Handle shutdown signals."""
        signal_name = signal.Signals(signum).name
        self.logger.info(f"Received {signal_name}, initiating shutdown...")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.shutdown_event.set)

    def check_ports(self) -> bool:
        """Check if required ports are available."""
        port_configs = [(self.settings.listen_port, "metrics")]
        if self.settings.health_port is not None:
            port_configs.append((self.settings.health_port, "health check"))

        for port, name in port_configs:
            if not self._check_port_available(port, name):
                return False
        return True

    def _check_port_available(self, port: int, name: str) -> bool:
        """Check if a specific port is available."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind((self.settings.listen_host, port))
            return True
        except OSError as e:
            self.logger.error(f"{name.title()} port {port} is not available: {e}")
            return False
        finally:
            sock.close()

    def _start_servers(self) -> bool:
        """Start exposition and health check servers."""
        if not self.exposition.start():
            return False

        if self.health_check is not None and not self.health_check.start():
            self.exposition.stop()
            return False

        self._servers_started = True
        return True

    def _cleanup(self) -> None:
        """Stop servers and flush log handlers."""
        if not self._servers_started:
            return

        try:
            if self.health_check is not None:
                self.health_check.stop()
            self.exposition.stop()

            for handler in self.logger.handlers:
                try:
                    handler.flush()
                except Exception as e:
                    self.logger.error(f"Error flushing log handler: {e}")
        finally:
            self._servers_started = False

    async def run(self) -> int:
        """Main service loop."""
        self._loop = asyncio.get_running_loop()
        signal.signal(signal.SIGTERM, self._handle_signal)
        signal.signal(signal.SIGINT, self._handle_signal)

        try:
            if not self.check_ports():
                self.logger.error("Required ports are not available")
                return 1

            if not self._start_servers():
                return 1

            # Notify systemd we're ready
            if self.config.running_under_systemd:
                notify(Notification.READY)

            self.logger.info(
                f"Serving {self.settings.daemon.value} metrics on "
                f"{self.settings.listen_host or '*'}:{self.settings.listen_port}{self.settings.metrics_path}"
            )
            await self.shutdown_event.wait()
            self.logger.info("Shutdown event received, stopping service")
            return 0

        except asyncio.CancelledError:
            self.logger.warning("Service operation cancelled")
            raise

        except Exception as e:
            self.logger.exception(f"Fatal error in service: {e}")
            return 1

        finally:
            self._cleanup()
            if self.config.running_under_systemd:
                notify(Notification.STOPPING)
            self.logger.info("Service shutdown complete")

#-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~-+-~

def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    """Command line flags; each one overrides the settings file."""
    parser = argparse.ArgumentParser(
        description='Prometheus exporter for Hadoop NameNode, DataNode, '
                    'ResourceManager and YARN application metrics'
    )
    parser.add_argument(
        '--config', dest='config',
        help='YAML settings file (default: <script>.yml beside the script)'
    )
    parser.add_argument(
        '--daemon', dest='daemon', choices=[d.value for d in DaemonType],
        help='Daemon type to export'
    )
    parser.add_argument(
        '--web.listen-address', dest='listen_address',
        help='Address to expose metrics on, [host]:port'
    )
    parser.add_argument(
        '--web.telemetry-path', dest='metrics_path',
        help='Path under which to expose metrics (default "/metrics")'
    )
    parser.add_argument(
        '--site.path', '--hdfs-site.path', '--yarn-site.path', dest='site_config',
        help='Hadoop site configuration (hdfs-site.xml or yarn-site.xml)'
    )
    parser.add_argument(
        '--get.timeout-seconds', dest='request_timeout_sec', type=int,
        help='Introspection request timeout in seconds (default 5)'
    )
    parser.add_argument(
        '--health-port', dest='health_port', type=int,
        help='Port of the JSON health endpoint (disabled when unset)'
    )
    parser.add_argument(
        '--hostname', dest='hostname',
        help='Hostname used to identify this host among the HA members'
    )
    return parser.parse_args(argv)


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    """Exporter settings given on the command line."""
    keys = (
        'daemon', 'listen_address', 'metrics_path', 'site_config',
        'request_timeout_sec', 'health_port', 'hostname'
    )
    return {key: getattr(args, key) for key in keys if getattr(args, key) is not None}


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the exporter service."""
    try:
        args = parse_args(argv)
        source = ProgramSource(config_override=Path(args.config) if args.config else None)
        config = ProgramConfig(source, overrides_from_args(args))
        config.load()

        program_logger = ProgramLogger(source, config)
        logger = program_logger.logger

        exporter = HadoopExporter(config, logger)
        return await exporter.run()

    except MetricConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    except KeyboardInterrupt:
        return 0

    except Exception as e:
        print(f"Fatal error during startup: {e}", file=sys.stderr)
        return 1


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == '__main__':
    run()
