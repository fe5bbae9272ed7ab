"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
from typing import Optional

import requests
from requests.adapters import HTTPAdapter

import cloudbridge.constants as constants
from cloudbridge.logger import log


@dataclass
class NamespaceConfig:
    """Configuration variables related to the in-memory namespace mirror."""

    case_insensitive: bool = False

    max_file_nodes: int = 1024
    max_file_size: int = 16 * 1024 * 1024  # 16 MB

    root_security: str = constants.DEFAULT_ROOT_SECURITY
    volume_label: str = constants.FILESYSTEM_NAME

    @staticmethod
    def load(section: SectionProxy) -> NamespaceConfig:
        """Load overridden variables from a section within a config file."""
        config = NamespaceConfig()

        config.case_insensitive = section.getboolean(
            "case_insensitive", fallback=config.case_insensitive
        )

        config.max_file_nodes = section.getint(
            "max_file_nodes", fallback=config.max_file_nodes
        )
        config.max_file_size = section.getint(
            "max_file_size", fallback=config.max_file_size
        )

        config.root_security = section.get("root_security", fallback=config.root_security)
        config.volume_label = section.get("volume_label", fallback=config.volume_label)

        return config


@dataclass
class HttpConfig:
    """
    Configuration of the HTTP client shared by all calls of a remote repository.

    Connection limits are part of this object rather than process-wide state, so every
    repository gets a session that is sized for concurrent use by many file system
    threads at once.
    """

    base_url: str = ""
    token: Optional[str] = None

    timeout: float = 30.0

    pool_connections: int = 16
    pool_maxsize: int = 64

    user_agent: str = f"cloudbridge/{constants.VERSION}"

    @staticmethod
    def load(section: SectionProxy) -> HttpConfig:
        """Load overridden variables from a section within a config file."""
        config = HttpConfig()

        config.base_url = section.get("base_url", fallback=config.base_url)
        config.token = section.get("token", fallback=config.token)

        config.timeout = section.getfloat("timeout", fallback=config.timeout)

        config.pool_connections = section.getint(
            "pool_connections", fallback=config.pool_connections
        )
        config.pool_maxsize = section.getint("pool_maxsize", fallback=config.pool_maxsize)

        config.user_agent = section.get("user_agent", fallback=config.user_agent)

        return config

    def create_session(self) -> requests.Session:
        """
        Create an HTTP session following this configuration.

        Transport level retries are disabled because retrying is the responsibility of
        the repository's reconciliation logic.
        """
        session = requests.Session()

        adapter = HTTPAdapter(
            pool_connections=self.pool_connections,
            pool_maxsize=self.pool_maxsize,
            max_retries=0,
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({"User-Agent": self.user_agent})

        return session


@dataclass
class ReconcileConfig:
    """Configuration of the retry schedule for listings after a recent delete."""

    window_ms: int = int(constants.RECONCILE_WINDOW * 1000)
    pre_delay_ms: int = int(constants.RECONCILE_PRE_DELAY * 1000)
    base_delay_ms: int = int(constants.RECONCILE_BASE_DELAY * 1000)
    max_attempts: int = constants.RECONCILE_MAX_ATTEMPTS

    @staticmethod
    def load(section: SectionProxy) -> ReconcileConfig:
        """Load overridden variables from a section within a config file."""
        config = ReconcileConfig()

        config.window_ms = section.getint("window_ms", fallback=config.window_ms)
        config.pre_delay_ms = section.getint("pre_delay_ms", fallback=config.pre_delay_ms)
        config.base_delay_ms = section.getint(
            "base_delay_ms", fallback=config.base_delay_ms
        )
        config.max_attempts = section.getint("max_attempts", fallback=config.max_attempts)

        return config

    @property
    def window(self) -> float:
        return self.window_ms / 1000

    @property
    def pre_delay(self) -> float:
        return self.pre_delay_ms / 1000

    @property
    def base_delay(self) -> float:
        return self.base_delay_ms / 1000


@dataclass
class Config:
    """Configuration variables."""

    provider: str = "rest"
    link_ttl: float = constants.LINK_CACHE_TTL

    namespace: NamespaceConfig = field(default_factory=NamespaceConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    reconcile: ReconcileConfig = field(default_factory=ReconcileConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "remote" in parser:
                config.provider = parser["remote"].get("provider", fallback=config.provider)
            if "links" in parser:
                config.link_ttl = parser["links"].getfloat("ttl", fallback=config.link_ttl)

            if "namespace" in parser:
                config.namespace = NamespaceConfig.load(parser["namespace"])
            if "http" in parser:
                config.http = HttpConfig.load(parser["http"])
            if "reconcile" in parser:
                config.reconcile = ReconcileConfig.load(parser["reconcile"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config for provider {config.provider}")

        return config
