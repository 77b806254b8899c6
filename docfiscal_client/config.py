"""
Configuration Management for the DocFiscal client credentials.

This module handles server, credential storage and logging settings with
support for an INI configuration file, environment variables and overrides.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser, Error as ConfigParserError

from shared.exceptions import ConfigurationError, ErrorCode
from shared.interfaces import IConfigurationManager
from docfiscal_client.api_client import DEFAULT_REFRESH_PATH
from docfiscal_client.auth.expiry import DEFAULT_REFRESH_THRESHOLD_MINUTES
from docfiscal_client.auth.refresh import DEFAULT_EXPIRES_IN
from docfiscal_client.auth.token_storage import DEFAULT_SERVICE_NAME, default_storage_path

logger = logging.getLogger(__name__)


STORAGE_BACKENDS = ('memory', 'keyring', 'file')
LOG_FORMATS = ('standard', 'detailed', 'json')


class ClientConfiguration(IConfigurationManager):
    """
    Configuration manager for the DocFiscal client.

    Supports configuration from:
    1. Overrides, typically command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        # Load configuration
        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path (~/.docfiscal/client.conf)."""
        return str(Path.home() / '.docfiscal' / 'client.conf')

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            self._load_from_file()
            logger.info(f"Configuration loaded from: {self._config_file}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()
        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        try:
            config.read(self._config_file)
        except ConfigParserError as e:
            raise ConfigurationError(
                f"Invalid configuration file {self._config_file}: {e}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                cause=e
            )

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # Try to parse as JSON for typed values
                try:
                    section_data[key] = json.loads(value)
                except ValueError:
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        env_mappings = {
            'DOCFISCAL_SERVER_URL': ('server', 'url'),
            'DOCFISCAL_TIMEOUT': ('server', 'timeout'),
            'DOCFISCAL_REFRESH_PATH': ('server', 'refresh_path'),
            'DOCFISCAL_NETWORK_RETRIES': ('server', 'network_retries'),
            'DOCFISCAL_REFRESH_THRESHOLD_MINUTES': ('auth', 'refresh_threshold_minutes'),
            'DOCFISCAL_STORAGE_BACKEND': ('auth', 'storage_backend'),
            'DOCFISCAL_STORAGE_PATH': ('auth', 'storage_path'),
            'DOCFISCAL_AUTO_REFRESH': ('auth', 'auto_refresh'),
            'DOCFISCAL_LOG_LEVEL': ('logging', 'level'),
            'DOCFISCAL_LOG_FILE': ('logging', 'file'),
            'DOCFISCAL_LOG_FORMAT': ('logging', 'format'),
        }

        for env_var, (section, key) in env_mappings.items():
            value = os.environ.get(env_var)
            if value is not None:
                if section not in self._config_data:
                    self._config_data[section] = {}

                # Convert boolean strings
                if value.lower() in ('true', 'false'):
                    self._config_data[section][key] = value.lower() == 'true'
                # Convert numeric strings
                elif value.isdigit():
                    self._config_data[section][key] = int(value)
                else:
                    try:
                        self._config_data[section][key] = float(value)
                    except ValueError:
                        self._config_data[section][key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'server': {
                'url': 'http://localhost:3000',
                'timeout': 30.0,
                'refresh_path': DEFAULT_REFRESH_PATH,
                'network_retries': 0,
                'retry_delay': 1.0
            },
            'auth': {
                'refresh_threshold_minutes': DEFAULT_REFRESH_THRESHOLD_MINUTES,
                'default_expires_in': DEFAULT_EXPIRES_IN,
                'storage_backend': 'file',
                'storage_path': None,
                'service_name': DEFAULT_SERVICE_NAME,
                'auto_refresh': False
            },
            'logging': {
                'level': 'INFO',
                'file': None,
                'format': 'standard',
                'max_size': 10485760,  # 10MB
                'backup_count': 3
            }
        }

        # Merge defaults with existing configuration
        for section, section_defaults in defaults.items():
            if section not in self._config_data:
                self._config_data[section] = {}

            for key, default_value in section_defaults.items():
                if key not in self._config_data[section]:
                    self._config_data[section][key] = default_value

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Overrides set with set_override() under the same dotted key win.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if key in self._overrides:
            return self._overrides[key]

        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        return self._config_data.get(section, {}).get(config_key, default)

    def set_config(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to set
        """
        if '.' not in key:
            raise ConfigurationError(f"Configuration key must be 'section.key': {key}", config_key=key)

        section, config_key = key.split('.', 1)
        self._config_data.setdefault(section, {})[config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key in format 'section.key'
            value: Override value
        """
        self._overrides[key] = value

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration data with overrides applied."""
        merged = {section: dict(values) for section, values in self._config_data.items()}
        for key, value in self._overrides.items():
            section, _, config_key = key.partition('.')
            merged.setdefault(section, {})[config_key] = value
        return merged

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    def validate(self) -> None:
        """
        Check configuration values.

        Raises:
            ConfigurationError: On the first invalid value
        """
        url = self.get_server_url()
        if not isinstance(url, str) or not url.startswith(('http://', 'https://')):
            raise ConfigurationError(f"Invalid server URL: {url!r}", config_key='server.url')

        if self.get_storage_backend() not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"Unknown storage backend: {self.get_storage_backend()!r}",
                config_key='auth.storage_backend'
            )

        if self.get_log_format() not in LOG_FORMATS:
            raise ConfigurationError(
                f"Unknown log format: {self.get_log_format()!r}",
                config_key='logging.format'
            )

        checks = (
            ('server.timeout', self.get_server_timeout, lambda v: v > 0),
            ('server.network_retries', self.get_network_retries, lambda v: v >= 0),
            ('server.retry_delay', self.get_retry_delay, lambda v: v >= 0),
            ('auth.refresh_threshold_minutes', self.get_refresh_threshold_minutes, lambda v: v >= 0),
            ('auth.default_expires_in', self.get_default_expires_in, lambda v: v > 0),
        )
        for key, getter, is_valid in checks:
            try:
                value = getter()
            except (TypeError, ValueError) as e:
                raise ConfigurationError(
                    f"Invalid value for {key}: {self.get_config(key)!r}",
                    config_key=key,
                    cause=e
                )
            if not is_valid(value):
                raise ConfigurationError(f"Out of range value for {key}: {value}", config_key=key)

    # Convenience methods for common configuration values

    def get_server_url(self) -> str:
        """Get server URL."""
        return self.get_config('server.url')

    def get_server_timeout(self) -> float:
        """Get refresh request timeout in seconds."""
        return float(self.get_config('server.timeout', 30.0))

    def get_refresh_path(self) -> str:
        return self.get_config('server.refresh_path', DEFAULT_REFRESH_PATH)

    def get_network_retries(self) -> int:
        """Get number of retries for transport failures."""
        return int(self.get_config('server.network_retries', 0))

    def get_retry_delay(self) -> float:
        return float(self.get_config('server.retry_delay', 1.0))

    def get_refresh_threshold_minutes(self) -> float:
        """Get how long before expiry a token is renewed."""
        return float(self.get_config('auth.refresh_threshold_minutes', DEFAULT_REFRESH_THRESHOLD_MINUTES))

    def get_default_expires_in(self) -> int:
        return int(self.get_config('auth.default_expires_in', DEFAULT_EXPIRES_IN))

    def get_storage_backend(self) -> str:
        """Get credential storage backend name."""
        return str(self.get_config('auth.storage_backend', 'file')).lower()

    def get_storage_path(self) -> str:
        """Get encrypted credential file path."""
        return self.get_config('auth.storage_path') or str(default_storage_path())

    def get_service_name(self) -> str:
        return self.get_config('auth.service_name', DEFAULT_SERVICE_NAME)

    def is_auto_refresh_enabled(self) -> bool:
        """Check if background token refresh is enabled."""
        return bool(self.get_config('auth.auto_refresh', False))

    def get_log_level(self) -> str:
        """Get logging level."""
        return str(self.get_config('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_log_format(self) -> str:
        return str(self.get_config('logging.format', 'standard')).lower()

    def get_log_max_size(self) -> int:
        return int(self.get_config('logging.max_size', 10485760))

    def get_log_backup_count(self) -> int:
        return int(self.get_config('logging.backup_count', 3))
