"""
Configuration Management for the IDaaS session client.

This module handles client configuration including the identity service
domain, transport tuning, credential storage and logging, with support for
configuration files and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any
from configparser import ConfigParser

from idaas_shared.exceptions import ConfigurationError, ErrorCode
from idaas_shared.interfaces import IConfigurationManager

logger = logging.getLogger(__name__)


ENV_MAPPINGS = {
    'IDAAS_DOMAIN': ('server', 'domain'),
    'IDAAS_API_VERSION': ('server', 'api_version'),
    'IDAAS_TIMEOUT': ('server', 'timeout'),
    'IDAAS_RETRY_ATTEMPTS': ('server', 'retry_attempts'),
    'IDAAS_RETRY_DELAY': ('server', 'retry_delay'),
    'IDAAS_VERIFY_SSL': ('server', 'verify_ssl'),
    'IDAAS_STORAGE_BACKEND': ('storage', 'backend'),
    'IDAAS_STORAGE_SERVICE': ('storage', 'service_name'),
    'IDAAS_STORAGE_NAMESPACE': ('storage', 'namespace'),
    'IDAAS_STORAGE_PATH': ('storage', 'path'),
    'IDAAS_LOG_LEVEL': ('logging', 'level'),
    'IDAAS_LOG_FORMAT': ('logging', 'format'),
    'IDAAS_LOG_FILE': ('logging', 'file'),
    'IDAAS_AUDIT_FILE': ('logging', 'audit_file'),
}

STORAGE_BACKENDS = ('auto', 'keyring', 'file', 'memory')


def default_storage_path() -> str:
    """Default location of the encrypted credential file."""
    xdg_config = os.environ.get('XDG_CONFIG_HOME')
    if xdg_config:
        config_dir = Path(xdg_config) / 'idaas'
    else:
        config_dir = Path.home() / '.config' / 'idaas'
    return str(config_dir / 'credentials.enc')


class ClientConfiguration(IConfigurationManager):
    """
    Configuration manager for the IDaaS session client.

    Supports configuration from:
    1. Programmatic overrides (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Any] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path."""
        return str(Path.home() / '.idaas' / 'client.conf')

    def _load_configuration(self) -> None:
        """Load configuration from file and environment variables."""
        if os.path.exists(self._config_file):
            try:
                self._load_from_file()
                logger.info(f"Configuration loaded from: {self._config_file}")
            except Exception as e:
                logger.warning(f"Failed to load configuration file: {e}")
        else:
            logger.debug(f"Configuration file not found: {self._config_file}")

        self._load_from_environment()

        self._set_defaults()

    def _load_from_file(self) -> None:
        """Load configuration from INI file."""
        config = ConfigParser()
        config.read(self._config_file)

        for section_name in config.sections():
            section_data = {}
            for key, value in config[section_name].items():
                # JSON for numbers, booleans and lists; plain strings otherwise
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is not None:
                if section not in self._config_data:
                    self._config_data[section] = {}

                if value.lower() in ('true', 'false'):
                    self._config_data[section][key] = value.lower() == 'true'
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
                'domain': None,
                'api_version': 'v1',
                'timeout': 30.0,
                'retry_attempts': 2,
                'retry_delay': 1.0,
                'verify_ssl': True
            },
            'storage': {
                'backend': 'auto',
                'service_name': 'idaas-client',
                'namespace': 'idaas-credentials',
                'path': default_storage_path()
            },
            'logging': {
                'level': 'INFO',
                'format': 'standard',
                'file': None,
                'audit_file': None
            }
        }

        for section, section_defaults in defaults.items():
            if section not in self._config_data:
                self._config_data[section] = {}

            for key, default_value in section_defaults.items():
                if key not in self._config_data[section]:
                    self._config_data[section][key] = default_value

    def get_domain(self) -> str:
        """
        Get identity service domain.

        Raises:
            ConfigurationError: If no domain is configured
        """
        domain = self._overrides.get('domain') or self._config_data['server'].get('domain')
        if not domain:
            raise ConfigurationError(
                "Identity service domain is not configured",
                error_code=ErrorCode.CONFIG_MISSING_REQUIRED_SETTING,
                config_key='server.domain'
            )
        return str(domain).strip().rstrip('/')

    def get_api_version(self) -> str:
        """Get API version path segment."""
        return str(self._overrides.get('api_version') or self._config_data['server']['api_version']).strip('/')

    def get_config(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if '.' not in key:
            return self._config_data.get(key, default)

        section, config_key = key.split('.', 1)
        section_data = self._config_data.get(section, {})
        value = section_data.get(config_key, default)
        return default if value is None else value

    def set_config(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key in format 'section.key'
            value: Value to set
        """
        if '.' not in key:
            self._config_data[key] = value
            return

        section, config_key = key.split('.', 1)
        if section not in self._config_data:
            self._config_data[section] = {}
        self._config_data[section][config_key] = value

    def set_override(self, key: str, value: Any) -> None:
        """
        Set configuration override (highest priority).

        Args:
            key: Configuration key ('domain' or 'api_version')
            value: Override value
        """
        self._overrides[key] = value

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration data."""
        return {section: dict(values) for section, values in self._config_data.items()}

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")

    # Convenience methods for common configuration values

    def _get_number(self, key: str, default: Any, cast):
        value = self.get_config(key, default)
        try:
            return cast(value)
        except (TypeError, ValueError):
            raise ConfigurationError(
                f"Setting {key} must be a number, got {value!r}",
                error_code=ErrorCode.CONFIG_INVALID_FORMAT,
                config_key=key
            )

    def get_server_timeout(self) -> float:
        """Get total request timeout in seconds."""
        return self._get_number('server.timeout', 30.0, float)

    def get_retry_attempts(self) -> int:
        """Get number of retries for network failures."""
        return self._get_number('server.retry_attempts', 2, int)

    def get_retry_delay(self) -> float:
        """Get base retry delay in seconds."""
        return self._get_number('server.retry_delay', 1.0, float)

    def get_verify_ssl(self) -> bool:
        return bool(self.get_config('server.verify_ssl', True))

    def get_storage_backend(self) -> str:
        """Get storage backend name."""
        backend = str(self.get_config('storage.backend', 'auto')).lower()
        if backend not in STORAGE_BACKENDS:
            raise ConfigurationError(
                f"Unknown storage backend: {backend}",
                config_key='storage.backend',
                context={'allowed': list(STORAGE_BACKENDS)}
            )
        return backend

    def get_storage_service_name(self) -> str:
        return self.get_config('storage.service_name', 'idaas-client')

    def get_storage_namespace(self) -> str:
        return self.get_config('storage.namespace', 'idaas-credentials')

    def get_storage_path(self) -> str:
        return os.path.expanduser(self.get_config('storage.path', default_storage_path()))

    def get_log_level(self) -> str:
        """Get logging level."""
        return self.get_config('logging.level', 'INFO')

    def get_log_format(self) -> str:
        return self.get_config('logging.format', 'standard')

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_audit_file(self) -> Optional[str]:
        return self.get_config('logging.audit_file')
