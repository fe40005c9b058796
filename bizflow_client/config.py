"""
Configuration Management for the BizFlow API client.

This module handles client configuration including server URL, token refresh
and tenant settings, token storage and logging, with support for
configuration files and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional, Dict, Any, List
from configparser import ConfigParser, Error as ConfigParserError

from bizflow_shared.exceptions import ConfigurationError, ErrorCode
from bizflow_shared.interfaces import IConfigurationManager
from bizflow_shared.logging_config import LogLevel, LogFormat

from .auth.coordinator import DEFAULT_REFRESH_PATH, DEFAULT_NO_AUTH_PATHS
from .tenant import DEFAULT_TENANT_HEADER

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = 'http://localhost:5000'


class ClientConfiguration(IConfigurationManager):
    """
    Configuration manager for the BizFlow API client.

    Supports configuration from:
    1. Overrides, e.g. command line arguments (highest priority)
    2. Environment variables
    3. Configuration file
    4. Default values (lowest priority)
    """

    ENV_MAPPINGS = {
        'BIZFLOW_API_URL': ('server', 'url'),
        'BIZFLOW_TIMEOUT': ('server', 'timeout'),
        'BIZFLOW_REFRESH_PATH': ('auth', 'refresh_path'),
        'BIZFLOW_TENANT_HEADER': ('tenant', 'header_name'),
        'BIZFLOW_TOKEN_STORE': ('storage', 'path'),
        'BIZFLOW_LOG_LEVEL': ('logging', 'level'),
        'BIZFLOW_LOG_FORMAT': ('logging', 'format'),
    }

    def __init__(self, config_file: Optional[str] = None):
        self._config_file = config_file or self._get_default_config_path()
        self._config_data: Dict[str, Dict[str, Any]] = {}
        self._overrides: Dict[str, Any] = {}

        self._load_configuration()

    def _get_default_config_path(self) -> str:
        """Get default configuration file path: ~/.bizflow/client.conf"""
        return str(Path.home() / '.bizflow' / 'client.conf')

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
                # Complex values (lists, numbers, booleans) are stored as JSON
                try:
                    section_data[key] = json.loads(value)
                except (json.JSONDecodeError, ValueError):
                    section_data[key] = value

            self._config_data[section_name] = section_data

    def _load_from_environment(self) -> None:
        """Load configuration from environment variables."""
        for env_var, (section, key) in self.ENV_MAPPINGS.items():
            value = os.environ.get(env_var)
            if value is not None:
                self._config_data.setdefault(section, {})[key] = value

    def _set_defaults(self) -> None:
        """Set default configuration values."""
        defaults = {
            'server': {
                'url': DEFAULT_SERVER_URL,
                'timeout': 30.0,
            },
            'auth': {
                'refresh_path': DEFAULT_REFRESH_PATH,
                'no_auth_paths': sorted(DEFAULT_NO_AUTH_PATHS),
            },
            'tenant': {
                'header_name': DEFAULT_TENANT_HEADER,
            },
            'storage': {
                'service_name': 'bizflow-client',
                'path': None,
            },
            'logging': {
                'level': 'INFO',
                'format': 'standard',
                'file': None,
                'audit_file': None,
            },
        }

        for section, section_defaults in defaults.items():
            section_data = self._config_data.setdefault(section, {})
            for key, default_value in section_defaults.items():
                section_data.setdefault(key, default_value)

    # IConfigurationManager

    def get_server_url(self) -> str:
        """Get server URL without trailing slash."""
        url = self._overrides.get('server_url') or self.get_config('server.url', DEFAULT_SERVER_URL)
        url = str(url).strip()
        if not url.startswith(('http://', 'https://')):
            raise ConfigurationError(f"Server URL must start with http:// or https://: {url}",
                                     config_key='server.url')
        return url.rstrip('/')

    def get_refresh_path(self) -> str:
        """Get the token refresh endpoint path."""
        path = str(self.get_config('auth.refresh_path', DEFAULT_REFRESH_PATH)).strip()
        if not path.startswith('/'):
            raise ConfigurationError(f"Refresh path must start with '/': {path}",
                                     config_key='auth.refresh_path')
        return path

    def get_tenant_header(self) -> str:
        """Get the tenant header name."""
        header = str(self.get_config('tenant.header_name', DEFAULT_TENANT_HEADER)).strip()
        if not header:
            raise ConfigurationError("Tenant header name cannot be empty", config_key='tenant.header_name')
        return header

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
        value = self._config_data.get(section, {}).get(config_key)
        return default if value is None else value

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
            key: Configuration key
            value: Override value
        """
        self._overrides[key] = value

    # Convenience methods for common configuration values

    def get_timeout(self) -> float:
        """Get per-request timeout in seconds."""
        value = self._overrides.get('timeout') or self.get_config('server.timeout', 30.0)
        try:
            timeout = float(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid timeout value: {value}", config_key='server.timeout')

        if timeout <= 0:
            raise ConfigurationError(f"Timeout must be positive: {timeout}", config_key='server.timeout')
        return timeout

    def get_no_auth_paths(self) -> List[str]:
        """Get the paths that are sent without a bearer token."""
        paths = self.get_config('auth.no_auth_paths', sorted(DEFAULT_NO_AUTH_PATHS))
        if isinstance(paths, str):
            paths = [p.strip() for p in paths.split(',') if p.strip()]
        if not isinstance(paths, list):
            raise ConfigurationError(f"Invalid no-auth path list: {paths}", config_key='auth.no_auth_paths')
        return [str(p) for p in paths]

    def get_storage_service_name(self) -> str:
        """Get keyring service name for token storage."""
        return str(self.get_config('storage.service_name', 'bizflow-client'))

    def get_storage_path(self) -> Optional[str]:
        """Get encrypted token file path (None for the default location)."""
        return self.get_config('storage.path')

    def get_log_level(self) -> LogLevel:
        """Get logging level."""
        value = self._overrides.get('log_level') or self.get_config('logging.level', 'INFO')
        try:
            return LogLevel(str(value).upper())
        except ValueError:
            raise ConfigurationError(f"Invalid log level: {value}", config_key='logging.level')

    def get_log_format(self) -> LogFormat:
        """Get logging output format."""
        value = self.get_config('logging.format', 'standard')
        try:
            return LogFormat(str(value).lower())
        except ValueError:
            raise ConfigurationError(f"Invalid log format: {value}", config_key='logging.format')

    def get_log_file(self) -> Optional[str]:
        """Get log file path."""
        return self.get_config('logging.file')

    def get_audit_file(self) -> Optional[str]:
        """Get audit log file path."""
        return self.get_config('logging.audit_file')

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration data."""
        return {section: dict(values) for section, values in self._config_data.items()}

    def get_config_file_path(self) -> str:
        """Get configuration file path."""
        return self._config_file

    def save_configuration(self) -> None:
        """Save current configuration to file."""
        config = ConfigParser()

        for section_name, section_data in self._config_data.items():
            config.add_section(section_name)
            for key, value in section_data.items():
                if value is None:
                    continue
                if isinstance(value, (dict, list, bool, int, float)):
                    config.set(section_name, key, json.dumps(value))
                else:
                    config.set(section_name, key, str(value))

        try:
            config_path = Path(self._config_file)
            config_path.parent.mkdir(parents=True, exist_ok=True)

            with open(config_path, 'w') as f:
                config.write(f)
        except OSError as e:
            logger.error(f"Failed to save configuration: {e}")
            raise ConfigurationError(f"Failed to save configuration: {e}", cause=e)

        logger.info(f"Configuration saved to: {self._config_file}")

    def reload_configuration(self) -> None:
        """Reload configuration from file and environment."""
        self._config_data.clear()
        self._load_configuration()
        logger.info("Configuration reloaded")
