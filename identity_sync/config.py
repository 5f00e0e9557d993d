"""
Configuration loading and management for Identity Sync.

This module handles loading configuration from YAML files and environment variables,
with validation and defaults.
"""

import os
import yaml
import logging
from typing import Dict, Any, Optional

from identity_sync.logging_setup import security_logger

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'ldap.bind_password': 'LDAP_BIND_PASSWORD',
        'identity_api.basic_secret': 'IDENTITY_API_SECRET',
        'identity_api.truststore_password': 'IDENTITY_API_TRUSTSTORE_PASSWORD',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    REQUIRED_FIELDS = {
        'ldap': ['server_url', 'bind_dn', 'bind_password', 'base_dn'],
        'identity_api': ['base_url', 'basic_secret'],
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration root must be a mapping: {self.config_path}")

        self._apply_env_overrides()
        self._validate()
        self._apply_defaults()

        security_logger.log_configuration_access(self.config_path)
        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        for section, fields in self.REQUIRED_FIELDS.items():
            section_config = self.config.get(section) or {}
            for field in fields:
                if not section_config.get(field):
                    errors.append(f"Missing required {section} field: {field}")

        api_url = (self.config.get('identity_api') or {}).get('base_url', '')
        if api_url and not api_url.lower().startswith(('http://', 'https://')):
            errors.append(f"identity_api.base_url must be an http(s) URL: {api_url}")

        sync_config = self.config.get('sync') or {}
        interval = sync_config.get('interval_seconds')
        if interval is not None and (not isinstance(interval, (int, float)) or interval <= 0):
            errors.append(f"sync.interval_seconds must be a positive number: {interval}")

        workers = sync_config.get('creation_workers')
        if workers is not None and (not isinstance(workers, int) or workers < 1):
            errors.append(f"sync.creation_workers must be a positive integer: {workers}")

        margin = (self.config.get('identity_api') or {}).get('expiry_margin_seconds')
        if margin is not None and (not isinstance(margin, (int, float)) or margin < 0):
            errors.append(f"identity_api.expiry_margin_seconds must not be negative: {margin}")

        truststore_type = str((self.config.get('identity_api') or {}).get('truststore_type', 'PEM')).upper()
        if truststore_type not in ('PEM', 'PKCS12'):
            errors.append(f"identity_api.truststore_type must be PEM or PKCS12: {truststore_type}")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        defaults = {
            'ldap': {
                'user_filter': '(objectClass=person)',
                'key_attribute': 'cn',
                'surname_attribute': 'sn',
                'start_tls': False,
                'verify_ssl': True,
                'connection_timeout': 10,
                'receive_timeout': 10,
                'page_size': 500
            },
            'identity_api': {
                'timeout_seconds': 10,
                'verify_ssl': True,
                'truststore_type': 'PEM',
                'expiry_margin_seconds': 0
            },
            'sync': {
                'interval_seconds': 30,
                'creation_workers': 4,
                'run_on_start': False
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs',
                'rotation': 'daily',
                'retention_days': 7
            },
            'notifications': {
                'enable_email': False,
                'email_on_failure': True,
                'email_on_success': False,
                'smtp_port': 587,
                'smtp_tls': True
            }
        }

        for section, section_defaults in defaults.items():
            section_config = self.config.get(section)
            if not isinstance(section_config, dict):
                section_config = self.config[section] = {}
            for key, value in section_defaults.items():
                section_config.setdefault(key, value)


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()
