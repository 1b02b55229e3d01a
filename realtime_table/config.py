"""
config.py - Configuration for the realtime table client
"""
import os
from typing import Dict, Any, Optional
from dataclasses import dataclass, field


BACKEND_TYPES = ("memory", "ibis")
CHANGE_FEEDS = ("push", "polling", "redis")


@dataclass
class RealtimeTableConfig:
    """Configuration for the realtime table client and its backend"""

    # Backend configuration
    backend_type: str = "memory"  # memory or ibis
    backend_uri: str = ":memory:"

    # Change stream configuration
    change_feed: str = "push"  # push, polling or redis
    redis_config: Dict[str, Any] = field(default_factory=dict)
    poll_interval: float = 1.0

    # Timeouts (seconds)
    fetch_timeout: float = 30.0
    mutation_timeout: float = 15.0

    # Reconnect policy for a lost change stream
    reconnect_max_attempts: int = 5
    reconnect_backoff: float = 0.5  # doubled on each attempt

    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    log_level: str = "INFO"

    def from_env(self) -> 'RealtimeTableConfig':
        """Load configuration from environment variables"""
        config = RealtimeTableConfig()

        config.backend_type = os.getenv('REALTIME_BACKEND_TYPE', config.backend_type)
        config.backend_uri = os.getenv('REALTIME_BACKEND_URI', config.backend_uri)

        config.change_feed = os.getenv('REALTIME_CHANGE_FEED', config.change_feed)
        config.poll_interval = float(os.getenv('REALTIME_POLL_INTERVAL', str(config.poll_interval)))

        # Redis settings if enabled
        if config.change_feed == 'redis':
            config.redis_config = {
                'host': os.getenv('REDIS_HOST', 'localhost'),
                'port': int(os.getenv('REDIS_PORT', '6379')),
                'db': int(os.getenv('REDIS_DB', '0')),
                'password': os.getenv('REDIS_PASSWORD', None)
            }

        config.fetch_timeout = float(os.getenv('REALTIME_FETCH_TIMEOUT', str(config.fetch_timeout)))
        config.mutation_timeout = float(os.getenv('REALTIME_MUTATION_TIMEOUT', str(config.mutation_timeout)))

        config.reconnect_max_attempts = int(os.getenv('REALTIME_RECONNECT_ATTEMPTS', str(config.reconnect_max_attempts)))
        config.reconnect_backoff = float(os.getenv('REALTIME_RECONNECT_BACKOFF', str(config.reconnect_backoff)))

        config.api_host = os.getenv('REALTIME_API_HOST', config.api_host)
        config.api_port = int(os.getenv('REALTIME_API_PORT', str(config.api_port)))

        config.log_level = os.getenv('REALTIME_LOG_LEVEL', config.log_level)

        return config

    def validate(self) -> None:
        """Validate configuration settings"""
        errors = []

        if self.backend_type not in BACKEND_TYPES:
            errors.append(f"backend_type must be one of {', '.join(BACKEND_TYPES)}")

        if self.change_feed not in CHANGE_FEEDS:
            errors.append(f"change_feed must be one of {', '.join(CHANGE_FEEDS)}")

        if self.poll_interval <= 0:
            errors.append("poll_interval must be positive")

        if self.fetch_timeout <= 0:
            errors.append("fetch_timeout must be positive")

        if self.mutation_timeout <= 0:
            errors.append("mutation_timeout must be positive")

        if self.reconnect_max_attempts < 0:
            errors.append("reconnect_max_attempts must not be negative")

        if self.reconnect_backoff < 0:
            errors.append("reconnect_backoff must not be negative")

        if errors:
            raise ValueError(f"Configuration validation errors: {'; '.join(errors)}")


class ConfigManager:
    """Manager for configuration loading and validation"""

    def __init__(self):
        self.config: Optional[RealtimeTableConfig] = None

    def load_config(self, config_source: Optional[str] = None) -> RealtimeTableConfig:
        """Load configuration from various sources"""
        if config_source == 'env':
            self.config = RealtimeTableConfig().from_env()
        else:
            self.config = RealtimeTableConfig()

        self.config.validate()
        return self.config

    def get_config(self) -> RealtimeTableConfig:
        """Get the loaded configuration"""
        if self.config is None:
            self.config = self.load_config()
        return self.config


# Global configuration manager
config_manager = ConfigManager()


def get_config() -> RealtimeTableConfig:
    """Get the global configuration"""
    return config_manager.get_config()
