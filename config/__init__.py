from .config_loader import Config, load_config
from .settings import ConfigurationError, Settings

__all__ = ['Config', 'load_config', 'ConfigurationError', 'Settings']
