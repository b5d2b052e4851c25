from .config_loader import config_loader as config, Config, ConfigError

__all__ = ['config', 'Config', 'ConfigError']
