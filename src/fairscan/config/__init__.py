from .settings import Settings, Environment, LogLevel, AnonymizationLevel, settings

__all__ = [
    'Settings',
    'Environment',
    'LogLevel',
    'AnonymizationLevel',
    'settings'
]
