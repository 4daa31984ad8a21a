from .api import app, create_app, main

__all__ = ['app', 'create_app', 'main']
