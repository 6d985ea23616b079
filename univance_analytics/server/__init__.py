from .server import Server, create_app
