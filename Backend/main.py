from medilink.main import app

__all__ = ["app"]
