from .logs import ensure_root_logging, setup_logging

__all__ = ["ensure_root_logging", "setup_logging"]
