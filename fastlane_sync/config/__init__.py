from .loader import ConfigurationError, load_config, resolve_table, resolve_tables

__all__ = ["ConfigurationError", "load_config", "resolve_table", "resolve_tables"]
