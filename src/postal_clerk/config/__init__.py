from postal_clerk.config.settings import (
    Account,
    AccountConfig,
    Endpoint,
    Settings,
    get_settings,
    load_settings,
)

__all__ = ["Account", "AccountConfig", "Endpoint", "Settings", "get_settings", "load_settings"]
