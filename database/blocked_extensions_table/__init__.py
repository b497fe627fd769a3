from database.blocked_extensions_table.repository import BlockedExtensionsTableRepository

__all__ = ["BlockedExtensionsTableRepository"]
