from database.spaces_table.repository import SpacesTableRepository

__all__ = ["SpacesTableRepository"]
