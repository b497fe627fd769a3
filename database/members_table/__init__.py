from database.members_table.repository import MembersTableRepository

__all__ = ["MembersTableRepository"]
