from database.uploaded_files_table.repository import UploadedFilesTableRepository

__all__ = ["UploadedFilesTableRepository"]
