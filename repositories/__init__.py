from .db_repository import DBService

__all__ = ["DBService"]
