"""Database pool, table constants and the user repository."""

from soloai.db.pool import close_pool, get_pool
from soloai.db.users import UserRepository, UserRecord

__all__ = ["get_pool", "close_pool", "UserRepository", "UserRecord"]
