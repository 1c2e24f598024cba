from .base import Base
from .queue import Queue
from .token import Token
from .user import User

__all__ = [
    "Base",
    "Queue",
    "Token",
    "User",
]
