"""Router modules exposed by the agency API."""
from . import auth, users

__all__ = ["auth", "users"]
