"""ORM models exposed for easy imports."""

from .base import Base
from .oauth_session import OAuthSession

__all__ = ["Base", "OAuthSession"]
