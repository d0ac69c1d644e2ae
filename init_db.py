from app.backend.src.core.config import get_settings
from app.backend.src.db import create_tables, get_engine


def init_db():
    settings = get_settings()
    print(f"Creating session tables for backend {settings.session_backend!r}")
    create_tables(get_engine())
    print("Session table created successfully!")


if __name__ == "__main__":
    init_db()
