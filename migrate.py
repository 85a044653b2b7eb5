"""Migration / setup helper
Creates the commute-pool tables in the configured database.
Run: python migrate.py
"""
from config import configure_logging, get_settings
from db import init_db


def main():
    configure_logging()
    init_db()
    print(f"Database initialized ({get_settings().database_url})")


if __name__ == "__main__":
    main()
