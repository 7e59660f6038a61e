#!/usr/bin/env python3
"""
Verify the test database settings and create the schema in it.

The PostgreSQL repository tests run only when TEST_DATABASE_URL is set;
this script guards against pointing them at the application database.
"""

import asyncio
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from app.database import create_engine_for  # noqa: E402
from scripts.init_db import create_schema  # noqa: E402


def check_urls(prod_db: str | None, test_db: str | None) -> list[str]:
    """Problems that make the test database unsafe to use."""
    errors = []
    if not test_db:
        errors.append("TEST_DATABASE_URL is not set")
    elif test_db == prod_db:
        errors.append("TEST_DATABASE_URL is the same as DATABASE_URL; tests truncate tables")
    elif "test" not in test_db.rsplit("/", 1)[-1].lower():
        errors.append("Test database name should contain 'test'")
    return errors


async def prepare(test_db: str) -> None:
    engine = create_engine_for(test_db)
    try:
        await create_schema(engine)
    finally:
        await engine.dispose()


def main() -> int:
    load_dotenv()

    prod_db = os.getenv("DATABASE_URL")
    test_db = os.getenv("TEST_DATABASE_URL")

    errors = check_urls(prod_db, test_db)
    if errors:
        for error in errors:
            print(f"✗ {error}", file=sys.stderr)
        return 1

    asyncio.run(prepare(test_db))
    print("✓ Test database schema is ready")
    return 0


if __name__ == "__main__":
    sys.exit(main())
