"""Create the call coaching database schema for development."""
from __future__ import annotations

import asyncio

from callcoach.core.config import settings
from callcoach.db.session import create_schema


async def main() -> None:
	await create_schema()
	print(f"Database schema ensured at {settings.database_url}.")


if __name__ == "__main__":
	asyncio.run(main())
