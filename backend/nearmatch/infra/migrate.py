"""Apply the bundled SQL migrations in filename order."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

from nearmatch.infra.postgres import close_pool, get_pool

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


def migration_files(directory: Optional[Path] = None) -> List[Path]:
	return sorted((directory or MIGRATIONS_DIR).glob("*.sql"))


async def apply_migrations(directory: Optional[Path] = None) -> List[str]:
	"""Run every migration in its own transaction. Migrations must be idempotent."""
	applied: List[str] = []
	pool = await get_pool()
	async with pool.acquire() as conn:
		for path in migration_files(directory):
			sql = path.read_text(encoding="utf-8")
			async with conn.transaction():
				await conn.execute(sql)
			logger.info("migration applied file=%s", path.name)
			applied.append(path.name)
	return applied


async def _main() -> None:
	try:
		await apply_migrations()
	finally:
		await close_pool()


if __name__ == "__main__":
	from nearmatch import obs

	obs.init()
	if sys.platform == "win32":
		asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())
	asyncio.run(_main())
