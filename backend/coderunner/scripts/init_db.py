"""Create the jobs table. Run once against a fresh database:

    python -m coderunner.scripts.init_db
"""
import asyncio, logging
from coderunner.core.config import get_settings
from coderunner.core.logging import setup_logging
from coderunner.db.models import Base
from coderunner.db.session import make_engine

log = logging.getLogger("init_db")


async def main():
    setup_logging()
    url = get_settings().DATABASE_URL
    engine = make_engine(url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await engine.dispose()
    log.info("jobs schema ready")


if __name__ == "__main__":
    asyncio.run(main())
