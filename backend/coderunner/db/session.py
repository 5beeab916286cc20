from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from coderunner.core.config import get_settings

settings = get_settings()


def make_engine(url: str):
    return create_async_engine(url, future=True, echo=False)


def make_session_factory(engine):
    # objects stay usable after commit; jobs are read outside their session
    return sessionmaker(
        bind=engine, autoflush=False, expire_on_commit=False, class_=AsyncSession
    )


engine = make_engine(settings.DATABASE_URL)
AsyncSessionLocal = make_session_factory(engine)
