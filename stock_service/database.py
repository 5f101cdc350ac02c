from sqlalchemy.orm import DeclarativeBase

from shared.database import create_engine, create_session_factory
from stock_service.config import settings

engine = create_engine(settings.database_url)

AsyncSessionLocal = create_session_factory(engine)


class Base(DeclarativeBase):
    pass
