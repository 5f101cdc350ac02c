from sqlalchemy.orm import DeclarativeBase

from order_service.config import settings
from shared.database import create_engine, create_session_factory

engine = create_engine(settings.database_url)

AsyncSessionLocal = create_session_factory(engine)


class Base(DeclarativeBase):
    pass
