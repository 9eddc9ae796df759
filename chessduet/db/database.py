"""Generate database sessions from the configured database URL"""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

from chessduet.core.config import SessionSettings
from chessduet.db.schema import Base


def build_engine(settings: SessionSettings, echo: bool = False) -> Engine:
    """Create the engine and make sure all tables exist."""
    engine = create_engine(settings.database_url, echo=echo)
    Base.metadata.create_all(bind=engine)
    return engine


def build_session_factory(settings: SessionSettings) -> sessionmaker[Session]:
    return sessionmaker(bind=build_engine(settings))
