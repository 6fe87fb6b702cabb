from doccontrol.db.base import Base, UTCDateTime
from doccontrol.db.session import async_session_maker, engine, get_db, init_db, store_session_maker

__all__ = ["Base", "UTCDateTime", "async_session_maker", "engine", "get_db", "init_db", "store_session_maker"]
