from functools import lru_cache
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from common.settings import settings

@lru_cache(maxsize=1)
def get_engine():
    return create_engine(settings.database_url, pool_pre_ping=True)

def get_session_factory(engine=None):
    return sessionmaker(bind=engine or get_engine(), expire_on_commit=False)
