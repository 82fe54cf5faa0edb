from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import DATABASE_URL, DB_ECHO

engine = create_engine(DATABASE_URL, echo=DB_ECHO, pool_pre_ping=True)
# Records returned by the repository are read after their session closes
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
