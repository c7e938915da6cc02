from sqlmodel import create_engine, Session
from dotenv import load_dotenv

import os

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL or DATABASE_URL == "":
    raise ValueError("DATABASE URL not set")

SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() in ("1", "true", "yes")

connect_args = {}
if DATABASE_URL.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(DATABASE_URL, echo=SQL_ECHO, connect_args=connect_args)


def get_session():
    with Session(engine) as session:
        yield session
