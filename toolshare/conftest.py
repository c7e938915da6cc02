import datetime
import os
import uuid
from decimal import Decimal

import pytest
from sqlmodel import SQLModel, Session

os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ.setdefault("SECRET_KEY", "insecure-test-secret-key-0123456789abcdef")

from toolshare.database import engine
from toolshare.models import Tool, User


@pytest.fixture(scope="session", autouse=True)
def reset_database():
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    yield
    SQLModel.metadata.drop_all(engine)


@pytest.fixture
def session():
    with Session(engine) as session:
        yield session


def make_user(name: str, hashed_password: str = "not-a-real-hash") -> User:
    with Session(engine, expire_on_commit=False) as session:
        user = User(
            name=name,
            email=f"{name.lower()}-{uuid.uuid4().hex[:8]}@example.com",
            hashed_password=hashed_password,
        )
        session.add(user)
        session.commit()
        return user


def make_tool(owner: User, name: str = "Cordless drill", price: str = "10") -> Tool:
    with Session(engine, expire_on_commit=False) as session:
        tool = Tool(
            name=name,
            category="power tools",
            price_per_day=Decimal(price),
            owner_id=owner.id,
        )
        session.add(tool)
        session.commit()
        return tool


def day(value: str) -> datetime.date:
    return datetime.date.fromisoformat(value)


@pytest.fixture
def owner():
    return make_user("Owner")


@pytest.fixture
def renter():
    return make_user("Renter")


@pytest.fixture
def other_renter():
    return make_user("OtherRenter")


@pytest.fixture
def tool(owner):
    return make_tool(owner)
