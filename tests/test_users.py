import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from schemas import UserIn
from services import UserService


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def test_create_user_rejects_duplicate_email():
    session = _session()
    service = UserService(session)
    service.create(UserIn(email="anna@example.com", name="Anna"))

    with pytest.raises(ValueError):
        service.create(UserIn(email="ANNA@example.com"))


def test_link_and_unlink_telegram_chat():
    session = _session()
    service = UserService(session)
    user = service.create(UserIn(email="anna@example.com"))

    assert service.set_telegram_chat_id(user.id, " 12345 ").telegram_chat_id == "12345"
    assert service.set_telegram_chat_id(user.id, "").telegram_chat_id is None
    assert service.list_ids() == [user.id]

    with pytest.raises(ValueError):
        service.get(999)
