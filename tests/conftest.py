import pytest

from backend import db
from backend.store import StudentStore


@pytest.fixture
def store(tmp_path):
    engine = db.make_engine(f"sqlite:///{tmp_path / 'examwatch_test.db'}")
    db.init_db(engine)
    st = StudentStore(db.make_session_factory(engine))
    st.seed_students()
    yield st
    engine.dispose()
