from __future__ import annotations

import pytest
from sqlalchemy import func, select

from wise365 import db
from wise365.models import FormTemplate, Funnel, Tenant


@pytest.fixture()
def db_file(tmp_path):
    path = tmp_path / "unit-test.db"
    db.init_db(path)
    return path


def test_init_seeds_catalog(db_file):
    assert db_file.exists()
    assert db.current_db_name() == "unit-test"
    with db.session_scope() as session:
        assert session.execute(select(func.count(Funnel.id))).scalar() == 6
        assert session.execute(select(func.count(FormTemplate.id))).scalar() == 3


def test_reinit_does_not_reseed(db_file):
    db.init_db(db_file)
    with db.session_scope() as session:
        assert session.execute(select(func.count(Funnel.id))).scalar() == 6


def test_session_scope_rolls_back(db_file):
    with pytest.raises(RuntimeError):
        with db.session_scope() as session:
            session.add(Tenant(name="Doomed"))
            session.flush()
            raise RuntimeError("boom")
    with db.session_scope() as session:
        assert session.execute(select(Tenant)).first() is None
