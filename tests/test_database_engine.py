"""
tests/test_database_engine.py — Engine, session and thread bridge helpers
==========================================================================
"""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest
from sqlalchemy import inspect, select
from sqlalchemy.orm import Session

from changemaker.database.engine import create_db_engine, get_session, init_db, run_db
from changemaker.database.models import Workspace
from conftest import run_async


class TestCreateEngine:
    def test_requires_url(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop("DATABASE_URL", None)
            with pytest.raises(RuntimeError, match="DATABASE_URL is not set"):
                create_db_engine()

    def test_sqlite_url_and_init(self, tmp_path):
        engine = create_db_engine(f"sqlite:///{tmp_path / 'cm.db'}")
        init_db(engine)
        tables = set(inspect(engine).get_table_names())
        assert {"workspaces", "reward_issuances", "submissions", "activity_events"} <= tables


class TestGetSession:
    def test_commits_on_success(self, db_engine):
        with get_session(db_engine) as session:
            session.add(Workspace(slug="solo", name="Solo"))
        with Session(db_engine) as session:
            assert session.scalar(select(Workspace.slug)) == "solo"

    def test_rolls_back_on_error(self, db_engine):
        with pytest.raises(ValueError):
            with get_session(db_engine) as session:
                session.add(Workspace(slug="ghost", name="Ghost"))
                session.flush()
                raise ValueError("abort")
        with Session(db_engine) as session:
            assert session.scalar(select(Workspace)) is None


class TestRunDb:
    def test_forwards_args_and_returns_result(self, db_engine):
        def _count(engine, *, slug):
            with Session(engine) as session:
                return len(session.scalars(select(Workspace).where(Workspace.slug == slug)).all())

        assert run_async(run_db(_count, db_engine, slug="none")) == 0
