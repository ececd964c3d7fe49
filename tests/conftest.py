"""Shared fixtures: a throwaway SQLite database per test."""

import logging

import pytest

import db
from game_logic import Player, QuarterScore, Selection

SEQ_AXIS = list(range(10))


@pytest.fixture
def sqlite_env(tmp_path, monkeypatch):
    """Point the storage layer at a fresh SQLite file."""
    for key in ("DATABASE_URL", "NEON_DATABASE_URL", "POSTGRES_URL", "POSTGRES_URL_NON_POOLING"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("SQUARES_DB_PATH", str(tmp_path / "squares.db"))
    monkeypatch.setattr(db, "_DB_PATH_CACHE", None)
    return tmp_path / "squares.db"


@pytest.fixture
def conn(sqlite_env):
    with db.db() as c:
        db.init_db(c)
        yield c


def _make_game(game_id="g1", **overrides):
    """Three scored quarters plus one pending on sequential axes; u1 owns (7,4), u2 owns (0,7)."""
    fields = dict(
        id=game_id,
        quarter_scores=[
            QuarterScore(home=14, away=7),
            QuarterScore(home=17, away=10),
            QuarterScore(home=24, away=17),
            QuarterScore(home=None, away=None),
        ],
        selections=[Selection(x=7, y=4, owner_id="u1"), Selection(x=0, y=7, owner_id="u2")],
        x_axis=list(SEQ_AXIS),
        y_axis=list(SEQ_AXIS),
        players=[Player(id="u1", display_name="Alice"), Player(id="u2", display_name="Bob")],
        price_per_square=5.0,
    )
    fields.update(overrides)
    return db.SquareGame(**fields)


@pytest.fixture
def make_game():
    return _make_game


@pytest.fixture(autouse=True)
def _restore_logging():
    """Undo setup_logging() calls made by CLI tests."""
    root = logging.getLogger()
    level = root.level
    yield
    root.setLevel(level)
    for h in list(root.handlers):
        if getattr(h, "_squares_handler", False):
            root.removeHandler(h)
