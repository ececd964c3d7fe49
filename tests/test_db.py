"""Tests for the SQLite side of the storage layer."""

import pytest

import db
from game_logic import QuarterScore, QuarterWinner, Settlement


class TestConfig:
    def test_sqlite_is_default(self, sqlite_env):
        assert db.using_postgres() is False
        assert db.db_backend_label() == "sqlite"
        assert db.db_path() == sqlite_env

    def test_postgres_url_is_normalized(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://u:p@host/pool")
        assert db.using_postgres() is True
        assert db._normalize_database_url(db.database_url()) == "postgresql://u:p@host/pool?sslmode=require"

    def test_explicit_sslmode_is_kept(self):
        url = "postgresql://u:p@host/pool?sslmode=disable"
        assert db._normalize_database_url(url) == url


class TestGames:
    def test_save_and_load(self, conn, make_game):
        game = make_game(
            is_team1_home=False,
            block_mode=True,
            quarter_scores=[QuarterScore(7, 0), QuarterScore(10, None, is_completed=False, manual=True)],
        )
        db.save_game(conn, game)
        loaded = db.get_game(conn, "g1")
        assert loaded == game
        assert loaded.quarter_winners is None

    def test_missing_game(self, conn):
        assert db.get_game(conn, "nope") is None

    def test_save_twice_updates(self, conn, make_game):
        db.save_game(conn, make_game(price_per_square=5.0))
        db.save_game(conn, make_game(price_per_square=2.5, game_completed=True))
        loaded = db.get_game(conn, "g1")
        assert loaded.price_per_square == 2.5
        assert loaded.game_completed is True

    def test_games_missing_winners(self, conn, make_game):
        db.save_game(conn, make_game("a"))
        db.save_game(conn, make_game("b", quarter_scores=None))
        db.save_game(
            conn,
            make_game("c", quarter_winners=[QuarterWinner("Q1", "u1", "Alice", (7, 4))]),
        )
        assert [g.id for g in db.list_games_missing_winners(conn)] == ["a"]

    def test_set_quarter_winners(self, conn, make_game):
        db.save_game(conn, make_game())
        winners = [QuarterWinner("Q1", "u1", "Alice", (7, 4)), QuarterWinner("Q2", None, "No Winner", ("-", "-"))]
        db.set_quarter_winners(conn, "g1", winners)
        assert db.get_game(conn, "g1").quarter_winners == winners
        assert db.list_games_missing_winners(conn) == []

    def test_malformed_json_reads_as_missing(self, conn, make_game):
        db.save_game(conn, make_game())
        conn.execute("UPDATE squares SET selections = '{broken', x_axis = '\"x\"' WHERE id = 'g1'")
        loaded = db.get_game(conn, "g1")
        assert loaded.selections is None
        assert loaded.x_axis is None

    def test_raw_rows_in_hosted_shape(self, conn):
        conn.execute(
            """
            INSERT INTO squares (id, quarter_scores, selections, x_axis, y_axis, players, updated_at_ts)
            VALUES ('h1', :scores, :selections, '[0,1,2,3,4,5,6,7,8,9]', '[0,1,2,3,4,5,6,7,8,9]', :players, 0)
            """,
            {
                "scores": '[{"home":7,"away":3},{"home":null,"away":null}]',
                "selections": '[{"x":3,"y":7,"userId":"u1","username":"Alice"},{"x":"bad"}]',
                "players": '[{"userId":"u1","username":"Alice","color":"#f00"}]',
            },
        )
        game = db.get_game(conn, "h1")
        assert game.quarter_scores == [QuarterScore(7, 3), QuarterScore(None, None)]
        assert len(game.selections) == 1
        assert game.players[0].display_name == "Alice"
        assert game.is_team1_home is None


class TestLedger:
    def test_increment_user_winnings(self, conn):
        assert db.get_user_winnings(conn, "u1") == 0.0
        db.increment_user_winnings(conn, "u1", 125.0)
        db.increment_user_winnings(conn, "u1", 33.33)
        assert db.get_user_winnings(conn, "u1") == pytest.approx(158.33)

    def test_save_settlement(self, conn, make_game):
        db.save_game(conn, make_game())
        db.save_settlement(conn, "g1", Settlement(snapshot={"u1": 250.0}, increments=[("u1", 250.0)], quarters_done=3))
        game = db.get_game(conn, "g1")
        assert game.winnings_snapshot == {"u1": 250.0}
        assert game.winnings_quarters_done == 3
        assert game.payout_done is True

    def test_audit_log(self, conn):
        db.log_action(conn, None, "backfill_quarter_winners", {"game_id": "g1"})
        db.log_action(conn, "admin", "settle_winnings", {"game_id": "g1"})
        rows = db.recent_audit(conn, limit=10)
        assert [r["action"] for r in rows] == ["settle_winnings", "backfill_quarter_winners"]
        assert rows[0]["actor"] == "admin"


class TestSavepoint:
    def test_error_undoes_only_the_block(self, conn, make_game):
        db.save_game(conn, make_game("kept"))
        with pytest.raises(RuntimeError):
            with db.savepoint(conn):
                db.save_game(conn, make_game("dropped"))
                raise RuntimeError("boom")

        assert db.get_game(conn, "kept") is not None
        assert db.get_game(conn, "dropped") is None

    def test_block_writes_are_kept_on_success(self, conn, make_game):
        with db.savepoint(conn, "one_game"):
            db.save_game(conn, make_game())
        assert db.get_game(conn, "g1") is not None
