from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

from game_logic import Player, QuarterScore, QuarterWinner, Selection, Settlement

logger = logging.getLogger(__name__)

_DB_PATH_CACHE: Path | None = None
_ENGINE_CACHE: Engine | None = None


def _now_ts() -> int:
    return int(time.time())


def db_path() -> Path:
    global _DB_PATH_CACHE
    if _DB_PATH_CACHE is not None:
        return _DB_PATH_CACHE

    env_path = os.getenv("SQUARES_DB_PATH")
    if env_path:
        p = Path(env_path).expanduser()
        if not p.is_absolute():
            p = Path.cwd() / p
        _DB_PATH_CACHE = p
        return _DB_PATH_CACHE

    _DB_PATH_CACHE = Path(__file__).resolve().parent / "data" / "squares.db"
    return _DB_PATH_CACHE


def _resolve_writable_db_path() -> Path:
    if os.getenv("SQUARES_DB_PATH"):
        return db_path()

    candidates = [
        Path(__file__).resolve().parent / "data" / "squares.db",
        Path.home() / ".squares_pool" / "squares.db",
        Path("/tmp") / "squares_pool.db",
    ]
    for p in candidates:
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            return p
        except OSError:
            continue
    return candidates[-1]


def connect() -> sqlite3.Connection:
    global _DB_PATH_CACHE
    path = _resolve_writable_db_path()
    _DB_PATH_CACHE = path
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


@contextmanager
def db() -> Iterator[Any]:
    if database_url():
        engine = _get_engine()
        with engine.begin() as conn:
            yield conn
        return

    conn = connect()
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


@contextmanager
def savepoint(conn: Any, name: str = "work") -> Iterator[None]:
    """Run a block so that an error undoes only the block's own writes."""
    if not _is_sqlite_conn(conn):
        with conn.begin_nested():
            yield
        return

    conn.execute(f"SAVEPOINT {name}")
    try:
        yield
    except Exception:
        conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
        conn.execute(f"RELEASE SAVEPOINT {name}")
        raise
    conn.execute(f"RELEASE SAVEPOINT {name}")


def database_url() -> str | None:
    return (
        os.getenv("DATABASE_URL")
        or os.getenv("NEON_DATABASE_URL")
        or os.getenv("POSTGRES_URL")
        or os.getenv("POSTGRES_URL_NON_POOLING")
    )


def using_postgres() -> bool:
    return bool(database_url())


def db_backend_label() -> str:
    return "postgres" if using_postgres() else "sqlite"


def _normalize_database_url(url: str) -> str:
    # Hosted providers hand out `postgres://`; SQLAlchemy wants `postgresql://`.
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]

    parsed = urlparse(url)
    q = dict(parse_qsl(parsed.query, keep_blank_values=True))
    q.setdefault("sslmode", "require")
    return urlunparse(parsed._replace(query=urlencode(q)))


def _get_engine() -> Engine:
    global _ENGINE_CACHE
    if _ENGINE_CACHE is not None:
        return _ENGINE_CACHE
    url = database_url()
    if not url:
        raise RuntimeError("No DATABASE_URL configured.")
    _ENGINE_CACHE = create_engine(_normalize_database_url(url), pool_pre_ping=True)
    return _ENGINE_CACHE


def _is_sqlite_conn(conn: Any) -> bool:
    return isinstance(conn, sqlite3.Connection)


def _execute(conn: Any, sql: str, params: dict[str, Any] | None = None) -> Any:
    if _is_sqlite_conn(conn):
        return conn.execute(sql, params or {})
    return conn.execute(text(sql), params or {})


def _fetchone(conn: Any, sql: str, params: dict[str, Any] | None = None) -> dict[str, Any] | None:
    if _is_sqlite_conn(conn):
        row = conn.execute(sql, params or {}).fetchone()
        return dict(row) if row else None
    row = conn.execute(text(sql), params or {}).mappings().fetchone()
    return dict(row) if row else None


def _fetchall(conn: Any, sql: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
    if _is_sqlite_conn(conn):
        return [dict(r) for r in conn.execute(sql, params or {}).fetchall()]
    return [dict(r) for r in conn.execute(text(sql), params or {}).mappings().fetchall()]


def init_db(conn: Any) -> None:
    if _is_sqlite_conn(conn):
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS squares (
              id TEXT PRIMARY KEY,
              quarter_scores TEXT,
              quarter_winners TEXT,
              selections TEXT,
              x_axis TEXT,
              y_axis TEXT,
              players TEXT,
              game_completed INTEGER NOT NULL DEFAULT 0,
              is_team1_home INTEGER,
              price_per_square REAL NOT NULL DEFAULT 0,
              block_mode INTEGER NOT NULL DEFAULT 0,
              quarter_payouts TEXT,
              winnings_snapshot TEXT,
              winnings_quarters_done INTEGER NOT NULL DEFAULT 0,
              payout_done INTEGER NOT NULL DEFAULT 0,
              updated_at_ts INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_winnings (
              user_id TEXT PRIMARY KEY,
              total REAL NOT NULL DEFAULT 0,
              updated_at_ts INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS audit_log (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              created_at_ts INTEGER NOT NULL,
              actor TEXT,
              action TEXT NOT NULL,
              details_json TEXT NOT NULL
            );
            """
        )
        return

    _execute(
        conn,
        """
        CREATE TABLE IF NOT EXISTS squares (
          id TEXT PRIMARY KEY,
          quarter_scores TEXT NULL,
          quarter_winners TEXT NULL,
          selections TEXT NULL,
          x_axis TEXT NULL,
          y_axis TEXT NULL,
          players TEXT NULL,
          game_completed INTEGER NOT NULL DEFAULT 0,
          is_team1_home INTEGER NULL,
          price_per_square DOUBLE PRECISION NOT NULL DEFAULT 0,
          block_mode INTEGER NOT NULL DEFAULT 0,
          quarter_payouts TEXT NULL,
          winnings_snapshot TEXT NULL,
          winnings_quarters_done INTEGER NOT NULL DEFAULT 0,
          payout_done INTEGER NOT NULL DEFAULT 0,
          updated_at_ts BIGINT NOT NULL
        )
        """,
    )
    _execute(
        conn,
        """
        CREATE TABLE IF NOT EXISTS user_winnings (
          user_id TEXT PRIMARY KEY,
          total DOUBLE PRECISION NOT NULL DEFAULT 0,
          updated_at_ts BIGINT NOT NULL
        )
        """,
    )
    _execute(
        conn,
        """
        CREATE TABLE IF NOT EXISTS audit_log (
          id BIGSERIAL PRIMARY KEY,
          created_at_ts BIGINT NOT NULL,
          actor TEXT NULL,
          action TEXT NOT NULL,
          details_json TEXT NOT NULL
        )
        """,
    )


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, separators=(",", ":"))


def _loads(value: Any) -> Any:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON column value: %.80s", value)
        return None


def _load_list(value: Any) -> list[Any] | None:
    data = _loads(value)
    return data if isinstance(data, list) else None


def _opt_bool(value: Any) -> bool | None:
    return None if value is None else bool(value)


@dataclass
class SquareGame:
    id: str
    quarter_scores: list[QuarterScore] | None = None
    quarter_winners: list[QuarterWinner] | None = None
    selections: list[Selection] | None = None
    x_axis: list[Any] | None = None
    y_axis: list[Any] | None = None
    players: list[Player] | None = None
    game_completed: bool = False
    is_team1_home: bool | None = None
    price_per_square: float = 0.0
    block_mode: bool = False
    quarter_payouts: list[Any] | None = None
    winnings_snapshot: dict[str, float] = field(default_factory=dict)
    winnings_quarters_done: int = 0
    payout_done: bool = False


def _game_from_row(row: dict[str, Any]) -> SquareGame:
    scores = _load_list(row.get("quarter_scores"))
    winners = _load_list(row.get("quarter_winners"))
    selections = _load_list(row.get("selections"))
    players = _load_list(row.get("players"))
    snapshot = _loads(row.get("winnings_snapshot"))
    return SquareGame(
        id=str(row["id"]),
        quarter_scores=[QuarterScore.from_dict(q) for q in scores] if scores is not None else None,
        quarter_winners=[w for w in map(QuarterWinner.from_dict, winners) if w] if winners is not None else None,
        selections=[s for s in map(Selection.from_dict, selections) if s] if selections is not None else None,
        x_axis=_load_list(row.get("x_axis")),
        y_axis=_load_list(row.get("y_axis")),
        players=[p for p in map(Player.from_dict, players) if p] if players is not None else None,
        game_completed=bool(row.get("game_completed")),
        is_team1_home=_opt_bool(row.get("is_team1_home")),
        price_per_square=float(row.get("price_per_square") or 0),
        block_mode=bool(row.get("block_mode")),
        quarter_payouts=_load_list(row.get("quarter_payouts")),
        winnings_snapshot=snapshot if isinstance(snapshot, dict) else {},
        winnings_quarters_done=int(row.get("winnings_quarters_done") or 0),
        payout_done=bool(row.get("payout_done")),
    )


def _as_records(items: list[Any] | None) -> list[dict[str, Any]] | None:
    if items is None:
        return None
    return [i.to_dict() for i in items]


def save_game(conn: Any, game: SquareGame) -> None:
    _execute(
        conn,
        """
        INSERT INTO squares (
          id, quarter_scores, quarter_winners, selections, x_axis, y_axis, players,
          game_completed, is_team1_home, price_per_square, block_mode, quarter_payouts,
          winnings_snapshot, winnings_quarters_done, payout_done, updated_at_ts
        )
        VALUES (
          :id, :quarter_scores, :quarter_winners, :selections, :x_axis, :y_axis, :players,
          :game_completed, :is_team1_home, :price_per_square, :block_mode, :quarter_payouts,
          :winnings_snapshot, :winnings_quarters_done, :payout_done, :ts
        )
        ON CONFLICT(id) DO UPDATE SET
          quarter_scores = excluded.quarter_scores,
          quarter_winners = excluded.quarter_winners,
          selections = excluded.selections,
          x_axis = excluded.x_axis,
          y_axis = excluded.y_axis,
          players = excluded.players,
          game_completed = excluded.game_completed,
          is_team1_home = excluded.is_team1_home,
          price_per_square = excluded.price_per_square,
          block_mode = excluded.block_mode,
          quarter_payouts = excluded.quarter_payouts,
          winnings_snapshot = excluded.winnings_snapshot,
          winnings_quarters_done = excluded.winnings_quarters_done,
          payout_done = excluded.payout_done,
          updated_at_ts = excluded.updated_at_ts
        """,
        {
            "id": game.id,
            "quarter_scores": _dumps(_as_records(game.quarter_scores)),
            "quarter_winners": _dumps(_as_records(game.quarter_winners)),
            "selections": _dumps(_as_records(game.selections)),
            "x_axis": _dumps(game.x_axis),
            "y_axis": _dumps(game.y_axis),
            "players": _dumps(_as_records(game.players)),
            "game_completed": int(game.game_completed),
            "is_team1_home": None if game.is_team1_home is None else int(game.is_team1_home),
            "price_per_square": float(game.price_per_square or 0),
            "block_mode": int(game.block_mode),
            "quarter_payouts": _dumps(game.quarter_payouts),
            "winnings_snapshot": _dumps(game.winnings_snapshot or {}),
            "winnings_quarters_done": int(game.winnings_quarters_done),
            "payout_done": int(game.payout_done),
            "ts": _now_ts(),
        },
    )


def get_game(conn: Any, game_id: str) -> SquareGame | None:
    row = _fetchone(conn, "SELECT * FROM squares WHERE id = :id", {"id": game_id})
    if not row:
        return None
    return _game_from_row(row)


def list_games_missing_winners(conn: Any) -> list[SquareGame]:
    rows = _fetchall(
        conn,
        """
        SELECT * FROM squares
        WHERE quarter_winners IS NULL AND quarter_scores IS NOT NULL
        ORDER BY id
        """,
    )
    return [_game_from_row(r) for r in rows]


def set_quarter_winners(conn: Any, game_id: str, winners: list[QuarterWinner]) -> None:
    _execute(
        conn,
        "UPDATE squares SET quarter_winners = :winners, updated_at_ts = :ts WHERE id = :id",
        {"winners": _dumps([w.to_dict() for w in winners]), "ts": _now_ts(), "id": game_id},
    )


def save_settlement(conn: Any, game_id: str, settlement: Settlement) -> None:
    _execute(
        conn,
        """
        UPDATE squares
        SET winnings_snapshot = :snapshot, winnings_quarters_done = :done, payout_done = 1, updated_at_ts = :ts
        WHERE id = :id
        """,
        {
            "snapshot": _dumps(settlement.snapshot),
            "done": int(settlement.quarters_done),
            "ts": _now_ts(),
            "id": game_id,
        },
    )


def increment_user_winnings(conn: Any, user_id: str, amount: float) -> None:
    _execute(
        conn,
        """
        INSERT INTO user_winnings (user_id, total, updated_at_ts)
        VALUES (:uid, :amount, :ts)
        ON CONFLICT(user_id) DO UPDATE SET total = user_winnings.total + excluded.total, updated_at_ts = excluded.updated_at_ts
        """,
        {"uid": user_id, "amount": float(amount), "ts": _now_ts()},
    )


def get_user_winnings(conn: Any, user_id: str) -> float:
    row = _fetchone(conn, "SELECT total FROM user_winnings WHERE user_id = :uid", {"uid": user_id})
    return float(row["total"]) if row else 0.0


def log_action(conn: Any, actor: str | None, action: str, details: dict[str, Any]) -> None:
    _execute(
        conn,
        "INSERT INTO audit_log (created_at_ts, actor, action, details_json) VALUES (:ts, :actor, :action, :details)",
        {
            "ts": _now_ts(),
            "actor": actor,
            "action": action,
            "details": json.dumps(details, separators=(",", ":")),
        },
    )


def recent_audit(conn: Any, limit: int = 50) -> list[dict[str, Any]]:
    return _fetchall(
        conn,
        "SELECT * FROM audit_log ORDER BY id DESC LIMIT :limit",
        {"limit": limit},
    )
