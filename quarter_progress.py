from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Mapping, Sequence

from game_logic import REGULATION_QUARTERS, QuarterScore, coerce_int

PROVIDER_COMPETITION = "competition"
PROVIDER_FLAT = "flat"
PROVIDER_UNKNOWN = "unknown"

PERIOD_END_CLOCK = "0:00"
COMPLETION_GRACE = timedelta(hours=1)


@dataclass(frozen=True)
class DriveEnd:
    period: int | None
    clock: str | None


@dataclass(frozen=True)
class GameSnapshot:
    """Score-feed game state reduced to the fields winner logic needs."""

    provider: str = PROVIDER_UNKNOWN
    state: str | None = None
    period: int = 0
    completed: bool = False
    drives: tuple[DriveEnd, ...] = ()
    quarter_scores: tuple[QuarterScore, ...] = field(default_factory=tuple)


def _get(obj: Any, *path: Any) -> Any:
    cur = obj
    for key in path:
        if isinstance(key, int):
            if not isinstance(cur, Sequence) or isinstance(cur, str) or len(cur) <= key:
                return None
            cur = cur[key]
        else:
            if not isinstance(cur, Mapping):
                return None
            cur = cur.get(key)
    return cur


def _drives(game: Mapping[str, Any]) -> tuple[DriveEnd, ...]:
    previous = _get(game, "drives", "previous")
    if not isinstance(previous, list):
        return ()
    out: list[DriveEnd] = []
    for d in previous:
        clock = _get(d, "end", "clock", "displayValue")
        out.append(
            DriveEnd(
                period=coerce_int(_get(d, "end", "period", "number")),
                clock=clock if isinstance(clock, str) else None,
            )
        )
    return tuple(out)


def _scores(game: Mapping[str, Any]) -> tuple[QuarterScore, ...]:
    raw = game.get("quarterScores")
    if not isinstance(raw, list):
        return ()
    return tuple(QuarterScore.from_dict(q) for q in raw)


def _snapshot(provider: str, game: Mapping[str, Any], status: Any) -> GameSnapshot:
    state = _get(status, "type", "state")
    return GameSnapshot(
        provider=provider,
        state=state.lower() if isinstance(state, str) else None,
        period=coerce_int(_get(status, "period")) or 0,
        completed=game.get("completed") is True or _get(status, "type", "completed") is True,
        drives=_drives(game),
        quarter_scores=_scores(game),
    )


def _from_competition_feed(game: Mapping[str, Any]) -> GameSnapshot:
    return _snapshot(PROVIDER_COMPETITION, game, _get(game, "competitions", 0, "status"))


def _from_flat_feed(game: Mapping[str, Any]) -> GameSnapshot:
    return _snapshot(PROVIDER_FLAT, game, game.get("status"))


def normalize_game(game: Any) -> GameSnapshot:
    if isinstance(game, GameSnapshot):
        return game
    if not isinstance(game, Mapping):
        return GameSnapshot()
    if isinstance(_get(game, "competitions", 0, "status"), Mapping):
        return _from_competition_feed(game)
    if isinstance(game.get("status"), Mapping):
        return _from_flat_feed(game)
    return GameSnapshot(drives=_drives(game), quarter_scores=_scores(game), completed=game.get("completed") is True)


def get_active_quarter(game: Any) -> int | None:
    """Period in play (5+ are overtimes), or None before kickoff and after the final."""
    snap = normalize_game(game)
    if snap.state in ("pre", "post"):
        return None
    return snap.period if snap.period > 0 else None


def get_completed_quarters_from_drives(game: Any) -> int:
    snap = normalize_game(game)
    completed = 0
    for d in snap.drives:
        if d.period and d.period > 0 and d.clock == PERIOD_END_CLOCK:
            completed = max(completed, d.period)
    return completed


def get_completed_quarters(game: Any) -> int:
    snap = normalize_game(game)
    by_drives = get_completed_quarters_from_drives(snap)
    if by_drives > 0:
        return by_drives
    active = get_active_quarter(snap)
    if not active:
        return 0
    return active - 1


def get_visible_quarter_scores(game: Any) -> list[QuarterScore]:
    snap = normalize_game(game)
    return list(snap.quarter_scores[: get_completed_quarters(snap)])


def get_live_quarter_scores(game: Any) -> list[QuarterScore]:
    snap = normalize_game(game)
    if snap.completed:
        return list(snap.quarter_scores)
    return get_visible_quarter_scores(snap)


def merge_quarter_scores(
    previous: Sequence[QuarterScore] | None,
    incoming: Sequence[QuarterScore] | None,
) -> list[QuarterScore]:
    """Fold a feed refresh into the scores already shown.

    Manual entries are never overwritten. A feed value only replaces the
    current one when it is higher.
    """
    previous = list(previous or ())
    incoming = list(incoming or ())
    if not previous:
        return incoming

    merged: list[QuarterScore] = []
    for i, prev in enumerate(previous):
        new = incoming[i] if i < len(incoming) else None
        if new is None or prev.manual:
            merged.append(prev)
            continue
        home = new.home if new.home is not None and (prev.home is None or new.home > prev.home) else prev.home
        away = new.away if new.away is not None and (prev.away is None or new.away > prev.away) else prev.away
        merged.append(QuarterScore(home=home, away=away, is_completed=prev.is_completed, manual=prev.manual))
    return merged


def infer_game_completed(
    scores: Sequence[QuarterScore] | None,
    starts_at: datetime | None,
    now: datetime,
) -> bool:
    scores = list(scores or ())
    if len(scores) < REGULATION_QUARTERS:
        return False
    if not all(s.has_points for s in scores[:REGULATION_QUARTERS]):
        return False
    return starts_at is not None and starts_at < now - COMPLETION_GRACE
