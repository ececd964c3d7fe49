from __future__ import annotations

import json
import logging
import math
import random
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable, Mapping, Sequence

logger = logging.getLogger(__name__)

NO_WINNER = "No Winner"
UNKNOWN_PLAYER = "Unknown"
PENDING_SQUARE: tuple[str, str] = ("-", "-")
REGULATION_QUARTERS = 4


def coerce_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return None
    return None


def coerce_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def parse_digits(value: str | Sequence[Any] | None) -> list[int] | None:
    if not value:
        return None
    data: Any = value
    if isinstance(value, str):
        try:
            data = json.loads(value)
        except json.JSONDecodeError:
            return None
    if not isinstance(data, list) or len(data) != 10:
        return None
    digits: list[int] = []
    for x in data:
        if not isinstance(x, int) or isinstance(x, bool) or x < 0 or x > 9:
            return None
        digits.append(x)
    if len(set(digits)) != 10:
        return None
    return digits


def digits_to_json(digits: Iterable[int]) -> str:
    return json.dumps(list(digits), separators=(",", ":"))


def sequential_axis() -> list[int]:
    return list(range(10))


def shuffled_axis(rng: random.Random) -> list[int]:
    digits = sequential_axis()
    rng.shuffle(digits)
    return digits


def quarter_label(index: int) -> str:
    return f"Q{index + 1}"


def period_display_name(label: str) -> str:
    num = coerce_int(str(label).lstrip("Qq"))
    if num is None:
        return str(label)
    if num <= REGULATION_QUARTERS:
        return f"Quarter {num}"
    return f"Overtime {num - REGULATION_QUARTERS}"


@dataclass(frozen=True)
class Selection:
    x: int
    y: int
    owner_id: str

    @classmethod
    def from_dict(cls, data: Any) -> Selection | None:
        if not isinstance(data, Mapping):
            return None
        x = coerce_int(data.get("x"))
        y = coerce_int(data.get("y"))
        owner = data.get("userId")
        if x is None or y is None or not owner:
            return None
        return cls(x=x, y=y, owner_id=str(owner))

    def to_dict(self) -> dict[str, Any]:
        return {"x": self.x, "y": self.y, "userId": self.owner_id}


@dataclass(frozen=True)
class Player:
    id: str
    display_name: str

    @classmethod
    def from_dict(cls, data: Any) -> Player | None:
        if not isinstance(data, Mapping) or not data.get("userId"):
            return None
        user_id = str(data["userId"])
        return cls(id=user_id, display_name=str(data.get("username") or user_id))

    def to_dict(self) -> dict[str, Any]:
        return {"userId": self.id, "username": self.display_name}


def player_names_by_id(players: Iterable[Player] | None) -> dict[str, str]:
    return {p.id: p.display_name or p.id for p in players or ()}


@dataclass(frozen=True)
class QuarterScore:
    home: int | None
    away: int | None
    is_completed: bool = True
    manual: bool = False

    @property
    def has_points(self) -> bool:
        # Negative points are garbage and read as not played.
        if self.home is None or self.away is None:
            return False
        return self.home >= 0 and self.away >= 0

    @property
    def is_final(self) -> bool:
        return self.has_points and self.is_completed

    @classmethod
    def from_dict(cls, data: Any) -> QuarterScore:
        if not isinstance(data, Mapping):
            return cls(home=None, away=None)
        # Feed scores carry no "completed" key; only manual entries can be unfinished.
        completed = data.get("completed", True)
        return cls(
            home=coerce_int(data.get("home")),
            away=coerce_int(data.get("away")),
            is_completed=bool(completed),
            manual=bool(data.get("manual", False)),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"home": self.home, "away": self.away}
        if self.manual:
            out["manual"] = True
            out["completed"] = self.is_completed
        return out


@dataclass(frozen=True)
class QuarterWinner:
    quarter: str
    player_id: str | None
    player_name: str
    square: tuple[int | str, int | str]

    @property
    def has_winner(self) -> bool:
        return self.player_name != NO_WINNER

    @classmethod
    def from_dict(cls, data: Any) -> QuarterWinner | None:
        if not isinstance(data, Mapping):
            return None
        square = data.get("square")
        if not isinstance(square, (list, tuple)) or len(square) != 2:
            square = PENDING_SQUARE
        user_id = data.get("userId")
        return cls(
            quarter=str(data.get("quarter", "")),
            player_id=str(user_id) if user_id else None,
            player_name=str(data.get("username") or NO_WINNER),
            square=(square[0], square[1]),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "quarter": self.quarter,
            "username": self.player_name,
            "userId": self.player_id,
            "square": [self.square[0], self.square[1]],
        }


def _no_winner(quarter: str, square: tuple[int | str, int | str]) -> QuarterWinner:
    return QuarterWinner(quarter=quarter, player_id=None, player_name=NO_WINNER, square=square)


def _axis_index(axis: Sequence[Any], digit: int) -> int | None:
    for i, val in enumerate(axis):
        if coerce_int(val) == digit:
            return i
    return None


def determine_winners(
    scores: Sequence[QuarterScore | None] | None,
    selections: Iterable[Selection] | None,
    x_axis: Sequence[Any] | None,
    y_axis: Sequence[Any] | None,
    is_team1_home: bool,
    player_names: Mapping[str, str] | None,
) -> list[QuarterWinner]:
    """Resolve the winning square and owner for every quarter score.

    Team 1 always sits on the Y axis and team 2 on the X axis, so the caller
    supplies whether team 1 is the home side. Quarters without a final score
    come back as No Winner records with a pending square.
    """
    x_axis = list(x_axis or ())
    y_axis = list(y_axis or ())
    names = dict(player_names or {})
    by_cell = {(s.x, s.y): s for s in reversed(list(selections or ())) if isinstance(s, Selection)}

    winners: list[QuarterWinner] = []
    for i, score in enumerate(scores or ()):
        quarter = quarter_label(i)
        if not isinstance(score, QuarterScore) or not score.is_final:
            winners.append(_no_winner(quarter, PENDING_SQUARE))
            continue

        home, away = score.home, score.away
        team1_score = home if is_team1_home else away
        team2_score = away if is_team1_home else home
        x_digit = team2_score % 10
        y_digit = team1_score % 10

        x_index = _axis_index(x_axis, x_digit)
        y_index = _axis_index(y_axis, y_digit)
        if x_index is None or y_index is None:
            logger.warning(
                "%s: score digits x=%s y=%s missing from axes x=%s y=%s",
                quarter,
                x_digit,
                y_digit,
                x_axis,
                y_axis,
            )
            winners.append(_no_winner(quarter, (home % 10, away % 10)))
            continue

        selection = by_cell.get((x_index, y_index))
        if selection is None:
            winners.append(_no_winner(quarter, (x_digit, y_digit)))
            continue
        winners.append(
            QuarterWinner(
                quarter=quarter,
                player_id=selection.owner_id,
                player_name=names.get(selection.owner_id) or UNKNOWN_PLAYER,
                square=(x_digit, y_digit),
            )
        )
    return winners


def _name_to_id(player_names: Mapping[str, str]) -> dict[str, str]:
    out: dict[str, str] = {}
    for uid, name in player_names.items():
        if isinstance(name, str):
            out[name.strip()] = uid
    return out


def calculate_payouts(
    quarter_winners: Sequence[QuarterWinner] | None,
    player_names: Mapping[str, str] | None,
    price_per_square: float | None,
    total_squares: int,
) -> dict[str, float]:
    """Split the pool evenly over the winner records and total it per player.

    No Winner records still count toward the split, so an unclaimed quarter
    forfeits its share.
    """
    winnings: dict[str, float] = {}
    price = coerce_number(price_per_square)
    squares = coerce_number(total_squares)
    if not quarter_winners or not price or not squares:
        return winnings

    per_quarter = (price * squares) / len(quarter_winners)
    name_to_id = _name_to_id(player_names or {})
    for w in quarter_winners:
        name = w.get("username") if isinstance(w, Mapping) else getattr(w, "player_name", None)
        if not isinstance(name, str) or name == NO_WINNER:
            continue
        uid = name_to_id.get(name.strip())
        if uid:
            winnings[uid] = winnings.get(uid, 0.0) + per_quarter
    return winnings


def total_units(claimed_squares: int, *, block_mode: bool = False) -> int:
    # Block mode sells 2x2 clusters, four cells per unit.
    if block_mode:
        return (claimed_squares + 2) // 4
    return claimed_squares


def scored_quarter_count(scores: Iterable[QuarterScore | None] | None) -> int:
    return sum(1 for s in scores or () if isinstance(s, QuarterScore) and s.is_final)


def calculate_live_payouts(
    quarter_winners: Sequence[QuarterWinner] | None,
    scores: Sequence[QuarterScore | None] | None,
    player_names: Mapping[str, str] | None,
    price_per_square: float | None,
    total_squares: int,
) -> dict[str, float]:
    scored = scored_quarter_count(scores)
    if not quarter_winners or scored == 0:
        return {}
    return calculate_payouts(list(quarter_winners)[:scored], player_names, price_per_square, total_squares)


def round_cents(amount: float) -> float:
    value = Decimal(repr(amount + 1e-8)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return float(value)


@dataclass(frozen=True)
class Settlement:
    snapshot: dict[str, float]
    increments: list[tuple[str, float]] = field(default_factory=list)
    quarters_done: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.increments)


def settle_winnings(
    *,
    quarter_winners: Sequence[QuarterWinner],
    scores: Sequence[QuarterScore | None],
    player_names: Mapping[str, str],
    price_per_square: float | None,
    claimed_units: int,
    stored_payouts: Sequence[Any] | None = None,
    previous_snapshot: Mapping[str, float] | None = None,
    quarters_done: int = 0,
) -> Settlement:
    snapshot = {str(k): float(v) for k, v in (previous_snapshot or {}).items()}
    completed = scored_quarter_count(scores)
    if completed <= quarters_done:
        return Settlement(snapshot=snapshot, quarters_done=quarters_done)

    name_to_id = _name_to_id(player_names)
    periods = len(scores)
    fallback = ((coerce_number(price_per_square) or 0.0) * (coerce_number(claimed_units) or 0.0)) / periods
    stored = list(stored_payouts or ())

    increments: list[tuple[str, float]] = []
    for i in range(quarters_done, completed):
        win = quarter_winners[i] if i < len(quarter_winners) else None
        if win is None or not win.has_winner:
            continue
        uid = name_to_id.get(win.player_name.strip())
        if not uid:
            continue
        payout = stored[i] if i < len(stored) and isinstance(stored[i], (int, float)) else fallback
        cents = round_cents(payout)
        increments.append((uid, cents))
        snapshot[uid] = round(snapshot.get(uid, 0.0) + cents, 2)
    return Settlement(snapshot=snapshot, increments=increments, quarters_done=completed)
