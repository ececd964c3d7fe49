from __future__ import annotations

import argparse
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Sequence

import pandas as pd
from dotenv import load_dotenv

import db
import game_logic
from logging_config import setup_logging

logger = logging.getLogger(__name__)


@dataclass
class BackfillResult:
    total_games: int = 0
    updated: int = 0
    skipped: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "message": "Backfill complete",
            "totalGames": self.total_games,
            "updated": self.updated,
        }
        if self.errors:
            out["errors"] = list(self.errors)
        return out


def _orientation(game: db.SquareGame) -> bool:
    # Games saved before the home/away flag existed were scored as team1 = home.
    if game.is_team1_home is None:
        logger.debug("Game %s has no home/away flag; assuming team1 is home", game.id)
        return True
    return game.is_team1_home


def compute_game_winners(game: db.SquareGame) -> list[game_logic.QuarterWinner]:
    return game_logic.determine_winners(
        game.quarter_scores,
        game.selections,
        game.x_axis,
        game.y_axis,
        _orientation(game),
        game_logic.player_names_by_id(game.players),
    )


def backfill_quarter_winners(conn: Any) -> BackfillResult:
    """Store quarter winners for games that have scores but none saved yet.

    Only quarters that have both scores are stored. A failure on one game is
    logged and reported in the result; the remaining games are still processed.
    """
    games = db.list_games_missing_winners(conn)
    result = BackfillResult(total_games=len(games))
    if not games:
        logger.info("No games need backfilling")
        return result

    logger.info("Found %d games to backfill", len(games))
    for game in games:
        try:
            with db.savepoint(conn, "backfill_game"):
                if (
                    game.quarter_scores is None
                    or game.selections is None
                    or game.x_axis is None
                    or game.y_axis is None
                    or game.players is None
                ):
                    logger.info("Skipping game %s: missing required data", game.id)
                    result.skipped += 1
                    continue

                if not any(s.has_points for s in game.quarter_scores):
                    logger.info("Skipping game %s: no completed quarters", game.id)
                    result.skipped += 1
                    continue

                winners = [
                    w for w, s in zip(compute_game_winners(game), game.quarter_scores) if s.has_points
                ]
                if not winners:
                    logger.info("Skipping game %s: no winners calculated", game.id)
                    result.skipped += 1
                    continue

                db.set_quarter_winners(conn, game.id, winners)
                db.log_action(conn, None, "backfill_quarter_winners", {"game_id": game.id, "quarters": len(winners)})
                logger.info("Updated game %s with %d quarter winners", game.id, len(winners))
                result.updated += 1
        except Exception as e:
            logger.exception("Error processing game %s", game.id)
            result.errors.append({"gameId": game.id, "error": str(e)})

    logger.info("Backfill result: %s", result.to_dict())
    return result


def settle_game_winnings(conn: Any, game_id: str) -> game_logic.Settlement | None:
    game = db.get_game(conn, game_id)
    if game is None:
        logger.warning("Game %s not found", game_id)
        return None
    if not game.game_completed:
        logger.info("Game %s is not completed; nothing to settle", game_id)
        return None

    scores = game.quarter_scores or []
    # Stored winners only cover the quarters scored when they were saved.
    if game.selections is not None and game.x_axis is not None and game.y_axis is not None:
        winners = compute_game_winners(game)
    else:
        winners = game.quarter_winners or []
    settlement = game_logic.settle_winnings(
        quarter_winners=winners,
        scores=scores,
        player_names=game_logic.player_names_by_id(game.players),
        price_per_square=game.price_per_square,
        claimed_units=game_logic.total_units(len(game.selections or []), block_mode=game.block_mode),
        stored_payouts=game.quarter_payouts,
        previous_snapshot=game.winnings_snapshot,
        quarters_done=game.winnings_quarters_done,
    )
    if settlement.quarters_done <= game.winnings_quarters_done:
        logger.info("Game %s already settled through quarter %d", game_id, game.winnings_quarters_done)
        return settlement

    for user_id, amount in settlement.increments:
        db.increment_user_winnings(conn, user_id, amount)
    db.save_settlement(conn, game_id, settlement)
    db.log_action(
        conn,
        None,
        "settle_winnings",
        {"game_id": game_id, "quarters_done": settlement.quarters_done, "increments": settlement.increments},
    )
    logger.info("Settled game %s through quarter %d", game_id, settlement.quarters_done)
    return settlement


def backfill_frame(result: BackfillResult) -> pd.DataFrame:
    rows = [
        {"Metric": "Games found", "Value": result.total_games},
        {"Metric": "Updated", "Value": result.updated},
        {"Metric": "Skipped", "Value": result.skipped},
        {"Metric": "Errors", "Value": len(result.errors)},
    ]
    return pd.DataFrame(rows)


def settlement_frame(settlement: game_logic.Settlement) -> pd.DataFrame:
    rows = [{"Player": uid, "Total": amount} for uid, amount in sorted(settlement.snapshot.items())]
    return pd.DataFrame(rows, columns=["Player", "Total"])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="squares-jobs", description="Squares pool batch jobs.")
    parser.add_argument("--log-level", default=None, help="Overrides SQUARES_LOG_LEVEL.")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("backfill", help="Store quarter winners for games that have none saved.")
    settle = sub.add_parser("settle", help="Pay out a completed game's winnings.")
    settle.add_argument("game_id")
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    # Local dev convenience: load `.env` next to this file if present.
    load_dotenv(Path(__file__).resolve().parent / ".env")
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    with db.db() as conn:
        db.init_db(conn)
        if args.command == "backfill":
            result = backfill_quarter_winners(conn)
            print(backfill_frame(result).to_string(index=False))
            return 1 if result.errors else 0

        settlement = settle_game_winnings(conn, args.game_id)
        if settlement is None:
            return 1
        print(settlement_frame(settlement).to_string(index=False))
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
