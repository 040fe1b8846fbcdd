"""
Per-game merge rules and the derived completion statistics.

The schema returned by GetSchemaForGame is authoritative for which
achievements exist; player progress only says which of them are unlocked.
"""

import logging
from typing import Dict, Iterable, List

from pydantic import BaseModel

from overachiever.models import Game
from overachiever.services.steam_client import PlayerAchievement, SchemaAchievement
from overachiever.services.store import AchievementStore

logger = logging.getLogger(__name__)


class MergeResult(BaseModel):
    unlocked_count: int
    total_count: int


class CompletionStats(BaseModel):
    total_achievements: int = 0
    unlocked_achievements: int = 0
    games_with_achievements: int = 0
    unplayed_games_with_achievements: int = 0
    avg_completion_percent: float = 0.0


async def merge_achievements(
    store: AchievementStore,
    steam_id: str,
    appid: int,
    fetched_progress: List[PlayerAchievement],
    fetched_schema: List[SchemaAchievement],
) -> MergeResult:
    """
    Stage unlock state and schema rows for one game. Nothing is committed;
    the caller owns the unit of work.
    """
    progress_by_name: Dict[str, PlayerAchievement] = {a.apiname: a for a in fetched_progress}

    # Warm the identity map so the per-row upserts below don't each query
    await store.get_unlock_states(steam_id, appid)

    if fetched_schema:
        schema_by_name = {s.apiname: s for s in fetched_schema}
        for entry in schema_by_name.values():
            await store.upsert_achievement_schema(appid, entry)
        apinames = list(schema_by_name)
    else:
        if progress_by_name:
            logger.warning(
                "Schema empty but progress present, falling back to progress names",
                extra={"appid": appid, "progress_count": len(progress_by_name)},
            )
        apinames = list(progress_by_name)

    unlocked = 0
    for apiname in apinames:
        progress = progress_by_name.get(apiname)
        achieved = progress.achieved if progress else False
        unlocktime = progress.unlocktime if progress else None

        await store.upsert_achievement_unlock_state(
            steam_id, appid, apiname, achieved, unlocktime
        )
        if achieved:
            unlocked += 1

    return MergeResult(unlocked_count=unlocked, total_count=len(apinames))


def compute_completion_stats(
    games: Iterable[Game], include_unplayed: bool = False
) -> CompletionStats:
    """
    Aggregate over games with at least one achievement. The average
    completion only counts played games (playtime > 0) unless
    include_unplayed is set: 0% because never played is not the same as 0%
    because hard.
    """
    stats = CompletionStats()
    percents: List[float] = []

    for game in games:
        if not game.achievements_total:
            continue

        unlocked = game.achievements_unlocked or 0
        stats.total_achievements += game.achievements_total
        stats.unlocked_achievements += unlocked
        stats.games_with_achievements += 1

        played = game.playtime_forever > 0
        if not played:
            stats.unplayed_games_with_achievements += 1
        if played or include_unplayed:
            percents.append(unlocked / game.achievements_total * 100.0)

    if percents:
        stats.avg_completion_percent = sum(percents) / len(percents)
    return stats
