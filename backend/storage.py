"""In-process archive of daily leaderboards.

Archived snapshots are append-only and keyed ``{room_key}_{YYYY-MM-DD}``.
The current-day cache remembers the score of players who left a room so a
rejoin on the same UTC day gets it back.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import config

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _day(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).date().isoformat()


class ArchiveStore:
    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self.clock = clock
        self.archives: Dict[str, List[dict]] = {}
        self.live_scores: Dict[str, Dict[str, dict]] = {}  # "{room}_{day}" -> player_id -> entry

    def archive(self, room_key: str, entries: List[dict], day: Optional[str] = None):
        """Append a leaderboard snapshot for the day that just ended."""
        now = self.clock()
        day = day or _day(now - timedelta(days=1))
        key = f"{room_key}_{day}"
        self.archives.setdefault(key, []).append({
            "channelId": room_key,
            "date": day,
            "scores": [dict(e) for e in entries],
            "archivedAt": now.isoformat(),
        })
        logger.info("Archived %d scores for room %s (%s)", len(entries), room_key, day)

    def history(self, room_key: str, days: int = config.ARCHIVE_HISTORY_DAYS) -> List[dict]:
        """Archived snapshots for the last ``days`` days, newest first."""
        result = []
        moment = self.clock()
        for _ in range(max(0, days)):
            result.extend(reversed(self.archives.get(f"{room_key}_{_day(moment)}", [])))
            moment -= timedelta(days=1)
        return result

    def remember(self, room_key: str, player: dict):
        key = f"{room_key}_{_day(self.clock())}"
        self.live_scores.setdefault(key, {})[player["id"]] = {
            "id": player["id"],
            "name": player.get("name"),
            "score": player.get("score", 0),
            "avatar": player.get("avatar"),
        }

    def recall(self, room_key: str, player_id: str) -> Optional[int]:
        entry = self.live_scores.get(f"{room_key}_{_day(self.clock())}", {}).pop(player_id, None)
        return entry["score"] if entry else None

    def reset_daily(self):
        self.live_scores.clear()

    def count(self) -> int:
        return sum(len(v) for v in self.archives.values())


archive_store = ArchiveStore()
