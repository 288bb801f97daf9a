from __future__ import annotations

import random
from typing import Any, Iterable, Optional

import structlog

from .db import db as default_db
from .errors import NotFoundError
from .models import GameMode, Playlist, Song

logger = structlog.get_logger()


class SongSelector:
    """Picks the next song of a session from its playlist.

    An exhausted playlist yields ``None``; exclusions are never reset.
    """

    def __init__(self, database: Any = None, rng: Optional[random.Random] = None):
        self.db = database if database is not None else default_db
        self.rng = rng or random.Random()

    async def get_playlist(self, playlist_id: str) -> Playlist:
        doc = await self.db.playlists.find_one({"id": playlist_id})
        if not doc or not doc.get("is_active", True):
            raise NotFoundError("Playlist not found or inactive")
        return Playlist(**doc)

    async def select(self, playlist: Playlist, exclude_ids: Iterable[str], mode: GameMode) -> Optional[Song]:
        excluded = set(exclude_ids)
        available = [sid for sid in dict.fromkeys(playlist.song_ids) if sid not in excluded]

        # each rejected pick shrinks the pool, so this ends after at most len(playlist) lookups
        while available:
            song_id = self.rng.choice(available)
            available.remove(song_id)

            song = await self.load_playable(song_id, mode)
            if song is not None:
                return song
            logger.info("skipping unplayable song", song_id=song_id, playlist_id=playlist.id, mode=mode)

        return None

    async def load_playable(self, song_id: str, mode: GameMode) -> Optional[Song]:
        doc = await self.db.songs.find_one({"id": song_id})
        if not doc:
            return None
        song = Song(**doc)
        if not song.is_active or not song.answer_for(mode):
            return None
        return song
