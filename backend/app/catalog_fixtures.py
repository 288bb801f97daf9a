"""Seed data for the in-memory store used by the test suite and local runs."""

from typing import Any, List, Optional, Tuple

from .models import Playlist, Song
from .utils import new_object_id


async def seed_catalog(
    database: Any,
    titles: Optional[List[Tuple[Optional[str], Optional[str]]]] = None,
    song_count: int = 10,
    playlist_active: bool = True,
) -> Tuple[Playlist, List[Song]]:
    if titles is None:
        titles = [(f"Song {i}", f"Artist {i}") for i in range(1, song_count + 1)]

    songs = []
    for idx, (title, artist) in enumerate(titles):
        song = Song(
            media_url=f"https://soundcloud.com/artist/track-{idx}",
            media_track_id=str(1000 + idx),
            title=title,
            artist=artist,
        )
        await database.songs.insert_one(song.model_dump())
        songs.append(song)

    playlist = Playlist(
        name="Test Playlist",
        is_active=playlist_active,
        song_ids=[s.id for s in songs],
        song_count=len(songs),
    )
    await database.playlists.insert_one(playlist.model_dump())
    return playlist, songs


def new_user_id() -> str:
    return new_object_id()
