from __future__ import annotations

from unittest import IsolatedAsyncioTestCase

from .catalog_fixtures import new_user_id
from .db import InMemoryDatabase
from .errors import AuthorizationError, NotFoundError
from .models import GameMode, GameSession
from .validator import SessionValidator


class SessionValidatorTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.db = InMemoryDatabase()
        self.validator = SessionValidator(self.db)
        self.user_id = new_user_id()
        self.session = GameSession(
            user_id=self.user_id,
            playlist_id="playlist",
            game_mode=GameMode.CLASSIC,
            total_rounds=5,
            client_session_id="client-nonce",
        )
        await self.db.game_sessions.insert_one(self.session.model_dump())

    async def test_valid_request_returns_session(self):
        s = await self.validator.validate(self.session.id, self.user_id, "client-nonce")

        self.assertEqual(s.id, self.session.id)
        self.assertEqual(s.max_possible_score, 25)

    async def test_missing_session(self):
        with self.assertRaises(NotFoundError):
            await self.validator.validate("nope", self.user_id, "client-nonce")

    async def test_other_user_is_refused(self):
        with self.assertRaises(AuthorizationError):
            await self.validator.validate(self.session.id, new_user_id(), "client-nonce")

    async def test_malformed_user_id_is_refused(self):
        with self.assertRaises(AuthorizationError):
            await self.validator.validate(self.session.id, "not-an-object-id", "client-nonce")

    async def test_stale_client_session_is_refused(self):
        for nonce in ["other-nonce", "", "client-nonce "]:
            with self.subTest(nonce=nonce):
                with self.assertRaises(AuthorizationError):
                    await self.validator.validate(self.session.id, self.user_id, nonce)

    async def test_validate_owner_skips_client_check(self):
        s = await self.validator.validate_owner(self.session.id, self.user_id)

        self.assertEqual(s.client_session_id, "client-nonce")
