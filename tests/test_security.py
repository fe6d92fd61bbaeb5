#!/usr/bin/env python3
"""
Unit tests for user and service token verification
"""

import unittest
from datetime import datetime, timezone

import jwt

from payguard.security import (
    AUD_OUTCOME, account_created_at, has_role, mint_internal_jwt, mint_user_jwt,
    verify_service_token, verify_user_token,
)
from payguard.settings import Settings


class TestTokens(unittest.TestCase):

    def setUp(self):
        self.config = Settings(jwt_secret="test-secret")

    def test_role_defaults_to_user_and_is_normalised(self):
        self.assertEqual(verify_user_token(self.config, mint_user_jwt(self.config, "u1"))["role"], "USER")
        claims = verify_user_token(self.config, mint_user_jwt(self.config, "u1", {"role": "supplier"}))
        self.assertEqual(claims["role"], "SUPPLIER")
        self.assertTrue(has_role(claims, "SUPPLIER", "ADMIN"))
        self.assertFalse(has_role(claims, "ADMIN"))

    def test_unknown_role_rejected(self):
        token = mint_user_jwt(self.config, "u1", {"role": "root"})
        with self.assertRaises(jwt.InvalidTokenError):
            verify_user_token(self.config, token)

    def test_service_token_is_not_a_user_token(self):
        token = mint_internal_jwt(self.config, AUD_OUTCOME)
        with self.assertRaises(jwt.PyJWTError):
            verify_user_token(self.config, token)
        self.assertEqual(verify_service_token(self.config, token, AUD_OUTCOME)["aud"], AUD_OUTCOME)

    def test_service_token_audience_enforced(self):
        token = mint_internal_jwt(self.config, "payguard-other")
        with self.assertRaises(jwt.InvalidAudienceError):
            verify_service_token(self.config, token, AUD_OUTCOME)
        with self.assertRaises(jwt.PyJWTError):
            verify_service_token(self.config, mint_user_jwt(self.config, "u1"), AUD_OUTCOME)

    def test_account_created_at(self):
        created = account_created_at({"account_created_at": 1773144000})
        self.assertEqual(created, datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc))
        self.assertIsNone(account_created_at({}))
        self.assertIsNone(account_created_at({"account_created_at": "yesterday"}))


if __name__ == "__main__":
    unittest.main()
