#!/usr/bin/env python3
"""
Token and settings tests
"""
import unittest

import jwt

from common.security import actor_from_token, mint_user_jwt, verify_token
from common.settings import Settings


class TestActorTokens(unittest.TestCase):

    def test_round_trip_subject(self):
        """Test that the actor id survives minting and verification"""
        token = mint_user_jwt(42, {"role": "finance"})
        self.assertEqual(actor_from_token(token), 42)
        self.assertEqual(verify_token(token)["role"], "finance")

    def test_non_numeric_subject_is_rejected(self):
        """Test that non-numeric or zero subjects are rejected"""
        with self.assertRaises(jwt.InvalidTokenError):
            actor_from_token(mint_user_jwt("alice"))
        with self.assertRaises(jwt.InvalidTokenError):
            actor_from_token(mint_user_jwt(0))

    def test_foreign_signature_is_rejected(self):
        """Test that tokens signed with another secret are rejected"""
        token = jwt.encode({"sub": "1", "iss": "payout-allocation", "iat": 0, "exp": 9999999999}, "other", algorithm="HS256")
        with self.assertRaises(jwt.InvalidSignatureError):
            actor_from_token(token)


class TestSettings(unittest.TestCase):

    def test_database_url_override(self):
        """Test that an explicit database URL wins"""
        self.assertEqual(Settings(database_url="sqlite:///x.db").sqlalchemy_url, "sqlite:///x.db")

    def test_mysql_url_from_parts(self):
        """Test the MySQL URL built from its parts"""
        config = Settings(database_url=None, mysql_user="u", mysql_password="p", mysql_host="db", mysql_port=3307, mysql_db="ops")
        self.assertEqual(config.sqlalchemy_url, "mysql+pymysql://u:p@db:3307/ops")


if __name__ == "__main__":
    unittest.main()
