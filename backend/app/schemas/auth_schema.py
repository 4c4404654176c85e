"""
schemas/auth_schema.py — Marshmallow schemas for authentication endpoints.

Validation responsibility:
  - This file: field types, lengths, formats.
  - services/auth_service.py: password strength (WEAK_PASSWORD lists every
    unmet rule) and ACCOUNT_EXISTS (requires a DB lookup).

All schemas inherit from marshmallow.Schema directly so they can be used
without an app context in unit tests.
"""

from __future__ import annotations

from marshmallow import Schema, fields, pre_load, validate


class RegisterSchema(Schema):
    """
    POST /auth/register

      username          : 3–50 chars, letters, digits and underscores
      email             : valid address, max 255
      display_name      : optional, max 100; defaults to the username
      password          : required; strength rules live in security/passwords.py
      enable_two_factor : optional bool, default false
    """

    username = fields.Str(
        required=True,
        validate=[
            validate.Length(
                min=3,
                max=50,
                error="Username must be between 3 and 50 characters.",
            ),
            validate.Regexp(
                r"^[a-zA-Z0-9_]+$",
                error="Username may only contain letters, numbers, and underscores.",
            ),
        ],
    )

    email = fields.Email(
        required=True,
        validate=validate.Length(max=255),
    )

    display_name = fields.Str(
        load_default=None,
        allow_none=True,
        validate=validate.Length(max=100),
    )

    password = fields.Str(required=True, load_only=True)

    enable_two_factor = fields.Bool(load_default=False)


class LoginSchema(Schema):
    """
    POST /auth/login

    `identifier` is a username or an email. Clients that send `username` or
    `email` instead are accepted.
    """

    identifier = fields.Str(required=True, validate=validate.Length(min=1, max=255))
    password = fields.Str(required=True, load_only=True)
    two_factor_code = fields.Str(load_default=None, allow_none=True)

    @pre_load
    def _accept_username_or_email(self, data, **kwargs):
        if isinstance(data, dict) and "identifier" not in data:
            data = dict(data)
            for alias in ("username", "email"):
                if alias in data:
                    data["identifier"] = data.pop(alias)
                    break
        return data
