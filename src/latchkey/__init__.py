"""Latchkey — passwordless authentication core.

Passkeys (WebAuthn) gated by email verification codes, reconciled with
legacy Sign in with Apple accounts so one person never ends up with two
users.
"""

__version__ = "0.1.0"
