"""Authentication primitives.

Learn: Everything here is stateless: token signing, the WebAuthn relying
party, Apple token verification, identity value types. Anything that
reads or writes the database lives in latchkey.services.

Three ways a caller proves who they are:
1. Passkey → WebAuthn assertion → session token
2. Sign in with Apple → Apple identity token → session token
3. Email code → verification token (only good for starting registration)
"""
