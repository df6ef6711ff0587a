"""
Authentication core for the Global Trading Tycoon web app.

Design goals:
- One persisted User per identity, whichever of the four sources it came from.
- Server-side sessions; the browser only holds a signed session id.
- OAuth handshake state is single-use and expires.
"""
