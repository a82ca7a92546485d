"""auth/ -- Authentication security core for keyward.

Credential store, lockout policy, token issuer, session ledger, audit
recorder and the orchestrator that drives them.

Layer rule: auth/ imports only stdlib, third-party libraries and core/config.
It does NOT import from api/. api/ and main.py import from auth/, not the
other way around. The one exception is auth/dependencies.py, which is part of
FastAPI's dependency injection system.
"""
