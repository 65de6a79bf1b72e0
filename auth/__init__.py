"""auth/ -- Credential and token security engine.

Password hashing, access/refresh token lifecycle, brute-force lockout, rate
limiting, role checks and at-rest encryption of tenant secrets.

Layer rule: auth/ imports from core/ (configuration) and third-party
libraries only. Only dependencies.py and handlers.py know about FastAPI;
the rest is usable from any caller.
"""
