"""auth/ -- Authentication core: credentials, tokens, refresh ledger, sessions.

Layer rule: auth/ imports only stdlib, third-party libraries, core/ and
(session.py only) cache/. Transport code imports from auth/, never the other
way around; auth/dependencies.py is the single FastAPI-facing module.
"""
