"""auth/ -- Credential verification, token codec, and session lifecycle for SessionWarden.

Layer rule: auth/ imports only stdlib, third-party libraries, core/, and the
SessionStore protocol from cache/. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
