"""auth/ -- Authentication and credential lifecycle for MoveX.

Sessions, CSRF tokens, password reset, MFA challenges, OAuth and role checks.

Layer rule: auth/ may import from core/ and cache/ and third-party libraries.
It does NOT import from api/. api/ imports from auth/, not the other way around.
"""
