"""auth/ -- Authentication and session security engine for AuthGate.

Layer rule: auth/ imports from core/ and cache/ only.
It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
