"""auth/ -- Credential and session security for AuthVault.

Layer rule: auth/ imports from core/ and third-party libraries only.
It does NOT import from api/. api/ imports from auth/, not the other way around.
The one FastAPI touchpoint is auth/dependencies.py (Depends helpers).
"""
