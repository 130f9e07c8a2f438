"""auth/ -- Authentication, authorization and throttling package for AdminGate.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/ or audit/ (audit/ may import auth.models enums).
api/ imports from auth/, not the other way around. The one exception is
auth/dependencies.py, which is FastAPI glue and imports fastapi itself.
"""
